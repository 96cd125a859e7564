"""Summary: Sender identity resolution with confidence scores.

Importance: Turns opaque sender identifiers into people without ever downgrading a better answer.
Alternatives: Show raw sender identifiers to users.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable

from chatmirror.errors import RemoteApiError
from chatmirror.models import (
    METHOD_DIRECTORY,
    METHOD_HEURISTIC,
    METHOD_MANUAL,
    METHOD_REVERTED,
    METHOD_UNRESOLVED,
    SenderIdentity,
)
from chatmirror.remote import RemoteChatClient
from chatmirror.storage.sqlite_store import SqliteStore


logger = logging.getLogger(__name__)

MANUAL_CONFIDENCE = 100
DIRECTORY_CONFIDENCE = 95
EMPLOYEE_LINK_CONFIDENCE = 60
SELF_INTRO_CONFIDENCE = 55
SIGN_OFF_CONFIDENCE = 50
ROLE_CONFIDENCE = 45
REVERTED_CONFIDENCE = 40
FALLBACK_CONFIDENCE = 30

_NAME = r"([A-Z][a-z]+(?:[ ][A-Z][a-z]+)?)"
_SELF_INTRO = re.compile(r"(?i:\b(?:i am|i'm|this is|my name is))\s+" + _NAME)
_SIGN_OFF = re.compile(
    r"(?i:\b(?:thanks|thank you|best regards|kind regards|regards|cheers|best))"
    r",?[ \t]*\n[ \t]*-?[ \t]*" + _NAME + r"[ \t]*\.?[ \t]*$"
)
_DASH_SIGNATURE = re.compile(r"(?:^|\n)[ \t]*-[ \t]*" + _NAME + r"[ \t]*$")
_ROLES = (
    (re.compile(r"\bdispatch", re.IGNORECASE), "Dispatch Team"),
    (re.compile(r"\baccounting\b", re.IGNORECASE), "Accounting"),
    (re.compile(r"\bbilling\b", re.IGNORECASE), "Billing"),
    (re.compile(r"\b(?:customer )?support\b", re.IGNORECASE), "Support"),
    (
        re.compile(
            r"\b(?:automated (?:message|notification)|do not reply|no-?reply)\b", re.IGNORECASE
        ),
        "Automated Notifications",
    ),
)
_NOT_NAMES = {
    "Again", "All", "Also", "Everyone", "Going", "Good", "Here", "Just", "Not", "Sorry",
    "Sure", "Team", "The", "Very", "You", "Your",
}


@dataclass(frozen=True)
class HeuristicMatch:
    """Summary: Name inferred from message text and its confidence."""

    display_name: str
    confidence: int


def short_sender_id(sender_id: str) -> str:
    return sender_id.rsplit("/", 1)[-1]


def fallback_identity(
    sender_id: str,
    domain: str,
    confidence: int = FALLBACK_CONFIDENCE,
    method: str = METHOD_UNRESOLVED,
) -> SenderIdentity:
    """Summary: Build the neutral identity for a sender nobody could resolve.

    Importance: Every sender gets a readable name and a unique placeholder email.
    Alternatives: Leave unresolved senders without a name.
    """

    short_id = short_sender_id(sender_id)
    return SenderIdentity(
        sender_id=sender_id,
        display_name=f"External User {short_id[:8]}",
        email=f"user-{short_id}@{domain}",
        confidence=confidence,
        method=method,
    )


def infer_name_from_texts(texts: Iterable[str]) -> HeuristicMatch | None:
    """Summary: Infer a sender name from self-introductions, sign-offs, or role keywords.

    Importance: Gives external senders a plausible name when the directory cannot.
    Alternatives: Use a named-entity model.
    """

    best: HeuristicMatch | None = None
    for text in texts:
        if not text:
            continue
        for match in _candidates(text):
            if best is None or match.confidence > best.confidence:
                best = match
    return best


def _candidates(text: str) -> Iterable[HeuristicMatch]:
    for pattern, confidence in (
        (_SELF_INTRO, SELF_INTRO_CONFIDENCE),
        (_SIGN_OFF, SIGN_OFF_CONFIDENCE),
        (_DASH_SIGNATURE, SIGN_OFF_CONFIDENCE),
    ):
        for found in pattern.finditer(text):
            name = _clean_name(found.group(1))
            if name:
                yield HeuristicMatch(name, confidence)
    for pattern, role in _ROLES:
        if pattern.search(text):
            yield HeuristicMatch(role, ROLE_CONFIDENCE)


def _clean_name(candidate: str) -> str | None:
    words = [word for word in candidate.split() if word]
    while words and words[-1] in _NOT_NAMES:
        words.pop()
    if not words or words[0] in _NOT_NAMES:
        return None
    return " ".join(words)


@dataclass(frozen=True)
class IdentityResolver:
    """Summary: Resolves sender identifiers through ordered resolution steps.

    Importance: Confidence only moves up during sync; reverts and manual maps are explicit.
    Alternatives: Overwrite identities with the latest guess on every sync.
    """

    store: SqliteStore
    client: RemoteChatClient
    fallback_domain: str
    employee_threshold: int = 90

    def resolve(
        self,
        sender_id: str,
        context_texts: Iterable[str] = (),
        credential: str | None = None,
    ) -> SenderIdentity:
        """Summary: Resolve one sender and persist the best identity found.

        Importance: Each step may fail without aborting the sync pass.
        Alternatives: Resolve identities in a separate batch job.
        """

        existing = self.store.get_identity(sender_id)
        if existing is not None and existing.method == METHOD_MANUAL:
            self.store.touch_identity(sender_id)
            return existing

        directory = self._lookup_directory(sender_id, credential)
        if directory is not None:
            return self._apply(existing, directory)

        # a reverted identity only changes through the directory or a manual map
        if existing is not None and existing.method == METHOD_REVERTED:
            self.store.touch_identity(sender_id)
            return existing

        match = infer_name_from_texts(context_texts)
        if match is not None:
            return self._apply(existing, self._heuristic_identity(sender_id, match))

        if existing is not None:
            self.store.touch_identity(sender_id)
            return existing
        identity = fallback_identity(sender_id, self.fallback_domain)
        self.store.save_identity(identity)
        logger.info("Sender %s unresolved, using %s", sender_id, identity.display_name)
        return identity

    def revert_identity(self, sender_id: str) -> int:
        """Summary: Reset a sender to the neutral identity and propagate it.

        Importance: Undoes wrong mappings everywhere in a single transaction and keeps later
        syncs from re-applying text heuristics to the same sender.
        Alternatives: Delete the identity and wait for the next sync.
        """

        identity = fallback_identity(
            sender_id, self.fallback_domain, REVERTED_CONFIDENCE, METHOD_REVERTED
        )
        affected = self.store.save_identity(identity, propagate=True)
        logger.info("Reverted identity %s (%s participant rows)", sender_id, affected)
        return affected

    def revert_identities(self, sender_ids: Iterable[str]) -> dict[str, int]:
        """Summary: Revert several identities, committing each one separately.

        Importance: A failure on one identifier leaves earlier reverts committed.
        Alternatives: Wrap the whole batch in one transaction.
        """

        return {sender_id: self.revert_identity(sender_id) for sender_id in sender_ids}

    def map_identity(self, sender_id: str, display_name: str, email: str) -> int:
        """Summary: Manually map a sender to a person and propagate it.

        Importance: Operators can fix identities the resolver cannot.
        Alternatives: Edit participant rows by hand.
        """

        if not display_name.strip() or not email.strip():
            raise ValueError("Manual identities need a display name and an email")
        identity = SenderIdentity(
            sender_id=sender_id,
            display_name=display_name.strip(),
            email=email.strip(),
            confidence=MANUAL_CONFIDENCE,
            method=METHOD_MANUAL,
        )
        affected = self.store.save_identity(identity, propagate=True)
        logger.info("Mapped identity %s to %s", sender_id, identity.email)
        return affected

    def _lookup_directory(self, sender_id: str, credential: str | None) -> SenderIdentity | None:
        try:
            payload = self.client.resolve_identity(sender_id, credential)
        except RemoteApiError as exc:
            logger.warning("Directory lookup failed for %s: %s", sender_id, exc.reason)
            return None
        if not payload:
            return None
        display_name = payload.get("displayName")
        email = payload.get("email")
        if not display_name or not email:
            return None
        return SenderIdentity(
            sender_id=sender_id,
            display_name=display_name,
            email=email,
            confidence=DIRECTORY_CONFIDENCE,
            method=METHOD_DIRECTORY,
        )

    def _heuristic_identity(self, sender_id: str, match: HeuristicMatch) -> SenderIdentity:
        employee = self._match_employee(sender_id, match.display_name)
        if employee is not None:
            return SenderIdentity(
                sender_id=sender_id,
                display_name=employee.display_name,
                email=employee.email,
                confidence=EMPLOYEE_LINK_CONFIDENCE,
                method=METHOD_HEURISTIC,
                employee_sender_id=employee.sender_id,
            )
        fallback = fallback_identity(sender_id, self.fallback_domain)
        return SenderIdentity(
            sender_id=sender_id,
            display_name=match.display_name,
            email=fallback.email,
            confidence=match.confidence,
            method=METHOD_HEURISTIC,
        )

    def _match_employee(self, sender_id: str, name: str) -> SenderIdentity | None:
        lowered = name.lower()
        candidates = [
            employee
            for employee in self.store.find_employees(self.employee_threshold)
            if employee.sender_id != sender_id
        ]
        exact = [item for item in candidates if item.display_name.lower() == lowered]
        if len(exact) == 1:
            return exact[0]
        # a bare first name links only when it is unambiguous
        if " " not in lowered:
            first_names = [
                item
                for item in candidates
                if item.display_name.lower().split(" ", 1)[0] == lowered
            ]
            if len(first_names) == 1:
                return first_names[0]
        return None

    def _apply(self, existing: SenderIdentity | None, candidate: SenderIdentity) -> SenderIdentity:
        if existing is not None and existing.confidence >= candidate.confidence:
            self.store.touch_identity(candidate.sender_id)
            return existing
        self.store.save_identity(candidate, propagate=existing is not None)
        logger.info(
            "Resolved sender %s as %s via %s (%s)",
            candidate.sender_id,
            candidate.display_name,
            candidate.method,
            candidate.confidence,
        )
        return candidate
