"""Summary: Tests for sender identity resolution.

Importance: Ensures confidence only rises during sync and reverts propagate everywhere.
Alternatives: Review identities manually after each sync.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from chatmirror.errors import TransientError
from chatmirror.identity import (
    DIRECTORY_CONFIDENCE,
    EMPLOYEE_LINK_CONFIDENCE,
    FALLBACK_CONFIDENCE,
    REVERTED_CONFIDENCE,
    IdentityResolver,
    fallback_identity,
    infer_name_from_texts,
)
from chatmirror.models import (
    METHOD_DIRECTORY,
    METHOD_HEURISTIC,
    METHOD_MANUAL,
    METHOD_REVERTED,
    METHOD_UNRESOLVED,
    Conversation,
    SenderIdentity,
)
from chatmirror.remote import FixtureChatClient
from chatmirror.storage.sqlite_store import SqliteStore


class FailingDirectoryClient(FixtureChatClient):
    """Summary: Fixture client whose directory lookups always fail."""

    def resolve_identity(self, identifier: str, credential: str | None) -> dict[str, Any] | None:
        raise TransientError("directory unavailable")


def _resolver(tmp_path: Path, directory: dict[str, Any] | None = None) -> IdentityResolver:
    store = SqliteStore(str(tmp_path / "test.db"))
    store.initialize()
    client = FixtureChatClient({"directory": directory or {}})
    return IdentityResolver(store=store, client=client, fallback_domain="example.test")


def test_fallback_identity_format() -> None:
    identity = fallback_identity("users/1234567890123", "example.test")
    assert identity.display_name == "External User 12345678"
    assert identity.email == "user-1234567890123@example.test"
    assert identity.confidence == FALLBACK_CONFIDENCE
    assert identity.method == METHOD_UNRESOLVED


def test_heuristics_rank_introductions_above_sign_offs() -> None:
    """Summary: Verify self-introductions beat sign-offs and role keywords.

    Importance: Stronger evidence must win when several patterns match.
    Alternatives: Use the first match found.
    """

    match = infer_name_from_texts(["Please check billing.\nThanks,\nMaria", "Hi, I am Carlos Diaz"])
    assert match is not None
    assert match.display_name == "Carlos Diaz"
    assert match.confidence == 55

    sign_off = infer_name_from_texts(["Invoice attached.\n\nBest regards,\nMaria Lopez"])
    assert sign_off is not None
    assert sign_off.display_name == "Maria Lopez"
    assert sign_off.confidence == 50

    role = infer_name_from_texts(["Dispatch here, truck 12 is loaded"])
    assert role is not None
    assert role.display_name == "Dispatch Team"
    assert role.confidence == 45

    assert infer_name_from_texts(["ok", "", "Thanks,\nTeam"]) is None


def test_sign_off_needs_name_on_its_own_line() -> None:
    """Summary: Verify only the signature shape counts as a sign-off.

    Importance: Thanking someone by name inside a sentence names the recipient, not the sender.
    Alternatives: Accept any name that follows a closing phrase.
    """

    assert infer_name_from_texts(["Thanks, Maria"]) is None
    assert infer_name_from_texts(["Got it.\nThanks, Laura for the photos"]) is None
    signature = infer_name_from_texts(["Got it.\nCheers,\n- Pedro"])
    assert signature is not None
    assert signature.display_name == "Pedro"


def test_directory_lookup_wins(tmp_path: Path) -> None:
    resolver = _resolver(
        tmp_path, {"users/1": {"displayName": "Ana Silva", "email": "ana@corp.example"}}
    )
    identity = resolver.resolve("users/1", ["I am Someone Else"])
    assert identity.method == METHOD_DIRECTORY
    assert identity.confidence == DIRECTORY_CONFIDENCE
    assert resolver.store.get_identity("users/1").email == "ana@corp.example"


def test_directory_failure_falls_through(tmp_path: Path) -> None:
    store = SqliteStore(str(tmp_path / "test.db"))
    store.initialize()
    resolver = IdentityResolver(
        store=store, client=FailingDirectoryClient({}), fallback_domain="example.test"
    )
    identity = resolver.resolve("users/9", ["Thanks,\nPedro"])
    assert identity.method == METHOD_HEURISTIC
    assert identity.display_name == "Pedro"
    assert identity.email == "user-9@example.test"


def test_confidence_never_decreases(tmp_path: Path) -> None:
    """Summary: Verify weaker evidence never overwrites a stronger identity.

    Importance: Sync passes must not downgrade identities.
    Alternatives: Always keep the latest guess.
    """

    resolver = _resolver(tmp_path)
    first = resolver.resolve("users/2", ["Hello, my name is Julia"])
    assert first.confidence == 55
    second = resolver.resolve("users/2", ["Thanks,\nRobert"])
    assert second.display_name == "Julia"
    third = resolver.resolve("users/2", ["no clues"])
    assert third.confidence == 55
    assert resolver.store.get_identity("users/2").display_name == "Julia"


def test_manual_identity_is_never_touched(tmp_path: Path) -> None:
    resolver = _resolver(
        tmp_path, {"users/3": {"displayName": "Directory Name", "email": "dir@corp.example"}}
    )
    resolver.map_identity("users/3", "Manual Name", "manual@corp.example")
    identity = resolver.resolve("users/3", ["I am Other"])
    assert identity.method == METHOD_MANUAL
    assert identity.display_name == "Manual Name"
    assert identity.confidence == 100


def test_heuristic_name_links_to_employee(tmp_path: Path) -> None:
    resolver = _resolver(tmp_path)
    resolver.store.save_identity(
        SenderIdentity("users/emp", "Laura Chen", "laura@corp.example", 95, METHOD_DIRECTORY)
    )
    identity = resolver.resolve("users/ext", ["Sent from my phone.\nThanks,\nLaura"])
    assert identity.confidence == EMPLOYEE_LINK_CONFIDENCE
    assert identity.employee_sender_id == "users/emp"
    assert identity.email == "laura@corp.example"


def test_unresolved_sender_gets_fallback(tmp_path: Path) -> None:
    resolver = _resolver(tmp_path)
    identity = resolver.resolve("users/abcdefghijkl", ["ok"])
    assert identity.display_name == "External User abcdefgh"
    assert identity.confidence == FALLBACK_CONFIDENCE


def test_revert_propagates_to_participants(tmp_path: Path) -> None:
    """Summary: Verify revert resets the identity and every participant copy.

    Importance: Wrong mappings must be undone everywhere at once.
    Alternatives: Update participant rows lazily.
    """

    resolver = _resolver(tmp_path)
    store = resolver.store
    resolver.map_identity("users/4", "Wrong Person", "wrong@corp.example")
    mapped = store.get_identity("users/4")
    for ref in ("spaces/A", "spaces/B"):
        conversation_id = store.upsert_conversation(Conversation(ref, ref, "group"))
        store.upsert_participant(conversation_id, mapped)

    assert resolver.revert_identity("users/4") == 2
    reverted = store.get_identity("users/4")
    assert reverted.confidence == REVERTED_CONFIDENCE
    assert reverted.method == METHOD_REVERTED
    assert reverted.employee_sender_id is None
    assert reverted.display_name == "External User 4"
    assert {participant.display_name for participant in store.list_participants()} == {
        "External User 4"
    }


def test_revert_identities_commits_each(tmp_path: Path) -> None:
    resolver = _resolver(tmp_path)
    results = resolver.revert_identities(["users/5", "users/6"])
    assert results == {"users/5": 0, "users/6": 0}
    assert resolver.store.get_identity("users/6").confidence == REVERTED_CONFIDENCE


def test_reverted_identity_ignores_heuristics(tmp_path: Path) -> None:
    """Summary: Verify later resolution passes never re-apply text guesses to a reverted sender.

    Importance: An operator's revert must survive the next sync.
    Alternatives: Re-resolve reverted senders like any other low-confidence identity.
    """

    resolver = _resolver(tmp_path)
    resolver.store.save_identity(
        SenderIdentity("users/emp", "Laura Chen", "laura@corp.example", 95, METHOD_DIRECTORY)
    )
    linked = resolver.resolve("users/ext", ["Sent from my phone.\nThanks,\nLaura"])
    assert linked.employee_sender_id == "users/emp"

    resolver.revert_identity("users/ext")
    again = resolver.resolve("users/ext", ["Sent from my phone.\nThanks,\nLaura", "I am Laura"])
    assert again.method == METHOD_REVERTED
    assert again.confidence == REVERTED_CONFIDENCE
    assert again.employee_sender_id is None

    resolver.map_identity("users/ext", "Laura Guest", "guest@partner.example")
    assert resolver.store.get_identity("users/ext").method == METHOD_MANUAL


def test_directory_hit_replaces_reverted_identity(tmp_path: Path) -> None:
    resolver = _resolver(
        tmp_path, {"users/7": {"displayName": "Omar Haddad", "email": "omar@corp.example"}}
    )
    resolver.revert_identity("users/7")
    identity = resolver.resolve("users/7", [])
    assert identity.method == METHOD_DIRECTORY
    assert identity.display_name == "Omar Haddad"
