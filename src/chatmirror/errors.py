"""Summary: Exception types and failure reason codes for ChatMirror.

Importance: Gives every component one vocabulary for classifying sync failures.
Alternatives: Raise RuntimeError everywhere and parse messages.
"""

from __future__ import annotations


MALFORMED_INPUT = "malformed_input"
NO_SOURCE = "no_source"
UNAUTHORIZED = "unauthorized"
NOT_FOUND = "not_found"
CONTENT_MISMATCH = "content_mismatch"
TRANSIENT = "transient"
IDENTITY_UNRESOLVED = "identity_unresolved"

DOWNLOAD_FAILURE_REASONS = frozenset(
    {NO_SOURCE, UNAUTHORIZED, NOT_FOUND, CONTENT_MISMATCH, TRANSIENT}
)


class ChatMirrorError(Exception):
    """Summary: Base class for ChatMirror errors.

    Importance: Lets callers catch engine failures without masking programming errors.
    Alternatives: Use built-in exception types only.
    """


class InvalidTransitionError(ChatMirrorError):
    """Summary: Raised when a lifecycle transition is not allowed.

    Importance: Protects the attachment state machine from concurrent or illegal writes.
    Alternatives: Silently ignore the update.
    """

    def __init__(self, attachment_id: int, expected: str, target: str) -> None:
        super().__init__(
            f"Attachment {attachment_id} cannot move to '{target}': expected state '{expected}'"
        )
        self.attachment_id = attachment_id
        self.expected = expected
        self.target = target


class RemoteApiError(ChatMirrorError):
    """Summary: Failure reported by the remote chat service.

    Importance: Carries a reason code the download pipeline can record verbatim.
    Alternatives: Inspect HTTP status codes at every call site.
    """

    reason = TRANSIENT

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class UnauthorizedError(RemoteApiError):
    """Summary: Credential rejected or expired."""

    reason = UNAUTHORIZED


class NotFoundError(RemoteApiError):
    """Summary: Remote resource does not exist."""

    reason = NOT_FOUND


class TransientError(RemoteApiError):
    """Summary: Network failure, timeout, throttling, or server error."""

    reason = TRANSIENT


class ContentMismatchError(RemoteApiError):
    """Summary: Response body is not the binary content that was requested."""

    reason = CONTENT_MISMATCH


def classify_http_status(status: int) -> type[RemoteApiError]:
    """Summary: Map an HTTP status code to a remote error class.

    Importance: Keeps failure classification identical across API clients.
    Alternatives: Let each client decide its own mapping.
    """

    if status in (401, 403):
        return UnauthorizedError
    if status in (404, 410):
        return NotFoundError
    return TransientError
