"""Summary: Credential providers for remote chat access.

Importance: Keeps token acquisition out of the sync engine.
Alternatives: Read the access token from the environment inside each client.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from chatmirror.errors import UnauthorizedError


class CredentialProvider(ABC):
    """Summary: Abstract interface for obtaining a remote credential.

    Importance: Allows static tokens, refreshed OAuth tokens, or service accounts.
    Alternatives: Pass raw tokens through every call.
    """

    @abstractmethod
    def get_credential(self) -> str:
        """Summary: Return a credential valid for the current sync pass.

        Importance: Downloads and directory lookups need the same bearer token.
        Alternatives: Refresh tokens per request.
        """


class StaticCredentialProvider(CredentialProvider):
    """Summary: Serves a fixed access token from configuration.

    Importance: Simplest provider for local runs and tests.
    Alternatives: Exchange refresh tokens on startup.
    """

    def __init__(self, access_token: str) -> None:
        self._access_token = access_token

    def get_credential(self) -> str:
        if not self._access_token:
            raise UnauthorizedError("No access token configured")
        return self._access_token
