"""Exception types raised by the OAuth proxy core.

Only lightweight, **data-carrying** exceptions live here so that the HTTP
layer can transform them into OAuth error responses with one ``except``
clause. Every client-facing error carries the RFC 6749 ``error`` code and the
HTTP status it maps to; ``to_payload()`` never includes secrets.
"""

from __future__ import annotations


class OAuthProxyError(Exception):
    """Base class for errors surfaced to OAuth clients."""

    error: str = "server_error"
    status_code: int = 500

    def __init__(
        self,
        description: str | None = None,
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(description or self.error)
        self.description: str | None = description
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict[str, str]:
        """Return a JSON-serialisable payload **without secrets**."""
        payload = {"error": self.error}
        if self.description:
            payload["error_description"] = self.description
        return payload


class InvalidRequestError(OAuthProxyError):
    """A required parameter is missing or malformed."""

    error = "invalid_request"
    status_code = 400


class UnsupportedGrantTypeError(OAuthProxyError):
    error = "unsupported_grant_type"
    status_code = 400


class UnsupportedResponseTypeError(OAuthProxyError):
    error = "unsupported_response_type"
    status_code = 400


class InvalidGrantError(OAuthProxyError):
    """The presented code / refresh token is unknown, expired or consumed."""

    error = "invalid_grant"
    status_code = 400


class InvalidStateError(InvalidRequestError):
    """The callback ``state`` is missing, expired or was already used."""


class AuthorizationDeniedError(OAuthProxyError):
    """The identity provider redirected back with an ``error`` parameter."""

    error = "access_denied"
    status_code = 400


class ServerError(OAuthProxyError):
    error = "server_error"
    status_code = 500


class ProviderError(ServerError):
    """A back-channel call to the identity provider did not succeed.

    The message embeds the provider's machine-readable ``error`` code and its
    human description; client credentials and tokens are never included.
    """

    def __init__(
        self,
        operation: str,
        *,
        error: str,
        error_description: str | None = None,
        http_status: int | None = None,
    ) -> None:
        detail = f"{error} - {error_description}" if error_description else error
        super().__init__(f"{operation} failed: {detail}")
        self.operation: str = operation
        self.provider_error: str = error
        self.provider_error_description: str | None = error_description
        self.http_status: int | None = http_status


class TokenStoreError(Exception):
    """Base class for Token Store contract violations."""

    def __init__(self, auth_session_id: str, message: str) -> None:
        super().__init__(message)
        self.auth_session_id: str = auth_session_id


class TokenNotFoundError(TokenStoreError):
    """No TokenRecord exists for the authentication session."""

    def __init__(self, auth_session_id: str) -> None:
        super().__init__(auth_session_id, "No tokens found for session")


class RefreshTokenMissingError(TokenStoreError):
    """The TokenRecord carries no refresh token; re-authentication is required."""

    def __init__(self, auth_session_id: str) -> None:
        super().__init__(auth_session_id, "No refresh token available for session")


class TokenStorageError(TokenStoreError):
    """A persisted TokenRecord could not be decoded."""
