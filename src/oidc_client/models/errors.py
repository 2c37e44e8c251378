"""Exception hierarchy for OpenID Connect client errors.

Provides specific exception types for different failure modes to enable
precise error handling and recovery strategies.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class OIDCError(Exception):
    """Base exception for all OpenID Connect client errors."""

    pass


class ConfigError(OIDCError):
    """Raised when client options or provider configuration are incomplete.

    Fatal. Retrying with the same configuration will fail the same way.
    """

    pass


class ProtocolErrorKind(str, Enum):
    NETWORK = "network"
    INVALID_GRANT = "invalid_grant"
    MALFORMED = "malformed"
    REJECTED = "rejected"


class ProtocolError(OIDCError):
    """Raised when a token endpoint interaction fails.

    The kind tells the caller how to recover:
    - NETWORK: transport failure or timeout, may be retried with backoff
    - INVALID_GRANT: the grant (code or refresh token) is dead
    - MALFORMED: the provider answered with an unusable body, never retried
    - REJECTED: the provider refused the request for another reason
    """

    def __init__(
        self,
        kind: ProtocolErrorKind,
        message: str,
        status: int | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.body = body

    @property
    def is_network(self) -> bool:
        return self.kind is ProtocolErrorKind.NETWORK

    @property
    def is_invalid_grant(self) -> bool:
        return self.kind is ProtocolErrorKind.INVALID_GRANT


class ReauthRequired(OIDCError):
    """Signals that the user must authorize the client again.

    Not a failure of the core: the embedding application is expected to run
    the login flow and hand the resulting code back.
    """

    def __init__(self, account: Any, reason: str = "No usable refresh token"):
        super().__init__(f"Re-authorization required for {account}: {reason}")
        self.account = account
        self.reason = reason


class ExecutionErrorKind(str, Enum):
    REAUTH_REQUIRED = "reauth_required"
    UNRECOVERABLE = "unrecoverable"


class ExecutionError(OIDCError):
    """Raised when an authenticated request cannot be completed.

    Carries the HTTP status, reason phrase and body of the last response
    when one was received so the application can show something useful.
    """

    def __init__(
        self,
        kind: ExecutionErrorKind,
        status: int | None = None,
        message: str | None = None,
        body: str | None = None,
    ):
        parts = [str(p) for p in (status, message, body) if p is not None]
        super().__init__(" ".join(parts) or kind.value)
        self.kind = kind
        self.status = status
        self.message = message
        self.body = body

    @property
    def requires_reauthorization(self) -> bool:
        return self.kind is ExecutionErrorKind.REAUTH_REQUIRED


class DiscoveryError(OIDCError):
    """Raised when OpenID provider discovery fails."""

    pass


class AuthorizationError(OIDCError):
    """Raised when user authorization fails."""

    pass


class AuthorizationCancelled(AuthorizationError):
    """Raised when the user cancels or denies the authorization flow."""

    pass


class AuthorizationCallbackError(OIDCError):
    """Raised when authorization server callback data is malformed or invalid.

    This indicates the authorization server sent an invalid callback URL,
    not that our callback handling code failed.
    """

    pass


class StateValidationError(AuthorizationCallbackError):
    """Raised when OAuth state parameter validation fails.

    This indicates either a missing state parameter or a state mismatch,
    which could indicate a CSRF attack or authorization server issue.
    """

    pass
