"""Token models for the OpenID Connect client.

Contains the token set produced by a protocol exchange, the wire-level token
endpoint request and response shapes, and the identity the tokens belong to.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, ConfigDict


class TokenType(str, Enum):
    """Discriminator for the token slots held per account."""

    ID = "id"
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class AccountIdentity:
    """Opaque key identifying whose tokens are stored."""

    name: str
    type: str

    def __str__(self) -> str:
        return f"{self.type}:{self.name}"


class TokenSet(BaseModel):
    """Immutable set of tokens produced by one successful exchange.

    A refresh may omit ``refresh_token`` when the provider does not rotate
    it; the previous one must then be kept by whoever stores the set.
    """

    model_config = ConfigDict(frozen=True)

    id_token: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None

    # Expiry hints
    token_type: str = "Bearer"
    expires_at: float | None = None  # Unix timestamp
    scope: str | None = None

    def is_expired(self, buffer_seconds: float = 30.0) -> bool:
        """Check if the access token is past its expiry hint.

        Args:
            buffer_seconds: Treat the token as expired this many seconds early
        """
        if self.expires_at is None:
            return False
        return time.time() >= (self.expires_at - buffer_seconds)

    def with_refresh_token(self, refresh_token: str | None) -> TokenSet:
        """Return a copy carrying ``refresh_token`` if this set has none."""
        if self.refresh_token or not refresh_token:
            return self
        return self.model_copy(update={"refresh_token": refresh_token})

    def slots(self) -> dict[TokenType, str | None]:
        return {
            TokenType.ID: self.id_token,
            TokenType.ACCESS: self.access_token,
            TokenType.REFRESH: self.refresh_token,
        }


class TokenResponse(BaseModel):
    """Token endpoint response (RFC 6749 Section 5, OIDC Core 3.1.3.3).

    Represents both successful responses and error responses.
    """

    model_config = ConfigDict(extra="allow")

    # Success response fields
    access_token: str | None = None
    id_token: str | None = None
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None  # Seconds until expiry
    scope: str | None = None

    # Error response fields
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    def is_success(self) -> bool:
        return self.error is None and self.access_token is not None

    def calculate_expires_at(self) -> float | None:
        if self.expires_in is None:
            return None
        return time.time() + self.expires_in

    def to_token_set(self) -> TokenSet:
        """Convert a successful token response to a TokenSet.

        Raises:
            ValueError: If response is not successful
        """
        if not self.is_success():
            raise ValueError("Cannot convert error response to TokenSet")

        return TokenSet(
            id_token=self.id_token,
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            token_type=self.token_type,
            expires_at=self.calculate_expires_at(),
            scope=self.scope,
        )


@dataclass(frozen=True)
class TokenRequest:
    """Authorization code exchange parameters (RFC 6749 Section 4.1.3)."""

    token_endpoint: str
    code: str
    redirect_uri: str
    client_id: str
    client_secret: str

    grant_type: str = "authorization_code"

    def to_form_data(self) -> dict[str, str]:
        """Convert to form data for application/x-www-form-urlencoded request.

        Token requests must use form encoding, not JSON.
        """
        return {
            "grant_type": self.grant_type,
            "code": self.code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
        }


@dataclass(frozen=True)
class RefreshTokenRequest:
    """Refresh token request parameters (RFC 6749 Section 6)."""

    token_endpoint: str
    refresh_token: str
    client_id: str
    client_secret: str

    grant_type: str = "refresh_token"
    scope: str | None = None

    def to_form_data(self) -> dict[str, str]:
        data = {
            "grant_type": self.grant_type,
            "refresh_token": self.refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }

        if self.scope:
            data["scope"] = self.scope

        return data
