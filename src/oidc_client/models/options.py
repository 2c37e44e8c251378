"""Client and provider configuration models.

ClientOptions is supplied by the embedding application on every call.
ProviderConfig describes the single OpenID provider a client talks to,
either built by hand or from OIDC discovery metadata.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from oidc_client.models.errors import ConfigError

DEFAULT_SCOPES = ("openid", "profile", "offline_access")


class ClientOptions(BaseModel):
    """OIDC client registration details used for every protocol call.

    The ``offline_access`` scope is what makes providers issue refresh
    tokens; some providers call it ``offline`` instead.
    """

    model_config = ConfigDict(frozen=True)

    client_id: str = ""
    client_secret: str = ""
    redirect_url: str = ""
    scopes: tuple[str, ...] = DEFAULT_SCOPES

    @field_validator("scopes", mode="before")
    @classmethod
    def normalize_scopes(cls, v: object) -> tuple[str, ...]:
        if v is None:
            return ()
        if isinstance(v, str):
            v = v.split()
        # Ordered set: keep first occurrence
        seen: dict[str, None] = {}
        for scope in v:
            scope = str(scope).strip()
            if scope:
                seen.setdefault(scope, None)
        return tuple(seen)

    @model_validator(mode="after")
    def check_required(self) -> ClientOptions:
        missing = [
            name
            for name in ("client_id", "client_secret", "redirect_url")
            if not getattr(self, name)
        ]
        if missing:
            raise ConfigError(f"Missing OIDC client options: {', '.join(missing)}")
        return self

    def scope_string(self) -> str:
        return " ".join(self.scopes)


class ProviderConfig(BaseModel):
    """OpenID provider endpoints (OpenID Connect Discovery 1.0 Section 3).

    Only ``token_endpoint`` is needed for refreshing; the other endpoints are
    checked when the operation that needs them runs.
    """

    model_config = ConfigDict(extra="ignore")

    token_endpoint: str
    issuer: str | None = None
    authorization_endpoint: str | None = None
    userinfo_endpoint: str | None = None

    # Optional but commonly advertised
    end_session_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    response_types_supported: list[str] = Field(default=["code"])
    grant_types_supported: list[str] = Field(
        default=["authorization_code", "refresh_token"]
    )

    @field_validator("response_types_supported")
    @classmethod
    def validate_code_flow_support(cls, v: list[str]) -> list[str]:
        if "code" not in v:
            raise ValueError("Provider must support the authorization code flow")
        return v

    def require(self, endpoint: str) -> str:
        """Return the named endpoint URL or raise ConfigError if unset."""
        value = getattr(self, endpoint, None)
        if not value:
            raise ConfigError(f"Provider configuration has no {endpoint}")
        return value
