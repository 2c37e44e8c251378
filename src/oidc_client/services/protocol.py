"""OpenID Connect token endpoint protocol client.

Translates between the OIDC wire protocol and TokenSet: builds authorization
URLs, exchanges authorization codes and refreshes tokens (RFC 6749 Sections
4.1 and 6, OIDC Core 3.1). Holds no token state of its own.
"""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from oidc_client.models.errors import ConfigError, ProtocolError, ProtocolErrorKind
from oidc_client.models.flow import AuthorizationRequest
from oidc_client.models.options import ClientOptions, ProviderConfig
from oidc_client.models.tokens import (
    RefreshTokenRequest,
    TokenRequest,
    TokenResponse,
    TokenSet,
)

logger = logging.getLogger(__name__)

_FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


class OIDCProtocolClient:
    """Stateless client for the provider's authorization and token endpoints.

    Uses application/x-www-form-urlencoded encoding for token requests and
    maps every failure onto ProtocolError:
    - NETWORK for transport errors and timeouts
    - INVALID_GRANT for a 400 reply carrying ``invalid_grant``
    - REJECTED for any other error reply
    - MALFORMED for success replies that cannot be used
    """

    def __init__(
        self,
        provider: ProviderConfig | None = None,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the protocol client.

        Args:
            provider: Provider endpoints, needed for building authorization URLs
            timeout: Default HTTP request timeout in seconds
            http_client: Optional client to share; created if not given
        """
        self.provider = provider
        self.timeout = timeout
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    def build_authorization_url(
        self,
        options: ClientOptions,
        *,
        state: str | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> str:
        """Build the URL the login collaborator should open.

        Args:
            options: Client options supplying client_id, redirect URL and scopes
            state: Optional CSRF state parameter
            extra_params: Provider-specific query parameters

        Raises:
            ConfigError: If no authorization endpoint is configured
        """
        if self.provider is None:
            raise ConfigError("No provider configured for authorization")

        request = AuthorizationRequest(
            authorization_endpoint=self.provider.require("authorization_endpoint"),
            client_id=options.client_id,
            redirect_uri=options.redirect_url,
            scope=options.scope_string() or None,
            state=state,
            extra_params=dict(extra_params or {}),
        )
        return request.build_authorization_url()

    async def exchange_code_for_tokens(
        self,
        token_endpoint: str,
        options: ClientOptions,
        code: str,
        *,
        timeout: float | None = None,
    ) -> TokenSet:
        """Exchange an authorization code for the initial token set.

        Args:
            token_endpoint: Provider token endpoint URL
            options: Client options
            code: Single-use authorization code from the login collaborator
            timeout: Per-call timeout overriding the client default

        Returns:
            TokenSet: Complete token set including a refresh token

        Raises:
            ProtocolError: On network, grant, or response format failures
        """
        logger.debug(f"Exchanging authorization code at {token_endpoint}")

        token_request = TokenRequest(
            token_endpoint=token_endpoint,
            code=code,
            redirect_uri=options.redirect_url,
            client_id=options.client_id,
            client_secret=options.client_secret,
        )

        token_response = await self._post_token_request(
            token_endpoint, token_request.to_form_data(), timeout, "code exchange"
        )

        if not token_response.refresh_token:
            raise ProtocolError(
                ProtocolErrorKind.MALFORMED,
                "Code exchange response missing required refresh_token",
            )

        logger.info("Authorization code exchange successful")
        return token_response.to_token_set()

    async def refresh_tokens(
        self,
        token_endpoint: str,
        options: ClientOptions,
        refresh_token: str,
        *,
        scope: str | None = None,
        timeout: float | None = None,
    ) -> TokenSet:
        """Obtain a fresh token set with a refresh token.

        The returned set's ``refresh_token`` is None when the provider did
        not rotate it; callers must keep the one they already have.

        ``scope`` is only sent when given. Without it the provider issues
        tokens for the scope of the original grant.

        Raises:
            ProtocolError: On network, grant, or response format failures
        """
        logger.debug(f"Refreshing tokens at {token_endpoint}")

        refresh_request = RefreshTokenRequest(
            token_endpoint=token_endpoint,
            refresh_token=refresh_token,
            client_id=options.client_id,
            client_secret=options.client_secret,
            scope=scope,
        )

        token_response = await self._post_token_request(
            token_endpoint, refresh_request.to_form_data(), timeout, "token refresh"
        )

        logger.info("Token refresh successful")
        return token_response.to_token_set()

    async def _post_token_request(
        self,
        token_endpoint: str,
        form_data: dict[str, str],
        timeout: float | None,
        operation: str,
    ) -> TokenResponse:
        logger.debug(
            f"Token request: grant_type={form_data['grant_type']}, "
            f"client_id={form_data['client_id']}"
        )

        kwargs = {} if timeout is None else {"timeout": timeout}
        try:
            response = await self._http_client.post(
                token_endpoint,
                data=form_data,
                headers=_FORM_HEADERS,
                **kwargs,
            )
        except httpx.HTTPError as e:
            raise ProtocolError(
                ProtocolErrorKind.NETWORK, f"HTTP error during {operation}: {e}"
            ) from e

        return self._parse_token_response(response, operation)

    def _parse_token_response(
        self, response: httpx.Response, operation: str
    ) -> TokenResponse:
        """Parse a token endpoint reply, raising ProtocolError on failure."""
        status = response.status_code

        if not response.is_success:
            body = response.text
            error_code = self._extract_error_code(response)

            logger.warning(f"{operation} failed with {status}: {error_code}")

            if status == 400 and (
                error_code == "invalid_grant" or "invalid_grant" in body
            ):
                raise ProtocolError(
                    ProtocolErrorKind.INVALID_GRANT,
                    f"Grant rejected during {operation}",
                    status=status,
                    body=body,
                )
            raise ProtocolError(
                ProtocolErrorKind.REJECTED,
                f"{operation} failed ({status}): {error_code}",
                status=status,
                body=body,
            )

        try:
            response_data = response.json()
        except ValueError as e:
            raise ProtocolError(
                ProtocolErrorKind.MALFORMED,
                f"Token response is not valid JSON: {e}",
                status=status,
                body=response.text,
            ) from e

        if not isinstance(response_data, dict):
            raise ProtocolError(
                ProtocolErrorKind.MALFORMED,
                "Token response is not a JSON object",
                status=status,
                body=response.text,
            )

        try:
            token_response = TokenResponse.model_validate(response_data)
        except ValidationError as e:
            raise ProtocolError(
                ProtocolErrorKind.MALFORMED,
                f"Invalid token response format: {e}",
                status=status,
                body=response.text,
            ) from e

        if not token_response.is_success():
            raise ProtocolError(
                ProtocolErrorKind.MALFORMED,
                "Token response missing required access_token",
                status=status,
                body=response.text,
            )

        return token_response

    def _extract_error_code(self, response: httpx.Response) -> str:
        try:
            error_data = response.json()
        except ValueError:
            return "unknown_error"
        if isinstance(error_data, dict):
            return str(error_data.get("error", "unknown_error"))
        return "unknown_error"

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self._http_client.aclose()
