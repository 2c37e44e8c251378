"""Authenticated request execution with a single retry on rejected tokens.

Attaches the account's access token to an outbound request. When the
resource server rejects the token, the executor invalidates it and tries
exactly once more with a freshly obtained one.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from oidc_client.models.errors import (
    ConfigError,
    ExecutionError,
    ExecutionErrorKind,
    ProtocolError,
    ProtocolErrorKind,
    ReauthRequired,
)
from oidc_client.models.options import ClientOptions
from oidc_client.models.requests import RequestSpec
from oidc_client.models.tokens import AccountIdentity, TokenType
from oidc_client.services.lifecycle import TokenLifecycleManager

logger = logging.getLogger(__name__)

DEFAULT_INVALID_TOKEN_MARKERS = ("invalid_grant", "Access Token not valid")

_AUTH_REJECTED_STATUSES = (401, 403)


class AuthFailurePolicy(Protocol):
    """Decides whether a failed response means the access token was rejected."""

    def is_auth_failure(self, response: httpx.Response) -> bool: ...


class InvalidTokenMarkerPolicy:
    """Treats 401, 403 and marked 400 responses as rejected tokens.

    Some providers answer a stale token with 400 instead of 401 and only say
    so in the body, so a 400 counts when its body contains one of ``markers``.
    """

    def __init__(self, markers: tuple[str, ...] = DEFAULT_INVALID_TOKEN_MARKERS):
        self.markers = markers

    def is_auth_failure(self, response: httpx.Response) -> bool:
        if response.status_code in _AUTH_REJECTED_STATUSES:
            return True
        if response.status_code == 400:
            body = response.text
            return any(marker in body for marker in self.markers)
        return False


class AnyBadRequestPolicy:
    """Treats 401, 403 and every 400 response as rejected tokens."""

    def is_auth_failure(self, response: httpx.Response) -> bool:
        return response.status_code in (400, *_AUTH_REJECTED_STATUSES)


class AuthenticatedRequestExecutor:
    """Sends requests on behalf of an account with bearer credentials.

    Retry contract:
    1. Get an access token; if re-authorization is needed, fail immediately
    2. Send the request with the token attached
    3. Return any 2xx response
    4. On the first auth failure (per ``policy``), invalidate the access
       token and start over
    5. Anything else, or a second failure, is unrecoverable
    """

    def __init__(
        self,
        lifecycle: TokenLifecycleManager,
        policy: AuthFailurePolicy | None = None,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        userinfo_endpoint: str | None = None,
    ):
        """Initialize the executor.

        Args:
            lifecycle: Source of access tokens for each account
            policy: Auth failure detection, defaults to InvalidTokenMarkerPolicy
            timeout: Default HTTP request timeout in seconds
            http_client: Optional client to share; created if not given
            userinfo_endpoint: Provider user info URL for fetch_user_info
        """
        self._lifecycle = lifecycle
        self.policy = policy or InvalidTokenMarkerPolicy()
        self.timeout = timeout
        self.userinfo_endpoint = userinfo_endpoint
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def execute(
        self,
        request: RequestSpec,
        account: AccountIdentity,
        options: ClientOptions,
        *,
        timeout: float | None = None,
    ) -> httpx.Response:
        """Send ``request`` as ``account``, retrying once on a rejected token.

        Returns:
            The successful (2xx) response

        Raises:
            ExecutionError: If re-authorization is required or the request
                failed in a way a new token cannot fix
            ProtocolError: If a token refresh or the request itself hit a
                network or provider failure
        """
        can_retry = True

        while True:
            try:
                access_token = await self._lifecycle.get_access_token(
                    account, options
                )
            except ReauthRequired as e:
                raise ExecutionError(
                    ExecutionErrorKind.REAUTH_REQUIRED, message=e.reason
                ) from e

            response = await self._send(request, access_token, timeout)

            if response.is_success:
                return response

            if can_retry and self.policy.is_auth_failure(response):
                logger.warning(
                    f"{request.method} {request.url} rejected with "
                    f"{response.status_code}, renewing token and retrying"
                )
                self._lifecycle.invalidate(account, TokenType.ACCESS, access_token)
                can_retry = False
                continue

            logger.error(
                f"{request.method} {request.url} failed with {response.status_code}"
            )
            raise ExecutionError(
                ExecutionErrorKind.UNRECOVERABLE,
                status=response.status_code,
                message=response.reason_phrase,
                body=response.text or "empty body",
            )

    async def get_json(
        self,
        url: str,
        account: AccountIdentity,
        options: ClientOptions,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """GET ``url`` and decode the JSON object it returns."""
        response = await self.execute(
            RequestSpec("GET", url, headers={"Accept": "application/json"}),
            account,
            options,
            timeout=timeout,
        )

        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(
                ProtocolErrorKind.MALFORMED,
                f"Response from {url} is not valid JSON: {e}",
                status=response.status_code,
                body=response.text,
            ) from e

        if not isinstance(data, dict):
            raise ProtocolError(
                ProtocolErrorKind.MALFORMED,
                f"Response from {url} is not a JSON object",
                status=response.status_code,
                body=response.text,
            )
        return data

    async def fetch_user_info(
        self,
        account: AccountIdentity,
        options: ClientOptions,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Fetch the account's claims from the provider's user info endpoint."""
        if not self.userinfo_endpoint:
            raise ConfigError("Provider configuration has no userinfo_endpoint")
        return await self.get_json(
            self.userinfo_endpoint, account, options, timeout=timeout
        )

    async def _send(
        self, request: RequestSpec, access_token: str, timeout: float | None
    ) -> httpx.Response:
        http_request = request.build(self._http_client, access_token, timeout)

        try:
            return await self._http_client.send(http_request)
        except httpx.HTTPError as e:
            raise ProtocolError(
                ProtocolErrorKind.NETWORK,
                f"HTTP error during {request.method} {request.url}: {e}",
            ) from e

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self._http_client.aclose()
