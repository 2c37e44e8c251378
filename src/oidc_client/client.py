"""OpenID Connect client for a single configured provider.

Wires the token store, protocol client, lifecycle manager and request
executor together, and drives the login collaborator when an account needs
to be (re)authorized.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from oidc_client.models.options import ClientOptions, ProviderConfig
from oidc_client.models.requests import RequestSpec
from oidc_client.models.tokens import AccountIdentity, TokenSet
from oidc_client.services.discovery import ProviderDiscovery
from oidc_client.services.executor import (
    AuthenticatedRequestExecutor,
    AuthFailurePolicy,
)
from oidc_client.services.flow import AuthorizationFlow
from oidc_client.services.lifecycle import AccountState, TokenLifecycleManager
from oidc_client.services.protocol import OIDCProtocolClient
from oidc_client.store.base import TokenStore
from oidc_client.store.memory import InMemoryTokenStore

logger = logging.getLogger(__name__)


class LoginHandler(Protocol):
    """Protocol for the user-facing authorization step.

    Allows different strategies for browser interaction:
    - Embedded web view
    - System browser plus local redirect server
    - Manual copy and paste for CLI tools
    """

    async def authorize(self, authorization_url: str) -> str:
        """Show ``authorization_url`` to the user and return the redirect URL.

        The full redirect URL is returned rather than just the code so the
        client can check its ``state`` and read provider errors from it.

        Raises:
            AuthorizationCancelled: If the user abandons the login
        """
        ...


class OIDCClient:
    """Complete OpenID Connect client.

    Provides a high-level interface over the token lifecycle: authorize an
    account once, then make authenticated requests that refresh and retry
    transparently.
    """

    def __init__(
        self,
        provider: ProviderConfig,
        store: TokenStore | None = None,
        policy: AuthFailurePolicy | None = None,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the client.

        Args:
            provider: Endpoints of the OpenID provider
            store: Credential store, in-memory if not given
            policy: Auth failure detection for authenticated requests
            timeout: HTTP request timeout in seconds
            http_client: Optional client shared by all services
        """
        self.provider = provider
        self.store = store or InMemoryTokenStore()

        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.protocol = OIDCProtocolClient(
            provider, timeout=timeout, http_client=self._http_client
        )
        self.lifecycle = TokenLifecycleManager(
            self.store, self.protocol, provider.token_endpoint
        )
        self.executor = AuthenticatedRequestExecutor(
            self.lifecycle,
            policy=policy,
            timeout=timeout,
            http_client=self._http_client,
            userinfo_endpoint=provider.userinfo_endpoint,
        )
        self.flow = AuthorizationFlow(self.protocol)

    @classmethod
    async def from_issuer(
        cls,
        issuer_url: str,
        store: TokenStore | None = None,
        policy: AuthFailurePolicy | None = None,
        timeout: float = 30.0,
    ) -> OIDCClient:
        """Create a client from the provider's discovery document.

        Raises:
            DiscoveryError: If the provider metadata cannot be fetched
        """
        discovery = ProviderDiscovery(timeout=timeout)
        try:
            provider = await discovery.discover(issuer_url)
        finally:
            await discovery.close()
        return cls(provider, store=store, policy=policy, timeout=timeout)

    async def __aenter__(self) -> OIDCClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def authorize(
        self,
        account: AccountIdentity,
        options: ClientOptions,
        handler: LoginHandler,
        extra_params: dict[str, str] | None = None,
    ) -> TokenSet:
        """Run the full authorization code flow for ``account``.

        1. Build the authorization URL
        2. Let the login collaborator capture the redirect
        3. Validate the callback
        4. Exchange the code and store the tokens

        Raises:
            AuthorizationCancelled: If the user abandons the login
            AuthorizationError: If the provider refused authorization
            ProtocolError: If the code exchange fails
        """
        logger.info(f"Starting authorization for {account}")

        authorization_url, state = self.flow.start(options, extra_params)
        callback_url = await handler.authorize(authorization_url)
        code = self.flow.handle_callback(callback_url, state)

        return await self.lifecycle.complete_authorization(account, options, code)

    def state(self, account: AccountIdentity) -> AccountState:
        return self.lifecycle.state(account)

    async def get_access_token(
        self, account: AccountIdentity, options: ClientOptions
    ) -> str:
        return await self.lifecycle.get_access_token(account, options)

    async def execute(
        self,
        request: RequestSpec,
        account: AccountIdentity,
        options: ClientOptions,
        *,
        timeout: float | None = None,
    ) -> httpx.Response:
        return await self.executor.execute(request, account, options, timeout=timeout)

    async def get_json(
        self,
        url: str,
        account: AccountIdentity,
        options: ClientOptions,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        return await self.executor.get_json(url, account, options, timeout=timeout)

    async def fetch_user_info(
        self,
        account: AccountIdentity,
        options: ClientOptions,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        return await self.executor.fetch_user_info(account, options, timeout=timeout)

    def remove_account(self, account: AccountIdentity) -> None:
        logger.info(f"Removing account {account}")
        self.lifecycle.remove_account(account)

    async def close(self) -> None:
        """Close all service connections."""
        await self._http_client.aclose()
