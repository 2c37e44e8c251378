"""Token lifecycle management.

Decides, for each request for a token, whether the cached token can be used,
whether the tokens must be refreshed, or whether the user has to authorize
the client again. All persistence goes through the injected TokenStore and
all wire traffic through OIDCProtocolClient.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from oidc_client.models.errors import ProtocolError, ReauthRequired
from oidc_client.models.options import ClientOptions
from oidc_client.models.tokens import AccountIdentity, TokenSet, TokenType
from oidc_client.services.protocol import OIDCProtocolClient
from oidc_client.store.base import TokenStore

logger = logging.getLogger(__name__)


class AccountState(str, Enum):
    NO_TOKENS = "no_tokens"
    HAS_REFRESH_ONLY = "has_refresh_only"
    HAS_FULL_SET = "has_full_set"
    NEEDS_REAUTHORIZATION = "needs_reauthorization"


class TokenLifecycleManager:
    """Per-account token state machine.

    NO_TOKENS -> HAS_FULL_SET after an authorization completes. Invalidating
    the access token drops to HAS_REFRESH_ONLY, and the next request refreshes
    back to HAS_FULL_SET. A refresh rejected with ``invalid_grant`` moves
    the account to NEEDS_REAUTHORIZATION until a new authorization is stored.

    At most one refresh runs per account. Callers arriving while it is in
    flight wait for its result instead of issuing their own. The refresh runs
    as a shielded task, so a caller giving up does not undo a refresh that
    other callers (or the store) depend on.
    """

    def __init__(
        self,
        store: TokenStore,
        protocol_client: OIDCProtocolClient,
        token_endpoint: str,
        timeout: float | None = None,
    ):
        """Initialize the lifecycle manager.

        Args:
            store: Credential store holding the per-account tokens
            protocol_client: Client for the provider's token endpoint
            token_endpoint: Provider token endpoint URL
            timeout: Per-refresh timeout, defaults to the protocol client's
        """
        self._store = store
        self._protocol = protocol_client
        self.token_endpoint = token_endpoint
        self.timeout = timeout

        self._refresh_tasks: dict[AccountIdentity, asyncio.Task[TokenSet]] = {}
        self._needs_reauth: set[AccountIdentity] = set()

    def state(self, account: AccountIdentity) -> AccountState:
        if account in self._needs_reauth:
            return AccountState.NEEDS_REAUTHORIZATION
        if self._store.get(account, TokenType.ACCESS):
            return AccountState.HAS_FULL_SET
        if self._store.get(account, TokenType.REFRESH):
            return AccountState.HAS_REFRESH_ONLY
        return AccountState.NO_TOKENS

    async def get_access_token(
        self, account: AccountIdentity, options: ClientOptions
    ) -> str:
        """Return a usable access token for ``account``.

        Raises:
            ReauthRequired: If no refresh token is available or it was rejected
            ProtocolError: If the refresh failed for any other reason
        """
        return await self.get_token(account, options, TokenType.ACCESS)

    async def get_token(
        self,
        account: AccountIdentity,
        options: ClientOptions,
        token_type: TokenType,
    ) -> str:
        """Return the cached token of ``token_type``, refreshing if it is absent.

        Refresh tokens are only consumed internally and cannot be requested.
        """
        if token_type is TokenType.REFRESH:
            raise ValueError("Refresh tokens are not handed out to callers")

        token = self._store.get(account, token_type)
        if token:
            return token

        logger.debug(f"No cached {token_type.value} token for {account}")

        refresh_token = self._store.get(account, TokenType.REFRESH)
        if not refresh_token:
            logger.debug(f"No refresh token for {account}, authorization required")
            raise ReauthRequired(account)

        token_set = await self._refresh(account, options, refresh_token)

        token = token_set.slots()[token_type] or self._store.get(account, token_type)
        if not token:
            raise ReauthRequired(
                account, f"Provider did not issue a {token_type.value} token"
            )
        return token

    def invalidate(
        self,
        account: AccountIdentity,
        token_type: TokenType,
        token: str | None = None,
    ) -> None:
        """Clear one token slot so the next request must refresh it.

        When ``token`` is given, the slot is only cleared while it still holds
        that value. A request rejected with a token another caller has already
        replaced then leaves the replacement alone.
        """
        if self._store.invalidate(account, token_type, token):
            logger.debug(f"Invalidated {token_type.value} token for {account}")
        else:
            logger.debug(
                f"Stored {token_type.value} token for {account} already replaced"
            )

    def store_token_set(self, account: AccountIdentity, token_set: TokenSet) -> None:
        """Store a complete token set, such as one from a code exchange.

        Keeps the previous refresh token when the set carries none.
        """
        token_set = token_set.with_refresh_token(
            self._store.get(account, TokenType.REFRESH)
        )
        self._store.set_many(account, token_set.slots())
        self._needs_reauth.discard(account)

    async def complete_authorization(
        self, account: AccountIdentity, options: ClientOptions, code: str
    ) -> TokenSet:
        """Exchange an authorization code and store the resulting tokens."""
        token_set = await self._protocol.exchange_code_for_tokens(
            self.token_endpoint, options, code, timeout=self.timeout
        )
        self.store_token_set(account, token_set)
        logger.info(f"Stored new tokens for {account}")
        return token_set

    def remove_account(self, account: AccountIdentity) -> None:
        task = self._refresh_tasks.pop(account, None)
        if task is not None:
            task.cancel()
        self._needs_reauth.discard(account)
        self._store.remove(account)

    async def _refresh(
        self, account: AccountIdentity, options: ClientOptions, refresh_token: str
    ) -> TokenSet:
        task = self._refresh_tasks.get(account)
        if task is None:
            task = asyncio.create_task(
                self._run_refresh(account, options, refresh_token)
            )
            self._refresh_tasks[account] = task
            task.add_done_callback(lambda t: self._forget_refresh(account, t))
        else:
            logger.debug(f"Joining in-flight refresh for {account}")

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and not (current and current.cancelling()):
                # The refresh itself was cancelled by remove_account
                raise ReauthRequired(account, "Account removed") from None
            raise

    def _forget_refresh(
        self, account: AccountIdentity, task: asyncio.Task[TokenSet]
    ) -> None:
        if self._refresh_tasks.get(account) is task:
            del self._refresh_tasks[account]
        # Mark the outcome as retrieved even if every waiter was cancelled
        if not task.cancelled():
            task.exception()

    async def _run_refresh(
        self, account: AccountIdentity, options: ClientOptions, refresh_token: str
    ) -> TokenSet:
        try:
            token_set = await self._protocol.refresh_tokens(
                self.token_endpoint, options, refresh_token, timeout=self.timeout
            )
        except ProtocolError as e:
            if e.is_invalid_grant:
                logger.warning(
                    f"Refresh token for {account} rejected, authorization required"
                )
                self._store.invalidate(account, TokenType.REFRESH)
                self._needs_reauth.add(account)
                raise ReauthRequired(account, "Refresh token rejected") from e

            logger.error(f"Token refresh failed for {account}: {e}")
            raise

        # Only the slots the provider returned are replaced
        received = {t: v for t, v in token_set.slots().items() if v}
        self._store.set_many(account, received)
        self._needs_reauth.discard(account)

        logger.info(f"Refreshed tokens for {account}")
        return token_set
