"""In-process token store."""

from __future__ import annotations

import threading
from collections.abc import Mapping

from oidc_client.models.tokens import AccountIdentity, TokenType
from oidc_client.store.base import TokenStore


class InMemoryTokenStore(TokenStore):
    """Thread-safe dictionary-backed TokenStore.

    Each account's slots live in their own dict which is replaced, never
    mutated, so a concurrent ``get`` sees either the old set or the new one.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: dict[AccountIdentity, dict[TokenType, str]] = {}

    def get(self, account: AccountIdentity, token_type: TokenType) -> str | None:
        slots = self._tokens.get(account)
        if slots is None:
            return None
        return slots.get(token_type)

    def set_many(
        self, account: AccountIdentity, tokens: Mapping[TokenType, str | None]
    ) -> None:
        with self._lock:
            slots = dict(self._tokens.get(account, {}))
            for token_type, value in tokens.items():
                if value:
                    slots[token_type] = value
                else:
                    slots.pop(token_type, None)

            if slots:
                self._tokens[account] = slots
            else:
                self._tokens.pop(account, None)

    def invalidate(
        self,
        account: AccountIdentity,
        token_type: TokenType,
        value: str | None = None,
    ) -> bool:
        with self._lock:
            slots = self._tokens.get(account)
            if slots is None or token_type not in slots:
                return value is None
            if value is not None and slots[token_type] != value:
                return False

            slots = {t: v for t, v in slots.items() if t is not token_type}
            if slots:
                self._tokens[account] = slots
            else:
                self._tokens.pop(account, None)
            return True

    def remove(self, account: AccountIdentity) -> None:
        with self._lock:
            self._tokens.pop(account, None)

    def accounts(self) -> list[AccountIdentity]:
        with self._lock:
            return list(self._tokens)
