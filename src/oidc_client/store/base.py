"""Token store interface.

The credential store is an external collaborator: a platform keychain, a
database table, an encrypted file. The lifecycle manager only needs the
operations below, keyed by (account, token type).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping

from oidc_client.models.tokens import AccountIdentity, TokenType


class TokenStore(ABC):
    """Per-account holder for the ID, access and refresh token strings.

    Implementations must make every method atomic per account: a reader must
    never observe half of a ``set_many`` write.
    """

    @abstractmethod
    def get(self, account: AccountIdentity, token_type: TokenType) -> str | None:
        """Return the stored token, or None if absent or invalidated."""
        ...

    @abstractmethod
    def set_many(
        self, account: AccountIdentity, tokens: Mapping[TokenType, str | None]
    ) -> None:
        """Write several slots in one atomic step.

        A None value clears that slot; token types not in ``tokens`` are left
        untouched.
        """
        ...

    @abstractmethod
    def remove(self, account: AccountIdentity) -> None:
        """Forget every token of ``account``."""
        ...

    @abstractmethod
    def accounts(self) -> list[AccountIdentity]:
        """List accounts that currently hold at least one token."""
        ...

    def set(
        self, account: AccountIdentity, token_type: TokenType, value: str | None
    ) -> None:
        self.set_many(account, {token_type: value})

    def invalidate(
        self,
        account: AccountIdentity,
        token_type: TokenType,
        value: str | None = None,
    ) -> bool:
        """Clear one slot, only if it still holds ``value`` when one is given.

        Returns whether the slot was cleared. Stores shared between threads
        should override this to make the compare and clear a single step.
        """
        if value is not None and self.get(account, token_type) != value:
            return False
        self.set_many(account, {token_type: None})
        return True
