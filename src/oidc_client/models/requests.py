"""Outbound resource request description."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx


@dataclass(frozen=True)
class RequestSpec:
    """An HTTP request to send with bearer credentials attached.

    Immutable so the same request can be replayed on retry with a fresh token.
    """

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] | None = None
    json: Any = None
    content: bytes | str | None = None

    def build(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        timeout: float | None = None,
    ) -> httpx.Request:
        """Build an httpx request carrying ``access_token`` as a bearer credential."""
        headers = {
            k: v for k, v in self.headers.items() if k.lower() != "authorization"
        }
        headers["Authorization"] = f"Bearer {access_token}"

        return client.build_request(
            self.method.upper(),
            self.url,
            headers=headers,
            params=self.params,
            json=self.json,
            content=self.content,
            timeout=httpx.USE_CLIENT_DEFAULT if timeout is None else timeout,
        )
