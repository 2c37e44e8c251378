"""OpenID provider discovery.

Implements OpenID Connect Discovery 1.0 to find the provider's authorization,
token and user info endpoints from its issuer URL.
"""

from __future__ import annotations

import logging
from urllib.parse import urljoin, urlparse

import httpx
from pydantic import ValidationError

from oidc_client.models.errors import DiscoveryError
from oidc_client.models.options import ProviderConfig

logger = logging.getLogger(__name__)


class ProviderDiscovery:
    """Fetches OpenID provider metadata from the well-known endpoint.

    Tries path-aware discovery first for issuers hosted below the root, then
    the root document, stopping early on a server error.
    """

    def __init__(self, timeout: float = 30.0, http_client: httpx.AsyncClient | None = None):
        """Initialize provider discovery.

        Args:
            timeout: HTTP request timeout in seconds
            http_client: Optional client to share; created if not given
        """
        self.timeout = timeout
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def discover(self, issuer_url: str) -> ProviderConfig:
        """Discover the endpoints of the provider at ``issuer_url``.

        Returns:
            ProviderConfig built from the provider metadata

        Raises:
            DiscoveryError: If no discovery URL yields valid metadata, or the
                metadata names a different issuer
        """
        discovery_urls = self._build_discovery_urls(issuer_url)

        for url in discovery_urls:
            try:
                logger.debug(f"Trying provider metadata discovery: {url}")
                response = await self._http_client.get(url)

                if response.status_code == 200:
                    config = ProviderConfig.model_validate_json(response.text)
                    self._check_issuer(issuer_url, config)
                    logger.debug(f"Discovered provider metadata from: {url}")
                    return config
                elif response.status_code >= 500:
                    # Server error - don't try other URLs
                    break

            except ValidationError:
                # Invalid metadata - try next URL
                continue
            except httpx.RequestError:
                # Network error - try next URL
                continue

        raise DiscoveryError(
            f"Failed to discover provider metadata for {issuer_url}. "
            f"Tried URLs: {discovery_urls}"
        )

    def _check_issuer(self, issuer_url: str, config: ProviderConfig) -> None:
        # Metadata must name the issuer it was requested for (Discovery 4.3)
        if (config.issuer or "").rstrip("/") != issuer_url.rstrip("/"):
            raise DiscoveryError(
                f"Issuer mismatch: requested {issuer_url}, "
                f"metadata declares {config.issuer}"
            )

    def _build_discovery_urls(self, issuer_url: str) -> list[str]:
        """Build ordered list of discovery URLs to try.

        OIDC Discovery appends the well-known suffix to the issuer path;
        RFC 8414 style inserts it before the path. Both are common.
        """
        parsed = urlparse(issuer_url)
        base_url = f"{parsed.scheme}://{parsed.netloc}"
        path = parsed.path.rstrip("/")
        urls = []

        if path:
            urls.append(f"{base_url}{path}/.well-known/openid-configuration")
            urls.append(urljoin(base_url, f"/.well-known/openid-configuration{path}"))

        urls.append(urljoin(base_url, "/.well-known/openid-configuration"))

        return urls

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._http_client.aclose()
