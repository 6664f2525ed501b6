"""
HTTP client for the model registry and library pages.

Only plain GETs: manifests (JSON), listing/detail/tag pages (HTML). Blob
transfers go through ``transfer.download`` on the same session.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import urljoin

import aiohttp
import orjson

from modelpull.config import ClientConfig
from modelpull.errors import NetworkError, TransferTimeoutError
from modelpull.transfer.backoff import sleep_ms, with_retry_on_transient

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

logger = logging.getLogger(__name__)


class RegistryClient:
    """
    Async GET client bound to one base URL.

    The session is created lazily and owned by the client unless one is
    passed in, in which case the caller closes it.
    """

    def __init__(
        self,
        base_url: str,
        config: ClientConfig | None = None,
        session: aiohttp.ClientSession | None = None,
        *,
        sleep: Callable[[int], Awaitable[None]] = sleep_ms,
    ) -> None:
        """
        Initialize the client.

        Args:
            base_url: Root URL every relative path is resolved against.
            config: Client configuration (timeouts, proxy, retry budget).
            session: Optional externally owned session.
            sleep: Millisecond sleep used between retries.
        """
        self.base_url = base_url if base_url.endswith("/") else f"{base_url}/"
        self.config = config or ClientConfig()
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = self.config.build_session()
            self._owns_session = True
        return self._session

    async def get_session(self) -> aiohttp.ClientSession:
        """Session shared with blob transfers."""
        return await self._get_session()

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> RegistryClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def url(self, path: str) -> str:
        """Resolve ``path`` against the base URL."""
        return urljoin(self.base_url, path)

    async def _get(self, path: str, headers: Mapping[str, str] | None = None) -> bytes:
        """
        Single GET attempt returning the body.

        Raises:
            NetworkError: Transport failure or HTTP status >= 400.
            TransferTimeoutError: Session timeout expired.
        """
        url = self.url(path)
        session = await self._get_session()
        try:
            async with session.get(url, headers=headers, proxy=self.config.proxy) as response:
                if response.status >= 400:
                    text = await response.text()
                    logger.error(
                        "HTTP error",
                        extra={"url": url, "status": response.status, "body": text[:500]},
                    )
                    msg = f"GET {url} failed with HTTP {response.status}"
                    raise NetworkError(msg, url=url, status=response.status)
                return await response.read()
        except asyncio.TimeoutError as e:
            msg = f"Timed out fetching {url}"
            raise TransferTimeoutError(msg, url=url) from e
        except aiohttp.ClientError as e:
            logger.warning("Request failed", extra={"url": url, "error": str(e)})
            msg = f"GET {url} failed: {e}"
            raise NetworkError(msg, url=url) from e

    async def fetch_bytes(self, path: str, headers: Mapping[str, str] | None = None) -> bytes:
        """GET ``path`` with transient failures retried under the configured backoff."""
        return await with_retry_on_transient(
            self.config.build_backoff(),
            lambda: self._get(path, headers),
            sleep=self._sleep,
        )

    async def fetch_text(self, path: str) -> str:
        """GET ``path`` and decode the body as UTF-8."""
        body = await self.fetch_bytes(path)
        return body.decode("utf-8", errors="replace")

    async def fetch_json(self, path: str, headers: Mapping[str, str] | None = None) -> Any:
        """
        GET ``path`` and decode the body as JSON.

        Raises:
            NetworkError: If the body is not valid JSON.
        """
        body = await self.fetch_bytes(path, headers)
        try:
            return orjson.loads(body)
        except orjson.JSONDecodeError as e:
            url = self.url(path)
            msg = f"Invalid JSON from {url}: {e}"
            raise NetworkError(msg, url=url) from e
