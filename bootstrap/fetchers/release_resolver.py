"""
Resolve the latest published catalog release into an archive reference
"""

from typing import Any, Callable, Dict, Optional
import asyncio
import logging

import httpx

from core.exceptions import ReleaseNotFoundError, TransferError
from schemas.catalog import CatalogArchiveRef

logger = logging.getLogger(__name__)


class ReleaseResolver:
    """
    Query a GitHub "latest release" endpoint for the catalog archive asset.

    The asset is the first one named ``data*.zip``; its size and published
    sha256 digest (when present) become the integrity expectations.
    """

    def __init__(
        self,
        releases_url: str,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None
    ):
        self.releases_url = releases_url
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        )

    async def _get_release(self, client: httpx.AsyncClient) -> Dict[str, Any]:
        headers = {"Accept": "application/vnd.github+json"}

        for attempt in range(self.max_retries):
            try:
                response = await client.get(self.releases_url, headers=headers, timeout=self.timeout)
            except httpx.HTTPError as e:
                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.warning(f"Release lookup failed ({type(e).__name__}). Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                raise TransferError(
                    f"Release lookup failed after {self.max_retries} attempts",
                    context={"releases_url": self.releases_url, "attempt": attempt + 1},
                    original_exception=e
                )

            if response.status_code == 404:
                raise ReleaseNotFoundError(
                    "No published catalog release",
                    context={"releases_url": self.releases_url, "status_code": 404}
                )

            if response.status_code >= 500 or response.status_code == 429:
                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.warning(f"Release endpoint returned {response.status_code}. Retrying in {delay} seconds")
                    await asyncio.sleep(delay)
                    continue
                raise TransferError(
                    f"Release endpoint returned {response.status_code}",
                    context={"releases_url": self.releases_url, "status_code": response.status_code}
                )

            if response.status_code >= 400:
                raise TransferError(
                    f"Release endpoint rejected request with {response.status_code}",
                    context={"releases_url": self.releases_url, "status_code": response.status_code},
                    retryable=False
                )

            try:
                return response.json()
            except ValueError as e:
                raise TransferError(
                    "Release endpoint returned invalid JSON",
                    context={"releases_url": self.releases_url},
                    original_exception=e,
                    retryable=False
                )

        raise TransferError("Max retries exceeded", context={"releases_url": self.releases_url})

    async def resolve(self) -> CatalogArchiveRef:
        """
        Returns:
            CatalogArchiveRef for the latest release's catalog asset

        Raises:
            ReleaseNotFoundError: No release, or no data*.zip asset
            TransferError: Endpoint unreachable
        """
        async with self._client_factory() as client:
            release = await self._get_release(client)

        tag_name = release.get("tag_name")
        for asset in release.get("assets") or []:
            name = asset.get("name") or ""
            if name.startswith("data") and name.endswith(".zip") and asset.get("browser_download_url"):
                digest = asset.get("digest") or ""
                ref = CatalogArchiveRef(
                    url=asset["browser_download_url"],
                    expected_sha256=digest if digest.lower().startswith("sha256:") else None,
                    expected_size=asset.get("size"),
                    name=name,
                    version=tag_name
                )
                logger.info(f"Resolved catalog release {tag_name}: {name} ({ref.expected_size} bytes)")
                return ref

        raise ReleaseNotFoundError(
            "Latest release has no catalog archive asset",
            context={"releases_url": self.releases_url, "tag_name": tag_name}
        )
