"""
HTTP archive fetcher with resume, retry and integrity verification.

This module provides robust archive transfer with:
- Exponential backoff retry logic for transient failures (timeouts, 5xx, 429)
- Immediate failure on client errors (4xx) that retrying cannot fix
- Byte-range resume of a partial download when the server supports it
- Size and SHA-256 verification before the archive leaves the fetcher
- Reuse of an already verified archive in staging
- A pre-placed local archive (CATALOG_LOCAL_ARCHIVE) checked before any download
"""

from pathlib import Path
from typing import Callable, Dict, Optional, Tuple
import asyncio
import hashlib
import json
import logging
import os

import httpx

from bootstrap.base import ArchiveFetcher, ProgressCallback, StagedArchive, raise_if_cancelled, report
from core.exceptions import IntegrityError, TransferError
from schemas.catalog import CatalogArchiveRef

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 429}
_HASH_BLOCK = 1024 * 1024


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for block in iter(lambda: fh.read(_HASH_BLOCK), b""):
            digest.update(block)
    return digest.hexdigest()


def parse_content_range(value: Optional[str]) -> Tuple[Optional[int], Optional[int]]:
    """
    Parse "bytes <start>-<end>/<total>" into (start, total).

    total is None when the server sends "*".
    """
    if not value or not value.startswith("bytes "):
        return None, None
    try:
        span, _, total = value[len("bytes "):].partition("/")
        start = int(span.split("-", 1)[0])
        return start, (int(total) if total and total != "*" else None)
    except ValueError:
        return None, None


class HttpArchiveFetcher(ArchiveFetcher):
    """
    Fetch a catalog archive over HTTP(S) into the staging area.

    Features:
    - Streaming download in fixed-size chunks (bounded memory)
    - Resume via Range / If-Range when a partial file and its validator exist
    - Restart from zero whenever the server ignores or refuses the range
    - Retry with exponential backoff: retry_delay * 2 ** attempt
    - Cancellation checkpoint per received chunk

    Attributes:
        max_retries: Number of transfer attempts (default: 3)
        retry_delay: Initial retry delay in seconds (default: 1.0)
        timeout: Per-request timeout in seconds (default: 30.0)
        chunk_size: Bytes per streamed chunk (default: 64 KiB)
        local_archive: Archive file, or directory holding data*.zip, that is
            never downloaded and never deleted
    """

    def __init__(
        self,
        staging_dir,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
        chunk_size: int = 64 * 1024,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        local_archive=None
    ):
        self.download_dir = Path(staging_dir) / "downloads"
        self.local_archive = Path(local_archive) if local_archive else None
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.chunk_size = chunk_size
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        )

    # ------------------------------------------------------------------
    # Staging paths
    # ------------------------------------------------------------------

    def _paths(self, ref: CatalogArchiveRef) -> Tuple[Path, Path, Path]:
        final_path = self.download_dir / ref.name
        part_path = final_path.with_name(final_path.name + ".part")
        meta_path = final_path.with_name(final_path.name + ".part.json")
        return final_path, part_path, meta_path

    def discard(self):
        if not self.download_dir.exists():
            return
        for path in self.download_dir.iterdir():
            if path.is_file() and path != self._local_candidate():
                path.unlink()
        logger.debug(f"Download staging cleared: {self.download_dir}")

    # ------------------------------------------------------------------
    # Local archive
    # ------------------------------------------------------------------

    def _local_candidate(self) -> Optional[Path]:
        """The configured file, or the newest data*.zip in the configured directory"""
        if self.local_archive is None:
            return None
        if self.local_archive.is_file():
            return self.local_archive
        if self.local_archive.is_dir():
            candidates = sorted(
                (p for p in self.local_archive.glob("data*.zip") if p.is_file()),
                key=lambda p: p.stat().st_mtime,
                reverse=True
            )
            if candidates:
                return candidates[0]
        return None

    def local_ref(self) -> Optional[CatalogArchiveRef]:
        path = self._local_candidate()
        if path is None:
            return None
        return CatalogArchiveRef(url=path.resolve().as_uri(), name=path.name)

    async def _use_local_archive(self, ref: CatalogArchiveRef) -> Optional[StagedArchive]:
        """
        Stage the local archive instead of downloading.

        A remote ref is only satisfied locally when its expected hash is known
        and matches; a ref pointing at the local archive itself always is.
        """
        path = self._local_candidate()
        if path is None:
            return None
        is_local_ref = ref.url == path.resolve().as_uri()
        if not is_local_ref and ref.expected_sha256 is None:
            return None

        size = path.stat().st_size
        sha256 = await asyncio.to_thread(sha256_file, path)
        if ref.expected_sha256 is not None and sha256 != ref.expected_sha256:
            if is_local_ref:
                raise IntegrityError(
                    "Local archive hash does not match",
                    context={"path": str(path), "expected_sha256": ref.expected_sha256, "actual_sha256": sha256}
                )
            logger.info(f"Local archive {path} does not match the remote catalog, downloading")
            return None
        if ref.expected_size is not None and size != ref.expected_size:
            if is_local_ref:
                raise IntegrityError(
                    "Local archive size does not match",
                    context={"path": str(path), "expected_size": ref.expected_size, "actual_size": size}
                )
            logger.info(f"Local archive {path} has the wrong size, downloading")
            return None

        logger.info(f"Using local archive {path} ({size} bytes, sha256 {sha256[:12]})")
        return StagedArchive(path=path, sha256=sha256, size_bytes=size)

    @staticmethod
    def _discard_partial(part_path: Path, meta_path: Path):
        for path in (part_path, meta_path):
            if path.exists():
                path.unlink()

    # ------------------------------------------------------------------
    # Resume bookkeeping
    # ------------------------------------------------------------------

    def _load_resume_state(self, ref: CatalogArchiveRef, part_path: Path, meta_path: Path) -> Tuple[int, Optional[str]]:
        """
        Return (offset, validator) for a resumable partial file, or (0, None).

        A partial is only resumed when it was started for the same URL with a
        strong validator (ETag or Last-Modified) and is not larger than the
        expected size.
        """
        if not part_path.exists():
            return 0, None

        offset = part_path.stat().st_size
        meta: Dict[str, str] = {}
        if meta_path.exists():
            try:
                meta = json.loads(meta_path.read_text())
            except (OSError, ValueError):
                meta = {}

        validator = meta.get("validator")
        if meta.get("url") != ref.url or not validator:
            logger.info("Partial download has no usable validator, restarting from zero")
            self._discard_partial(part_path, meta_path)
            return 0, None

        if ref.expected_size is not None and offset > ref.expected_size:
            logger.warning(
                f"Partial download is larger than expected ({offset} > {ref.expected_size}), restarting"
            )
            self._discard_partial(part_path, meta_path)
            return 0, None

        return offset, validator

    @staticmethod
    def _save_resume_state(ref: CatalogArchiveRef, meta_path: Path, response: httpx.Response):
        etag = response.headers.get("ETag")
        validator = etag if etag and not etag.startswith("W/") else response.headers.get("Last-Modified")
        if validator:
            meta_path.write_text(json.dumps({"url": ref.url, "validator": validator}))
        elif meta_path.exists():
            meta_path.unlink()

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------

    def _raise_for_status(self, response: httpx.Response, ref: CatalogArchiveRef, attempt: int, offset: int):
        status = response.status_code
        if status < 400:
            return

        context = {
            "url": ref.url,
            "status_code": status,
            "attempt": attempt + 1,
            "offset": offset
        }
        if status >= 500 or status in _RETRYABLE_STATUS:
            retry_after = response.headers.get("Retry-After")
            if retry_after and retry_after.isdigit():
                context["retry_after"] = int(retry_after)
            raise TransferError(f"Server responded {status} for {ref.url}", context=context)

        raise TransferError(
            f"Archive request rejected with {status} for {ref.url}",
            context=context,
            retryable=False
        )

    async def _transfer(
        self,
        client: httpx.AsyncClient,
        ref: CatalogArchiveRef,
        part_path: Path,
        meta_path: Path,
        attempt: int,
        on_progress: Optional[ProgressCallback],
        cancel: Optional[asyncio.Event]
    ):
        """One transfer attempt, appending to or replacing the partial file"""
        offset, validator = self._load_resume_state(ref, part_path, meta_path)
        headers = {}
        if offset > 0:
            headers["Range"] = f"bytes={offset}-"
            headers["If-Range"] = validator
            logger.info(f"Resuming archive download at byte {offset}")

        try:
            async with client.stream("GET", ref.url, headers=headers, timeout=self.timeout) as response:
                if response.status_code == 416 and offset > 0:
                    if ref.expected_size is not None and offset == ref.expected_size:
                        logger.info("Partial download already complete")
                        return
                    self._discard_partial(part_path, meta_path)
                    raise TransferError(
                        "Requested range not satisfiable, restarting from zero",
                        context={"url": ref.url, "status_code": 416, "attempt": attempt + 1, "offset": offset}
                    )

                self._raise_for_status(response, ref, attempt, offset)

                total = ref.expected_size
                if response.status_code == 206 and offset > 0:
                    start, range_total = parse_content_range(response.headers.get("Content-Range"))
                    if start != offset:
                        self._discard_partial(part_path, meta_path)
                        raise TransferError(
                            f"Server resumed at byte {start}, expected {offset}",
                            context={"url": ref.url, "status_code": 206, "attempt": attempt + 1, "offset": offset}
                        )
                    mode = "ab"
                    total = total or range_total
                else:
                    if offset > 0:
                        logger.info("Server ignored the range request, restarting from zero")
                    offset = 0
                    mode = "wb"
                    self._save_resume_state(ref, meta_path, response)
                    if total is None and response.headers.get("Content-Length", "").isdigit():
                        total = int(response.headers["Content-Length"])

                written = offset
                last_reported = -1.0
                with open(part_path, mode) as fh:
                    async for chunk in response.aiter_bytes(self.chunk_size):
                        raise_if_cancelled(cancel, "download")
                        fh.write(chunk)
                        written += len(chunk)

                        if total:
                            fraction = min(written / total, 1.0)
                            if fraction - last_reported >= 0.01 or fraction == 1.0:
                                last_reported = fraction
                                report(on_progress, fraction, f"{written}/{total} bytes")
                        elif written - last_reported >= _HASH_BLOCK:
                            last_reported = written
                            report(on_progress, None, f"{written} bytes")

        except httpx.TimeoutException as e:
            raise TransferError(
                f"Timed out downloading {ref.url}",
                context={"url": ref.url, "attempt": attempt + 1, "timeout": self.timeout},
                original_exception=e
            )
        except httpx.HTTPError as e:
            raise TransferError(
                f"Network error downloading {ref.url}",
                context={"url": ref.url, "attempt": attempt + 1},
                original_exception=e
            )

    async def _verify(self, ref: CatalogArchiveRef, part_path: Path, meta_path: Path, final_path: Path) -> StagedArchive:
        """Verify size and hash, then promote the partial file to its final name"""
        actual_size = part_path.stat().st_size
        if ref.expected_size is not None and actual_size != ref.expected_size:
            self._discard_partial(part_path, meta_path)
            raise IntegrityError(
                "Downloaded archive size does not match",
                context={"path": str(part_path), "expected_size": ref.expected_size, "actual_size": actual_size}
            )

        actual_sha256 = await asyncio.to_thread(sha256_file, part_path)
        if ref.expected_sha256 is not None and actual_sha256 != ref.expected_sha256:
            self._discard_partial(part_path, meta_path)
            raise IntegrityError(
                "Downloaded archive hash does not match",
                context={
                    "path": str(part_path),
                    "expected_sha256": ref.expected_sha256,
                    "actual_sha256": actual_sha256
                }
            )

        os.replace(part_path, final_path)
        if meta_path.exists():
            meta_path.unlink()
        return StagedArchive(path=final_path, sha256=actual_sha256, size_bytes=actual_size)

    async def _reuse_existing(self, ref: CatalogArchiveRef, final_path: Path) -> Optional[StagedArchive]:
        """A previously verified archive is reused only when a hash proves it current"""
        if not final_path.exists():
            return None
        if ref.expected_sha256 is None:
            final_path.unlink()
            return None

        size = final_path.stat().st_size
        sha256 = await asyncio.to_thread(sha256_file, final_path)
        if sha256 == ref.expected_sha256 and (ref.expected_size is None or size == ref.expected_size):
            logger.info(f"Reusing verified archive in staging: {final_path}")
            return StagedArchive(path=final_path, sha256=sha256, size_bytes=size)

        logger.info("Staged archive is stale, downloading again")
        final_path.unlink()
        return None

    async def fetch(
        self,
        ref: CatalogArchiveRef,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None
    ) -> StagedArchive:
        """
        Download ``ref`` into staging and verify it.

        Returns:
            StagedArchive with the verified path, hash and size

        Raises:
            TransferError: After exhausting retries, or immediately on 4xx
            IntegrityError: Size or hash mismatch (the bad file is deleted)
            BootstrapCancelled: At a chunk boundary after cancellation
        """
        staged = await self._use_local_archive(ref)
        if staged is not None:
            report(on_progress, 1.0, "Using local archive")
            return staged

        self.download_dir.mkdir(parents=True, exist_ok=True)
        final_path, part_path, meta_path = self._paths(ref)

        staged = await self._reuse_existing(ref, final_path)
        if staged is not None:
            report(on_progress, 1.0, "Using verified archive from staging")
            return staged

        async with self._client_factory() as client:
            for attempt in range(self.max_retries):
                raise_if_cancelled(cancel, "download")
                try:
                    logger.debug(f"Download attempt {attempt + 1}/{self.max_retries} for {ref.url}")
                    await self._transfer(client, ref, part_path, meta_path, attempt, on_progress, cancel)
                    break
                except TransferError as e:
                    if not e.retryable or attempt == self.max_retries - 1:
                        logger.error(f"Archive download failed: {e.message}")
                        raise
                    delay = e.context.get("retry_after", self.retry_delay * (2 ** attempt))
                    logger.warning(
                        f"{e.message}. Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                    )
                    await asyncio.sleep(delay)

        staged = await self._verify(ref, part_path, meta_path, final_path)
        logger.info(f"Archive downloaded and verified ({staged.size_bytes} bytes, sha256 {staged.sha256[:12]})")
        return staged
