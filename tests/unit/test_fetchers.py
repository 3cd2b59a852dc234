"""
Unit tests for the HTTP archive fetcher and release resolver
"""

import asyncio
import json
import os

import httpx
import pytest

from bootstrap.fetchers.http_fetcher import HttpArchiveFetcher, parse_content_range
from bootstrap.fetchers.release_resolver import ReleaseResolver
from conftest import ARCHIVE_URL, ArchiveServer, sha256_hex
from core.exceptions import BootstrapCancelled, IntegrityError, ReleaseNotFoundError, TransferError
from schemas.catalog import CatalogArchiveRef

CONTENT = os.urandom(10 * 1024)


def _ref(content=CONTENT, **overrides):
    values = {"url": ARCHIVE_URL, "expected_sha256": sha256_hex(content), "expected_size": len(content)}
    values.update(overrides)
    return CatalogArchiveRef(**values)


def _fetcher(staging_dir, server, **kwargs):
    kwargs.setdefault("retry_delay", 0)
    kwargs.setdefault("chunk_size", 1024)
    return HttpArchiveFetcher(staging_dir, client_factory=server.client_factory(), **kwargs)


class TestHttpArchiveFetcher:
    """Test transfer, verification, retry and resume"""

    @pytest.mark.asyncio
    async def test_fetch_verifies_and_stages_archive(self, staging_dir):
        server = ArchiveServer(CONTENT)
        fractions = []

        staged = await _fetcher(staging_dir, server).fetch(_ref(), on_progress=lambda f, d: fractions.append(f))

        assert staged.path.read_bytes() == CONTENT
        assert staged.sha256 == sha256_hex(CONTENT)
        assert staged.size_bytes == len(CONTENT)
        assert fractions == sorted(fractions)
        assert fractions[-1] == 1.0
        assert not staged.path.with_name("data.zip.part").exists()

    @pytest.mark.asyncio
    async def test_hash_mismatch_raises_integrity_error_and_deletes_file(self, staging_dir):
        server = ArchiveServer(CONTENT)
        ref = _ref(expected_sha256="ab" * 32)

        with pytest.raises(IntegrityError) as exc_info:
            await _fetcher(staging_dir, server).fetch(ref)

        assert exc_info.value.context["actual_sha256"] == sha256_hex(CONTENT)
        assert list((staging_dir / "downloads").iterdir()) == []
        # Integrity failures are never retried
        assert len(server.requests) == 1

    @pytest.mark.asyncio
    async def test_size_mismatch_raises_integrity_error(self, staging_dir):
        server = ArchiveServer(CONTENT)

        with pytest.raises(IntegrityError):
            await _fetcher(staging_dir, server).fetch(_ref(expected_size=len(CONTENT) + 1))

    @pytest.mark.asyncio
    async def test_unknown_hash_is_accepted_and_reported(self, staging_dir):
        server = ArchiveServer(CONTENT)

        staged = await _fetcher(staging_dir, server).fetch(_ref(expected_sha256=None, expected_size=None))

        assert staged.sha256 == sha256_hex(CONTENT)

    @pytest.mark.asyncio
    async def test_retries_server_errors_with_backoff(self, staging_dir):
        server = ArchiveServer(CONTENT, fail_first=2, fail_status=503)

        staged = await _fetcher(staging_dir, server, max_retries=3).fetch(_ref())

        assert staged.size_bytes == len(CONTENT)
        assert len(server.requests) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, staging_dir):
        server = ArchiveServer(CONTENT, fail_first=5, fail_status=500)

        with pytest.raises(TransferError) as exc_info:
            await _fetcher(staging_dir, server, max_retries=3).fetch(_ref())

        assert exc_info.value.retryable
        assert exc_info.value.context["status_code"] == 500
        assert len(server.requests) == 3

    @pytest.mark.asyncio
    async def test_client_error_fails_without_retry(self, staging_dir):
        server = ArchiveServer(CONTENT, fail_first=1, fail_status=404)

        with pytest.raises(TransferError) as exc_info:
            await _fetcher(staging_dir, server, max_retries=3).fetch(_ref())

        assert exc_info.value.retryable is False
        assert len(server.requests) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, staging_dir):
        server = ArchiveServer(CONTENT, fail_first=1, fail_status=429)

        await _fetcher(staging_dir, server).fetch(_ref())

        assert len(server.requests) == 2

    @pytest.mark.asyncio
    async def test_resumes_after_dropped_connection(self, staging_dir):
        server = ArchiveServer(CONTENT, drop_after=4096)

        staged = await _fetcher(staging_dir, server).fetch(_ref())

        assert staged.path.read_bytes() == CONTENT
        assert len(server.requests) == 2
        resumed = server.requests[1]
        assert resumed.headers["Range"] == "bytes=4096-"
        assert resumed.headers["If-Range"] == server.etag

    @pytest.mark.asyncio
    async def test_resumes_partial_left_by_previous_process(self, staging_dir):
        downloads = staging_dir / "downloads"
        downloads.mkdir()
        (downloads / "data.zip.part").write_bytes(CONTENT[:3000])
        (downloads / "data.zip.part.json").write_text(json.dumps({"url": ARCHIVE_URL, "validator": '"catalog-v1"'}))
        server = ArchiveServer(CONTENT)

        staged = await _fetcher(staging_dir, server).fetch(_ref())

        assert staged.path.read_bytes() == CONTENT
        assert server.requests[0].headers["Range"] == "bytes=3000-"

    @pytest.mark.asyncio
    async def test_server_ignoring_range_restarts_from_zero(self, staging_dir):
        downloads = staging_dir / "downloads"
        downloads.mkdir()
        (downloads / "data.zip.part").write_bytes(b"stale bytes")
        (downloads / "data.zip.part.json").write_text(json.dumps({"url": ARCHIVE_URL, "validator": '"catalog-v1"'}))
        server = ArchiveServer(CONTENT, support_ranges=False)

        staged = await _fetcher(staging_dir, server).fetch(_ref())

        assert staged.path.read_bytes() == CONTENT

    @pytest.mark.asyncio
    async def test_changed_resource_restarts_from_zero(self, staging_dir):
        downloads = staging_dir / "downloads"
        downloads.mkdir()
        (downloads / "data.zip.part").write_bytes(b"x" * 3000)
        (downloads / "data.zip.part.json").write_text(json.dumps({"url": ARCHIVE_URL, "validator": '"old-etag"'}))
        server = ArchiveServer(CONTENT)

        staged = await _fetcher(staging_dir, server).fetch(_ref())

        # If-Range did not match, so the server sent the full body
        assert staged.path.read_bytes() == CONTENT

    @pytest.mark.asyncio
    async def test_partial_without_validator_is_discarded(self, staging_dir):
        downloads = staging_dir / "downloads"
        downloads.mkdir()
        (downloads / "data.zip.part").write_bytes(b"x" * 3000)
        server = ArchiveServer(CONTENT)

        await _fetcher(staging_dir, server).fetch(_ref())

        assert "Range" not in server.requests[0].headers

    @pytest.mark.asyncio
    async def test_oversized_partial_is_discarded(self, staging_dir):
        downloads = staging_dir / "downloads"
        downloads.mkdir()
        (downloads / "data.zip.part").write_bytes(b"x" * (len(CONTENT) + 10))
        (downloads / "data.zip.part.json").write_text(json.dumps({"url": ARCHIVE_URL, "validator": '"catalog-v1"'}))
        server = ArchiveServer(CONTENT)

        staged = await _fetcher(staging_dir, server).fetch(_ref())

        assert "Range" not in server.requests[0].headers
        assert staged.size_bytes == len(CONTENT)

    @pytest.mark.asyncio
    async def test_reuses_verified_archive_without_network(self, staging_dir):
        server = ArchiveServer(CONTENT)
        fetcher = _fetcher(staging_dir, server)
        await fetcher.fetch(_ref())

        staged = await fetcher.fetch(_ref())

        assert staged.sha256 == sha256_hex(CONTENT)
        assert len(server.requests) == 1

    @pytest.mark.asyncio
    async def test_cancellation_between_chunks(self, staging_dir):
        server = ArchiveServer(CONTENT)
        cancel = asyncio.Event()

        with pytest.raises(BootstrapCancelled):
            await _fetcher(staging_dir, server).fetch(_ref(), on_progress=lambda f, d: cancel.set(), cancel=cancel)

    @pytest.mark.asyncio
    async def test_discard_removes_download_artifacts(self, staging_dir):
        server = ArchiveServer(CONTENT)
        fetcher = _fetcher(staging_dir, server)
        await fetcher.fetch(_ref())

        fetcher.discard()

        assert list((staging_dir / "downloads").iterdir()) == []



class TestLocalArchive:
    """Test the pre-placed archive checked before downloading"""

    @pytest.fixture
    def local_file(self, tmp_path):
        path = tmp_path / "preloaded" / "data.zip"
        path.parent.mkdir()
        path.write_bytes(CONTENT)
        return path

    @pytest.mark.asyncio
    async def test_matching_local_archive_skips_download(self, staging_dir, local_file):
        server = ArchiveServer(CONTENT)
        fetcher = _fetcher(staging_dir, server, local_archive=local_file)

        staged = await fetcher.fetch(_ref())

        assert staged.path == local_file
        assert staged.sha256 == sha256_hex(CONTENT)
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_stale_local_archive_falls_back_to_download(self, staging_dir, local_file):
        remote = os.urandom(4 * 1024)
        server = ArchiveServer(remote)
        fetcher = _fetcher(staging_dir, server, local_archive=local_file)

        staged = await fetcher.fetch(_ref(remote))

        assert staged.path.parent == staging_dir / "downloads"
        assert staged.sha256 == sha256_hex(remote)
        assert len(server.requests) == 1

    @pytest.mark.asyncio
    async def test_remote_without_hash_is_downloaded(self, staging_dir, local_file):
        server = ArchiveServer(CONTENT)
        fetcher = _fetcher(staging_dir, server, local_archive=local_file)

        await fetcher.fetch(_ref(expected_sha256=None))

        assert len(server.requests) == 1

    @pytest.mark.asyncio
    async def test_local_ref_from_directory(self, staging_dir, local_file):
        server = ArchiveServer(CONTENT)
        fetcher = _fetcher(staging_dir, server, local_archive=local_file.parent)

        ref = fetcher.local_ref()
        staged = await fetcher.fetch(ref)

        assert ref.name == "data.zip"
        assert staged.path == local_file
        assert server.requests == []

    def test_no_local_archive(self, staging_dir, tmp_path):
        server = ArchiveServer(CONTENT)

        assert _fetcher(staging_dir, server).local_ref() is None
        assert _fetcher(staging_dir, server, local_archive=tmp_path / "missing.zip").local_ref() is None

    @pytest.mark.asyncio
    async def test_discard_keeps_local_archive(self, staging_dir):
        local = staging_dir / "downloads" / "data-preloaded.zip"
        local.parent.mkdir()
        local.write_bytes(CONTENT)
        fetcher = _fetcher(staging_dir, ArchiveServer(CONTENT), local_archive=local)

        fetcher.discard()

        assert local.exists()

@pytest.mark.parametrize("header,expected", [
    ("bytes 100-999/1000", (100, 1000)),
    ("bytes 0-0/*", (0, None)),
    ("items 1-2/3", (None, None)),
    (None, (None, None)),
    ("bytes x-y/z", (None, None)),
])
def test_parse_content_range(header, expected):
    assert parse_content_range(header) == expected


class TestReleaseResolver:
    """Test latest-release resolution"""

    RELEASES_URL = "https://api.github.com/repos/example/catalog/releases/latest"

    def _resolver(self, handler, **kwargs):
        return ReleaseResolver(
            self.RELEASES_URL,
            retry_delay=0,
            client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            **kwargs
        )

    @pytest.mark.asyncio
    async def test_resolves_first_data_zip_asset(self):
        digest = sha256_hex(b"archive")

        def handler(request):
            return httpx.Response(200, json={
                "tag_name": "v2.3.0",
                "assets": [
                    {"name": "notes.txt", "browser_download_url": "https://example.com/notes.txt", "size": 10},
                    {"name": "data-v2.3.0.zip", "browser_download_url": "https://example.com/data.zip",
                     "size": 1234, "digest": f"sha256:{digest.upper()}"},
                    {"name": "data-extra.zip", "browser_download_url": "https://example.com/extra.zip", "size": 1},
                ]
            })

        ref = await self._resolver(handler).resolve()

        assert ref.url == "https://example.com/data.zip"
        assert ref.expected_sha256 == digest
        assert ref.expected_size == 1234
        assert ref.version == "v2.3.0"
        assert ref.name == "data-v2.3.0.zip"

    @pytest.mark.asyncio
    async def test_release_without_data_asset(self):
        def handler(request):
            return httpx.Response(200, json={"tag_name": "v1", "assets": [{"name": "readme.md"}]})

        with pytest.raises(ReleaseNotFoundError):
            await self._resolver(handler).resolve()

    @pytest.mark.asyncio
    async def test_missing_release(self):
        with pytest.raises(ReleaseNotFoundError):
            await self._resolver(lambda request: httpx.Response(404)).resolve()

    @pytest.mark.asyncio
    async def test_unreachable_endpoint_raises_transfer_error(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("no route to host")

        with pytest.raises(TransferError):
            await self._resolver(handler, max_retries=2).resolve()
        assert len(calls) == 2
