"""
Unit tests for the catalog store
"""

from datetime import datetime, timedelta
import asyncio

import pytest
from sqlalchemy import update

from core.exceptions import BootstrapError, CatalogLockedError, IntegrityError
from models.writer_lock import CatalogWriterLock
from models.base import BootstrapPhase, RunStatus
from schemas.catalog import CatalogManifest
from schemas.progress import RunSummary

HASH = "c" * 64


class TestCatalogValidity:
    """Test the local catalog validity rules"""

    @pytest.mark.asyncio
    async def test_empty_store_is_not_valid(self, store):
        assert await store.is_catalog_valid("1") is False

    @pytest.mark.asyncio
    async def test_marker_for_schema_is_valid(self, store):
        await store.write_marker("1", HASH)

        assert await store.is_catalog_valid("1") is True
        assert await store.is_catalog_valid("1", content_hash=HASH) is True

    @pytest.mark.asyncio
    async def test_schema_mismatch_is_not_valid(self, store):
        await store.write_marker("1", HASH)

        assert await store.is_catalog_valid("2") is False

    @pytest.mark.asyncio
    async def test_new_remote_content_is_not_valid(self, store):
        await store.write_marker("1", HASH)

        assert await store.is_catalog_valid("1", content_hash="d" * 64) is False

    @pytest.mark.asyncio
    async def test_new_release_tag_without_hash_is_not_valid(self, store):
        await store.write_marker("1", HASH, git_tag="v1")

        assert await store.is_catalog_valid("1", version="v1") is True
        assert await store.is_catalog_valid("1", version="v2") is False

    @pytest.mark.asyncio
    async def test_matching_hash_wins_over_release_tag(self, store):
        await store.write_marker("1", HASH, git_tag="v1")

        assert await store.is_catalog_valid("1", content_hash=HASH, version="v2") is True

    @pytest.mark.asyncio
    async def test_write_marker_replaces_previous(self, store):
        await store.write_marker("1", HASH, git_tag="v1.0.0")
        await store.write_marker(
            "2", "d" * 64,
            manifest=CatalogManifest(version="2.0.0", git_commit="abc"),
            git_tag="v2.0.0",
            totals={"shows": 10, "recordings": 20, "venues": 3}
        )

        marker = await store.get_marker()

        assert marker.schema_version == "2"
        assert marker.data_version == "2.0.0"
        assert marker.git_tag == "v2.0.0"
        assert (marker.total_shows, marker.total_recordings, marker.total_venues) == (10, 20, 3)

    @pytest.mark.asyncio
    async def test_release_tag_is_data_version_without_manifest(self, store):
        await store.write_marker("1", HASH, git_tag="v1.2.3")

        assert (await store.get_marker()).data_version == "v1.2.3"


class TestRunRecords:
    """Test bootstrap run audit records"""

    @pytest.mark.asyncio
    async def test_completed_run(self, store):
        await store.start_run("run-1", forced=True)
        await store.complete_run(
            "run-1",
            RunStatus.COMPLETED,
            summary=RunSummary(shows_imported=5, recordings_imported=7, venues_computed=2, shows_skipped=1,
                               content_hash=HASH),
            archive_url="https://example.com/data.zip",
            archive_size_bytes=1024
        )

        [run] = await store.recent_runs()

        assert run.status == RunStatus.COMPLETED
        assert run.forced == 1
        assert (run.shows_imported, run.recordings_imported, run.venues_computed) == (5, 7, 2)
        assert run.shows_skipped == 1
        assert run.archive_size_bytes == 1024
        assert run.duration_seconds >= 0

    @pytest.mark.asyncio
    async def test_failed_run_records_phase_and_kind(self, store):
        await store.start_run("run-2")
        error = BootstrapError(BootstrapPhase.DOWNLOADING, IntegrityError("hash mismatch", context={"path": "x"}))

        await store.complete_run("run-2", RunStatus.FAILED, error=error)

        [run] = await store.recent_runs()
        assert run.status == RunStatus.FAILED
        assert run.failed_phase == BootstrapPhase.DOWNLOADING
        assert run.error_kind == "IntegrityError"
        assert run.error_message == "hash mismatch"
        assert run.error_details["error_type"] == "IntegrityError"

    @pytest.mark.asyncio
    async def test_unexpected_cause_is_recorded(self, store):
        await store.start_run("run-3")

        await store.complete_run(
            "run-3", RunStatus.FAILED, error=BootstrapError(BootstrapPhase.EXTRACTING, KeyError("shows"))
        )

        [run] = await store.recent_runs()
        assert run.error_kind == "UnexpectedError"
        assert run.error_details["error_type"] == "KeyError"

    @pytest.mark.asyncio
    async def test_recent_runs_newest_first(self, store):
        for i in range(3):
            await store.start_run(f"run-{i}")

        runs = await store.recent_runs(limit=2)

        assert [r.run_id for r in runs] == ["run-2", "run-1"]

    @pytest.mark.asyncio
    async def test_completing_unknown_run_is_ignored(self, store):
        await store.complete_run("missing", RunStatus.COMPLETED)

        assert await store.recent_runs() == []


async def _age_lock(store, seconds: float):
    async with store.transaction() as session:
        await session.execute(
            update(CatalogWriterLock).values(heartbeat_at=datetime.utcnow() - timedelta(seconds=seconds))
        )


class TestWriterLock:
    """Test the single-writer lease shared through the database"""

    @pytest.mark.asyncio
    async def test_second_writer_is_refused(self, store):
        lease = await store.acquire_writer_lock("run-a")
        try:
            with pytest.raises(CatalogLockedError) as exc_info:
                await store.acquire_writer_lock("run-b")
        finally:
            await lease.release()

        assert exc_info.value.context["holder"] == "run-a"
        assert exc_info.value.context["pid"] is not None

    @pytest.mark.asyncio
    async def test_released_lock_can_be_taken(self, store):
        lease = await store.acquire_writer_lock("run-a")
        await lease.release()

        second = await store.acquire_writer_lock("run-b")
        holder = await store.writer_lock_holder()
        await second.release()

        assert holder.owner == "run-b"
        assert await store.writer_lock_holder() is None

    @pytest.mark.asyncio
    async def test_abandoned_lock_is_taken_over(self, store):
        stale = await store.acquire_writer_lock("crashed-run")
        await _age_lock(store, 600)

        lease = await store.acquire_writer_lock("run-b", ttl_seconds=60)

        assert (await store.writer_lock_holder()).owner == "run-b"
        assert await store.renew_writer_lock("crashed-run") is False
        # The previous holder releasing late must not drop the new holder's lock
        await stale.release()
        assert (await store.writer_lock_holder()).owner == "run-b"
        await lease.release()

    @pytest.mark.asyncio
    async def test_live_lock_is_not_taken_over(self, store):
        lease = await store.acquire_writer_lock("run-a", ttl_seconds=600)
        await _age_lock(store, 60)

        with pytest.raises(CatalogLockedError):
            await store.acquire_writer_lock("run-b", ttl_seconds=600)
        await lease.release()

    @pytest.mark.asyncio
    async def test_heartbeat_renews_lock(self, store):
        lease = await store.acquire_writer_lock("run-a", ttl_seconds=0.15)
        await _age_lock(store, 600)

        await asyncio.sleep(0.3)
        holder = await store.writer_lock_holder()
        await lease.release()

        assert holder.heartbeat_at > datetime.utcnow() - timedelta(seconds=60)
        assert lease.lost is False


class TestClearCatalog:
    """Test removing the local catalog"""

    @pytest.mark.asyncio
    async def test_clear_removes_catalog_and_keeps_history(self, store):
        await store.start_run("run-1")
        await store.write_marker("1", HASH)

        removed = await store.clear_catalog()

        assert removed == {"shows": 0, "recordings": 0, "venues": 0, "collections": 0}
        assert await store.get_marker() is None
        assert await store.is_catalog_valid("1") is False
        assert len(await store.recent_runs()) == 1
        assert await store.writer_lock_holder() is None

    @pytest.mark.asyncio
    async def test_clear_is_refused_while_a_run_writes(self, store):
        await store.write_marker("1", HASH)
        lease = await store.acquire_writer_lock("run-a")
        try:
            with pytest.raises(CatalogLockedError):
                await store.clear_catalog()
        finally:
            await lease.release()

        assert await store.is_catalog_valid("1") is True
