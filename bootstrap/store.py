"""
Local catalog store: transactions, completion marker, writer lock and run tracking
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, List, Optional
from sqlalchemy import select, delete, func, update
from sqlalchemy.exc import IntegrityError as SQLAlchemyIntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import asyncio
import logging
import os
import socket
import uuid

from core.exceptions import StorageError, BootstrapError, CatalogLockedError
from models.base import RunStatus
from models.bootstrap_run import BootstrapRun
from models.catalog_marker import CatalogMarker
from models.collection import Collection
from models.recording import Recording
from models.show import Show
from models.venue import Venue
from models.writer_lock import CatalogWriterLock
from schemas.catalog import CatalogManifest
from schemas.progress import RunSummary

logger = logging.getLogger(__name__)


class WriterLease:
    """
    A held catalog writer lock.

    A background task renews the heartbeat every third of the ttl until the
    lease is released, so a live holder is never mistaken for an abandoned one.
    """

    def __init__(self, store: "CatalogStore", owner: str, ttl_seconds: float):
        self.store = store
        self.owner = owner
        self.ttl_seconds = ttl_seconds
        self.lost = False
        self._task: Optional[asyncio.Task] = None

    def start_heartbeat(self):
        self._task = asyncio.create_task(self._heartbeat(), name=f"writer-lock-{self.owner[:8]}")

    async def _heartbeat(self):
        interval = max(self.ttl_seconds / 3, 0.01)
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.store.renew_writer_lock(self.owner):
                    self.lost = True
                    logger.error(f"Catalog writer lock of {self.owner} was taken over by another process")
                    return
            except SQLAlchemyError as e:
                logger.warning(f"Failed to renew catalog writer lock: {e}")

    async def release(self):
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self.store.release_writer_lock(self.owner)


class CatalogStore:
    """
    Storage collaborator of the bootstrap pipeline.

    Responsibilities:
    - Scoped transactions (commit on success, rollback on any exception)
    - "Is the local catalog valid for schema version V" check
    - Completion marker write / invalidation
    - Single-writer lease shared by every process using the same database
    - Clearing the catalog
    - Bootstrap run audit records
    """

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """One unit of work; nothing written inside is visible until it commits"""
        async with self._session_maker() as session:
            async with session.begin():
                yield session

    # ------------------------------------------------------------------
    # Completion marker
    # ------------------------------------------------------------------

    async def get_marker(self) -> Optional[CatalogMarker]:
        try:
            async with self._session_maker() as session:
                result = await session.execute(select(CatalogMarker).where(CatalogMarker.id == 1))
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to read catalog marker",
                context={"operation": "SELECT", "table_name": "catalog_marker"},
                original_exception=e
            )

    async def is_catalog_valid(
        self,
        schema_version: str,
        content_hash: Optional[str] = None,
        version: Optional[str] = None
    ) -> bool:
        """
        A catalog is valid when a marker exists for ``schema_version`` and,
        if the remote publishes a content hash, for that same hash.

        Without a hash the release tag decides: a remote ``version`` that is
        not the tag the marker was written for makes the catalog stale.
        """
        marker = await self.get_marker()
        if marker is None:
            logger.info("No catalog marker found")
            return False
        if marker.schema_version != schema_version:
            logger.info(
                f"Catalog schema {marker.schema_version} does not match expected {schema_version}"
            )
            return False
        if content_hash is not None and marker.content_hash != content_hash:
            logger.info(
                f"Catalog content hash {marker.content_hash[:12]} differs from remote {content_hash[:12]}"
            )
            return False
        if content_hash is None and version is not None and marker.git_tag != version:
            logger.info(f"Catalog release {marker.git_tag} differs from remote release {version}")
            return False
        return True

    async def write_marker(
        self,
        schema_version: str,
        content_hash: str,
        manifest: Optional[CatalogManifest] = None,
        git_tag: Optional[str] = None,
        totals: Optional[Dict[str, int]] = None
    ) -> CatalogMarker:
        manifest = manifest or CatalogManifest()
        totals = totals or {}
        try:
            async with self.transaction() as session:
                await session.execute(delete(CatalogMarker))
                marker = CatalogMarker(
                    id=1,
                    schema_version=schema_version,
                    content_hash=content_hash,
                    data_version=manifest.version or git_tag,
                    git_tag=git_tag,
                    git_commit=manifest.git_commit,
                    build_timestamp=manifest.build_timestamp,
                    total_shows=totals.get("shows", 0),
                    total_recordings=totals.get("recordings", 0),
                    total_venues=totals.get("venues", 0),
                    imported_at=datetime.utcnow()
                )
                session.add(marker)
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to write catalog marker",
                context={"operation": "UPSERT", "table_name": "catalog_marker"},
                original_exception=e
            )
        logger.info(f"Catalog marker written (schema {schema_version}, hash {content_hash[:12]})")
        return marker

    # ------------------------------------------------------------------
    # Writer lock
    # ------------------------------------------------------------------

    async def _claim_writer_lock(self, owner: str, ttl_seconds: float) -> bool:
        now = datetime.utcnow()
        values = {
            "owner": owner,
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "acquired_at": now,
            "heartbeat_at": now
        }
        try:
            async with self.transaction() as session:
                session.add(CatalogWriterLock(id=1, **values))
            return True
        except SQLAlchemyIntegrityError:
            pass

        # Held; take it over only if the holder stopped renewing it
        async with self.transaction() as session:
            result = await session.execute(
                update(CatalogWriterLock)
                .where(
                    CatalogWriterLock.id == 1,
                    CatalogWriterLock.heartbeat_at < now - timedelta(seconds=ttl_seconds)
                )
                .values(**values)
            )
        if result.rowcount == 1:
            logger.warning(f"Took over an abandoned catalog writer lock for {owner}")
            return True
        return False

    async def acquire_writer_lock(self, owner: str, ttl_seconds: float = 300.0) -> WriterLease:
        """
        Claim the single-writer lease for ``owner``.

        Raises:
            CatalogLockedError: Another live run holds the lease
            StorageError: The lock table could not be read or written
        """
        holder = None
        try:
            # A second pass covers a holder releasing between our insert and takeover attempts
            for _ in range(2):
                if await self._claim_writer_lock(owner, ttl_seconds):
                    lease = WriterLease(self, owner, ttl_seconds)
                    lease.start_heartbeat()
                    logger.debug(f"Catalog writer lock acquired by {owner}")
                    return lease
                holder = await self.writer_lock_holder()
                if holder is not None:
                    break
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to acquire catalog writer lock",
                context={"operation": "UPSERT", "table_name": "catalog_writer_lock"},
                original_exception=e
            )

        raise CatalogLockedError(
            "Another bootstrap is writing the local catalog",
            context={
                "holder": holder.owner if holder else None,
                "pid": holder.pid if holder else None,
                "hostname": holder.hostname if holder else None,
                "heartbeat_at": holder.heartbeat_at.isoformat() if holder else None
            }
        )

    async def writer_lock_holder(self) -> Optional[CatalogWriterLock]:
        async with self._session_maker() as session:
            result = await session.execute(select(CatalogWriterLock).where(CatalogWriterLock.id == 1))
            return result.scalar_one_or_none()

    async def renew_writer_lock(self, owner: str) -> bool:
        """Refresh the heartbeat; False when ``owner`` no longer holds the lock"""
        async with self.transaction() as session:
            result = await session.execute(
                update(CatalogWriterLock)
                .where(CatalogWriterLock.id == 1, CatalogWriterLock.owner == owner)
                .values(heartbeat_at=datetime.utcnow())
            )
        return result.rowcount == 1

    async def release_writer_lock(self, owner: str):
        """Drop the lock if ``owner`` still holds it"""
        async with self.transaction() as session:
            await session.execute(
                delete(CatalogWriterLock).where(CatalogWriterLock.id == 1, CatalogWriterLock.owner == owner)
            )
        logger.debug(f"Catalog writer lock released by {owner}")

    async def clear_catalog(self, ttl_seconds: float = 300.0) -> Dict[str, int]:
        """
        Remove every catalog row and the marker, keeping the run history.

        Holds the writer lock while clearing, so it fails with
        CatalogLockedError instead of racing a bootstrap.

        Returns:
            Number of rows removed per entity
        """
        lease = await self.acquire_writer_lock(f"clear-{uuid.uuid4()}", ttl_seconds)
        try:
            removed = await self.counts()
            async with self.transaction() as session:
                removed["collections"] = await session.scalar(select(func.count()).select_from(Collection)) or 0
                for model in (CatalogMarker, Collection, Recording, Venue, Show):
                    await session.execute(delete(model))
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to clear the local catalog",
                context={"operation": "DELETE", "table_name": "shows"},
                original_exception=e
            )
        finally:
            await lease.release()

        logger.info(f"Local catalog cleared: {removed}")
        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def counts(self) -> Dict[str, int]:
        async with self._session_maker() as session:
            shows = await session.scalar(select(func.count()).select_from(Show))
            recordings = await session.scalar(select(func.count()).select_from(Recording))
            venues = await session.scalar(select(func.count()).select_from(Venue))
        return {"shows": shows or 0, "recordings": recordings or 0, "venues": venues or 0}

    async def list_collections(self, tag: Optional[str] = None) -> List[Collection]:
        """Collections ordered by name; ``tag`` filters on the primary tag"""
        async with self._session_maker() as session:
            query = select(Collection).order_by(Collection.name, Collection.collection_id)
            if tag:
                query = query.where(Collection.primary_tag == tag)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def recent_runs(self, limit: int = 20) -> List[BootstrapRun]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(BootstrapRun).order_by(BootstrapRun.started_at.desc(), BootstrapRun.id.desc()).limit(limit)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Run tracking
    # ------------------------------------------------------------------

    async def start_run(self, run_id: str, forced: bool = False) -> BootstrapRun:
        """Create bootstrap run record"""
        run = BootstrapRun(
            run_id=run_id,
            status=RunStatus.RUNNING,
            forced=int(forced),
            started_at=datetime.utcnow()
        )
        async with self.transaction() as session:
            session.add(run)
        return run

    async def complete_run(
        self,
        run_id: str,
        status: RunStatus,
        summary: Optional[RunSummary] = None,
        error: Optional[BootstrapError] = None,
        archive_url: Optional[str] = None,
        archive_size_bytes: Optional[int] = None
    ):
        """Complete bootstrap run with statistics"""
        async with self.transaction() as session:
            result = await session.execute(select(BootstrapRun).where(BootstrapRun.run_id == run_id))
            run = result.scalar_one_or_none()
            if run is None:
                logger.warning(f"Bootstrap run {run_id} not found; nothing to complete")
                return

            run.status = status
            run.completed_at = datetime.utcnow()
            run.duration_seconds = (run.completed_at - run.started_at).total_seconds()
            run.archive_url = archive_url
            run.archive_size_bytes = archive_size_bytes

            if summary is not None:
                run.used_local = int(summary.used_local)
                run.content_hash = summary.content_hash
                run.shows_imported = summary.shows_imported
                run.recordings_imported = summary.recordings_imported
                run.venues_computed = summary.venues_computed
                run.collections_imported = summary.collections_imported
                run.shows_skipped = summary.shows_skipped
                run.recordings_skipped = summary.recordings_skipped

            if error is not None:
                run.failed_phase = error.phase
                run.error_kind = error.kind
                run.error_message = error.message
                run.error_details = error.cause.to_dict() if hasattr(error.cause, "to_dict") else {
                    "error_type": type(error.cause).__name__,
                    "message": str(error.cause)
                }
