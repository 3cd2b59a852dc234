"""
Bootstrap service: composition root and concurrent-run policy.

Policy (join): while a run is in flight, every start request returns a
handle on that same run, so all callers observe one progress stream and one
outcome. Across services and processes the store's writer lock admits a
single run at a time; a run that cannot take it fails in Checking.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Optional
import asyncio
import logging
import uuid

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker

from bootstrap.aggregators.venue_aggregator import VenueAggregator
from bootstrap.extractors.zip_extractor import ZipArchiveExtractor
from bootstrap.fetchers.http_fetcher import HttpArchiveFetcher
from bootstrap.fetchers.release_resolver import ReleaseResolver
from bootstrap.loaders.catalog_importer import CatalogImporter
from bootstrap.progress import ProgressChannel, ProgressSubscription
from bootstrap.runner import BootstrapRunner
from bootstrap.store import CatalogStore
from core.config import Settings
from core.exceptions import CatalogLockedError
from models.base import BootstrapPhase
from schemas.catalog import CatalogArchiveRef
from schemas.progress import BootstrapProgress, BootstrapResult

logger = logging.getLogger(__name__)


@dataclass
class BootstrapHandle:
    """A started (possibly shared) bootstrap run"""
    run_id: str
    forced: bool
    channel: ProgressChannel
    cancel_event: asyncio.Event
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    @property
    def latest(self) -> Optional[BootstrapProgress]:
        return self.channel.latest

    def subscribe(self) -> ProgressSubscription:
        return self.channel.subscribe()

    def cancel(self):
        """Request cooperative cancellation; the run ends in Error at its next checkpoint"""
        self.cancel_event.set()

    async def wait(self) -> BootstrapResult:
        # shield: a waiter giving up must not cancel the shared run
        return await asyncio.shield(self.task)


class BootstrapService:
    """
    Starts, joins, observes and cancels bootstrap runs.

    The most recent handle is kept after it finishes so its terminal snapshot
    stays available as the current status.
    """

    def __init__(self, runner: BootstrapRunner, remote=None, buffer_size: int = 32):
        self.runner = runner
        self.store = runner.store
        self.remote = remote
        self.buffer_size = buffer_size
        self._current: Optional[BootstrapHandle] = None
        self.last_result: Optional[BootstrapResult] = None

    @property
    def current(self) -> Optional[BootstrapHandle]:
        return self._current

    @property
    def running(self) -> bool:
        return self._current is not None and not self._current.done

    async def start(self, force: bool = False) -> BootstrapHandle:
        """Start a run, or join the one in flight"""
        # No await between the check and the assignment, so two callers can never both start
        if self.running:
            logger.info(f"Joining in-flight bootstrap run {self._current.run_id}")
            return self._current

        handle = BootstrapHandle(
            run_id=str(uuid.uuid4()),
            forced=force,
            channel=ProgressChannel(self.buffer_size),
            cancel_event=asyncio.Event()
        )
        handle.task = asyncio.create_task(
            self.runner.run(self.remote, handle.channel, handle.cancel_event, force, handle.run_id),
            name=f"bootstrap-{handle.run_id[:8]}"
        )
        handle.task.add_done_callback(self._on_done)
        self._current = handle
        logger.info(f"Started bootstrap run {handle.run_id} (force={force})")
        return handle

    async def run(self, force: bool = False) -> BootstrapResult:
        handle = await self.start(force)
        return await handle.wait()

    def _on_done(self, task: asyncio.Task):
        if task.cancelled():
            logger.warning("Bootstrap task was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Bootstrap task crashed: {exc!r}")
            return
        self.last_result = task.result()

    def status(self) -> BootstrapProgress:
        """Latest snapshot of the current (or last) run; Idle when nothing ran yet"""
        if self._current is not None and self._current.latest is not None:
            return self._current.latest
        return BootstrapProgress(phase=BootstrapPhase.IDLE)

    def cancel(self) -> bool:
        if not self.running:
            return False
        logger.info(f"Cancellation requested for bootstrap run {self._current.run_id}")
        self._current.cancel()
        return True

    async def clear(self) -> Dict[str, int]:
        """
        Remove the local catalog so the next run imports from scratch.

        Raises:
            CatalogLockedError: A run of this or another service is writing the catalog
        """
        if self.running:
            raise CatalogLockedError(
                "Cannot clear the catalog while a bootstrap is running",
                context={"holder": self._current.run_id}
            )
        removed = await self.store.clear_catalog(self.runner.lock_ttl)
        logger.info(f"Local catalog cleared by request: {removed}")
        return removed

    async def shutdown(self):
        """Cancel the in-flight run (if any) and wait until it reported its outcome"""
        if not self.running:
            return
        handle = self._current
        handle.cancel()
        try:
            await asyncio.wait_for(asyncio.shield(handle.task), timeout=10)
        except asyncio.TimeoutError:
            handle.task.cancel()
            await asyncio.gather(handle.task, return_exceptions=True)


def build_remote(settings: Settings, client_factory: Optional[Callable[[], httpx.AsyncClient]] = None):
    """An explicit archive URL wins over release resolution"""
    if settings.CATALOG_ARCHIVE_URL:
        return CatalogArchiveRef(
            url=settings.CATALOG_ARCHIVE_URL,
            expected_sha256=settings.CATALOG_ARCHIVE_SHA256,
            expected_size=settings.CATALOG_ARCHIVE_SIZE
        )
    return ReleaseResolver(
        settings.CATALOG_RELEASES_URL,
        max_retries=settings.MAX_RETRIES,
        retry_delay=settings.RETRY_DELAY,
        timeout=settings.DOWNLOAD_TIMEOUT,
        client_factory=client_factory
    )


def build_bootstrap_service(
    settings: Settings,
    session_maker: Optional[async_sessionmaker] = None,
    client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    remote=None
) -> BootstrapService:
    """Wire store, components and runner from settings"""
    if session_maker is None:
        from core.database import async_session_maker as session_maker

    store = CatalogStore(session_maker)
    runner = BootstrapRunner(
        store=store,
        fetcher=HttpArchiveFetcher(
            settings.STAGING_DIR,
            max_retries=settings.MAX_RETRIES,
            retry_delay=settings.RETRY_DELAY,
            timeout=settings.DOWNLOAD_TIMEOUT,
            chunk_size=settings.DOWNLOAD_CHUNK_SIZE,
            client_factory=client_factory,
            local_archive=settings.CATALOG_LOCAL_ARCHIVE
        ),
        extractor=ZipArchiveExtractor(settings.STAGING_DIR),
        importer=CatalogImporter(store, batch_size=settings.ETL_BATCH_SIZE),
        aggregator=VenueAggregator(store, batch_size=settings.ETL_BATCH_SIZE),
        schema_version=settings.CATALOG_SCHEMA_VERSION,
        parser_tolerance=settings.PARSER_SKIP_TOLERANCE,
        lock_ttl=settings.WRITER_LOCK_TTL_SECONDS
    )
    return BootstrapService(
        runner,
        remote=remote if remote is not None else build_remote(settings, client_factory),
        buffer_size=settings.PROGRESS_BUFFER_SIZE
    )
