# ============================================================================
# File: bootstrap/runner.py
# Description: Bootstrap orchestrator driving the catalog phase state machine
# ============================================================================
"""
Bootstrap Runner - Orchestrates Fetch, Extract, Parse, Import, Aggregate.

This module provides the bootstrap orchestration with:
- A guarded phase state machine with exactly one terminal event per run
- Local catalog validity shortcut (UsingLocal) unless a re-import is forced
- Phase-tagged error reporting; the previous catalog stays queryable
- Staging cleanup on failure (only by the run holding the writer lock)
- A single writer per local store, across processes
- Bootstrap run audit records
"""

from typing import Optional, Union
import asyncio
import logging
import uuid

from bootstrap.base import ArchiveExtractor, ArchiveFetcher, raise_if_cancelled
from bootstrap.aggregators.venue_aggregator import VenueAggregator
from bootstrap.loaders.catalog_importer import CatalogImporter
from bootstrap.progress import PhaseMachine, ProgressChannel
from bootstrap.store import CatalogStore
from bootstrap.transformers.catalog_parser import CatalogParser
from core.exceptions import (
    BootstrapCancelled,
    BootstrapError,
    BootstrapException,
    CatalogFormatError,
    StorageError,
)
from models.base import BootstrapPhase, RunStatus
from schemas.catalog import CatalogArchiveRef
from schemas.progress import BootstrapProgress, BootstrapResult, FailureInfo, RunSummary
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class _RunContext:
    """Per-invocation state: phase machine plus the channel it publishes to"""

    def __init__(self, run_id: str, channel: ProgressChannel):
        self.run_id = run_id
        self.channel = channel
        self.machine = PhaseMachine()
        self.ref: Optional[CatalogArchiveRef] = None
        self.archive_size: Optional[int] = None

    @property
    def phase(self) -> BootstrapPhase:
        return self.machine.phase

    def enter(self, phase: BootstrapPhase, fraction: Optional[float] = 0.0, detail: Optional[str] = None, **payload):
        self.machine.advance(phase)
        logger.info(f"Bootstrap {self.run_id[:8]}: entering {phase.value}")
        self.publish(fraction, detail, **payload)

    def publish(self, fraction: Optional[float] = None, detail: Optional[str] = None, **payload):
        self.channel.publish(
            BootstrapProgress(
                phase=self.machine.phase,
                fraction=fraction,
                detail=detail,
                run_id=self.run_id,
                **payload
            )
        )

    def sub_progress(self, fraction: Optional[float], detail: str):
        if not self.machine.phase.is_terminal:
            self.publish(fraction, detail)


class BootstrapRunner:
    """
    Bootstrap Orchestrator

    Responsibilities:
    - Decide whether the local catalog is valid for the current schema
    - Otherwise drive Downloading -> Extracting -> ImportingShows ->
      ComputingVenues -> ImportingRecordings in order
    - Publish a progress snapshot on every phase entry and sub-progress step
    - Turn any failure into a single terminal Error snapshot
    - Record accurate bootstrap run metrics
    """

    def __init__(
        self,
        store: CatalogStore,
        fetcher: ArchiveFetcher,
        extractor: ArchiveExtractor,
        importer: CatalogImporter,
        aggregator: VenueAggregator,
        schema_version: str,
        parser_tolerance: int = 100,
        lock_ttl: float = 300.0
    ):
        self.store = store
        self.fetcher = fetcher
        self.extractor = extractor
        self.importer = importer
        self.aggregator = aggregator
        self.schema_version = schema_version
        self.parser_tolerance = parser_tolerance
        self.lock_ttl = lock_ttl

    async def _resolve(self, remote):
        """Return (ref, error); a resolver failure is held back so a valid local catalog can still be used"""
        if remote is None or isinstance(remote, CatalogArchiveRef):
            return remote, None
        try:
            return await remote.resolve(), None
        except BootstrapException as e:
            logger.warning(f"Could not resolve remote catalog: {e.message}")
            return None, e

    async def run(
        self,
        remote: Union[CatalogArchiveRef, object, None],
        channel: ProgressChannel,
        cancel: Optional[asyncio.Event] = None,
        force: bool = False,
        run_id: Optional[str] = None
    ) -> BootstrapResult:
        """
        Run one bootstrap invocation.

        Args:
            remote: CatalogArchiveRef, or a resolver with ``async resolve()``
            channel: Progress channel receiving every snapshot of this run
            cancel: Cooperative cancellation flag
            force: Skip the local validity shortcut and always re-import
            run_id: Identifier of the run record (generated when omitted)

        Returns:
            BootstrapResult; failures are reported through the result and the
            terminal Error snapshot, never raised. Hard task cancellation is
            reported the same way and then re-raised.
        """
        ctx = _RunContext(run_id or str(uuid.uuid4()), channel)
        lease = None

        try:
            await self.store.start_run(ctx.run_id, forced=force)

            # --------------------------------------------------
            # PHASE: CHECKING
            # --------------------------------------------------
            ctx.enter(BootstrapPhase.CHECKING, fraction=None, detail="Checking local catalog")
            lease = await self.store.acquire_writer_lock(ctx.run_id, self.lock_ttl)
            ref, resolve_error = await self._resolve(remote)
            ctx.ref = ref
            expected_hash = ref.expected_sha256 if ref is not None else None
            version = ref.version if ref is not None else None

            if not force and await self.store.is_catalog_valid(self.schema_version, expected_hash, version):
                return await self._use_local(ctx)

            if resolve_error is not None or ref is None:
                ref = self.fetcher.local_ref()
                if ref is None:
                    if resolve_error is not None:
                        raise resolve_error
                    raise BootstrapException(
                        "No remote catalog configured", context={"schema_version": self.schema_version}
                    )
                logger.info(f"No remote catalog available, importing local archive {ref.name}")
                ctx.ref = ref
            raise_if_cancelled(cancel, "checking")

            # --------------------------------------------------
            # PHASE: DOWNLOADING
            # --------------------------------------------------
            ctx.enter(BootstrapPhase.DOWNLOADING, fraction=0.0 if ref.expected_size else None, detail=ref.url)
            staged = await self.fetcher.fetch(ref, ctx.sub_progress, cancel)
            ctx.archive_size = staged.size_bytes
            raise_if_cancelled(cancel, "downloading")

            # --------------------------------------------------
            # PHASE: EXTRACTING
            # --------------------------------------------------
            ctx.enter(BootstrapPhase.EXTRACTING)
            root = await self.extractor.extract(staged.path, ctx.sub_progress, cancel)
            raise_if_cancelled(cancel, "extracting")
            parser = CatalogParser(root, tolerance=self.parser_tolerance)
            manifest = parser.read_manifest()

            # --------------------------------------------------
            # PHASE: IMPORTING SHOWS
            # --------------------------------------------------
            shows = parser.shows
            ctx.enter(BootstrapPhase.IMPORTING_SHOWS, detail=f"0/{len(shows)} shows")
            shows_imported = await self.importer.import_shows(
                shows, staged.sha256, total=len(shows), on_progress=ctx.sub_progress, cancel=cancel
            )
            raise_if_cancelled(cancel, "importing shows")

            # --------------------------------------------------
            # PHASE: COMPUTING VENUES
            # --------------------------------------------------
            ctx.enter(BootstrapPhase.COMPUTING_VENUES, fraction=None)
            venues_computed = await self.aggregator.compute_venues()
            ctx.sub_progress(1.0, f"{venues_computed} venues")
            raise_if_cancelled(cancel, "computing venues")

            # --------------------------------------------------
            # PHASE: IMPORTING RECORDINGS
            # --------------------------------------------------
            recordings = parser.recordings
            ctx.enter(BootstrapPhase.IMPORTING_RECORDINGS, detail=f"0/{len(recordings)} recordings")
            recordings_imported = await self.importer.import_recordings(
                recordings, staged.sha256, total=len(recordings), on_progress=ctx.sub_progress, cancel=cancel
            )
            raise_if_cancelled(cancel, "importing recordings")
            collections_imported = await self._import_collections(parser, staged.sha256)
            ctx.sub_progress(1.0, f"{collections_imported} collections")

            # --------------------------------------------------
            # FINALIZE
            # --------------------------------------------------
            await self.store.write_marker(
                self.schema_version,
                staged.sha256,
                manifest=manifest,
                git_tag=ref.version,
                totals={"shows": shows_imported, "recordings": recordings_imported, "venues": venues_computed}
            )
            self.extractor.discard()

            summary = RunSummary(
                used_local=False,
                shows_imported=shows_imported,
                recordings_imported=recordings_imported,
                venues_computed=venues_computed,
                collections_imported=collections_imported,
                shows_skipped=parser.shows_skipped,
                recordings_skipped=parser.recordings_skipped,
                content_hash=staged.sha256,
                data_version=manifest.version or ref.version
            )
            return await self._complete(ctx, summary)

        except asyncio.CancelledError:
            cancelled = BootstrapCancelled("Bootstrap task was cancelled", context={"checkpoint": "task"})
            await self._fail(ctx, cancelled, owns_staging=lease is not None)
            raise

        except Exception as e:
            # Staging belongs to whoever holds the writer lock
            return await self._fail(ctx, e, owns_staging=lease is not None)

        finally:
            if lease is not None:
                await self._release(lease)

    async def _release(self, lease):
        try:
            await lease.release()
        except SQLAlchemyError as e:
            logger.error(f"Failed to release catalog writer lock, it expires after {self.lock_ttl}s: {e}")

    async def _import_collections(self, parser: CatalogParser, catalog_hash: str) -> int:
        """Collections are optional: a broken collections.json never fails the run"""
        try:
            collections = parser.read_collections()
            return await self.importer.import_collections(collections, catalog_hash)
        except (CatalogFormatError, StorageError) as e:
            logger.warning(f"Collections import failed, keeping previous collections: {e}")
            return 0

    async def _use_local(self, ctx: _RunContext) -> BootstrapResult:
        marker = await self.store.get_marker()
        ctx.enter(BootstrapPhase.USING_LOCAL, fraction=None, detail="Local catalog is current")
        logger.info(f"Using local catalog (schema {marker.schema_version}, hash {marker.content_hash[:12]})")
        summary = RunSummary(
            used_local=True,
            content_hash=marker.content_hash,
            data_version=marker.data_version
        )
        return await self._complete(ctx, summary)

    async def _complete(self, ctx: _RunContext, summary: RunSummary) -> BootstrapResult:
        # The catalog is already committed; a lost audit row must not turn this into a failure
        try:
            await self.store.complete_run(
                ctx.run_id,
                RunStatus.COMPLETED,
                summary=summary,
                archive_url=ctx.ref.url if ctx.ref is not None and not summary.used_local else None,
                archive_size_bytes=ctx.archive_size
            )
        except (SQLAlchemyError, BootstrapException) as e:
            logger.error(f"Failed to record bootstrap run outcome: {e}")
        ctx.enter(BootstrapPhase.COMPLETED, fraction=1.0, summary=summary)
        logger.info(
            f"Bootstrap completed: {summary.shows_imported} shows, {summary.recordings_imported} recordings, "
            f"{summary.venues_computed} venues (skipped {summary.shows_skipped} shows, "
            f"{summary.recordings_skipped} recordings)"
        )
        return BootstrapResult(run_id=ctx.run_id, status=RunStatus.COMPLETED, summary=summary)

    async def _fail(self, ctx: _RunContext, cause: BaseException, owns_staging: bool = True) -> BootstrapResult:
        failed_phase = ctx.phase
        if failed_phase.is_terminal:
            # Completed was already published; nothing left to report
            raise cause

        error = BootstrapError(failed_phase, cause)
        if isinstance(cause, BootstrapException):
            logger.error(
                f"Bootstrap failed in {failed_phase.value}: {error.message}",
                extra={"error_context": error.to_dict()}
            )
        else:
            logger.exception(f"Unexpected error in bootstrap phase {failed_phase.value}")

        if owns_staging:
            self._discard_staging()

        failure = FailureInfo(failed_phase=failed_phase, kind=error.kind, message=error.message)
        ctx.enter(BootstrapPhase.ERROR, fraction=None, error=failure)

        status = RunStatus.CANCELLED if isinstance(cause, BootstrapCancelled) else RunStatus.FAILED
        try:
            await self.store.complete_run(
                ctx.run_id,
                status,
                error=error,
                archive_url=ctx.ref.url if ctx.ref is not None else None,
                archive_size_bytes=ctx.archive_size
            )
        except (SQLAlchemyError, BootstrapException) as e:
            logger.error(f"Failed to record bootstrap run outcome: {e}")

        return BootstrapResult(run_id=ctx.run_id, status=status, error=failure)

    def _discard_staging(self):
        for component in (self.fetcher, self.extractor):
            try:
                component.discard()
            except OSError as e:
                logger.warning(f"Failed to discard staging of {type(component).__name__}: {e}")
