"""
Script to bootstrap (or refresh) the local catalog from the command line
"""

import argparse
import asyncio
import logging
import sys

from bootstrap.service import build_bootstrap_service
from core.config import settings
from core.database import create_engine, create_session_maker, init_models
from core.exceptions import BootstrapException
from core.logging import setup_logging
from schemas.catalog import CatalogArchiveRef

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Bootstrap the local show/recording catalog")
    parser.add_argument("--force", action="store_true", help="Re-import even if the local catalog is current")
    parser.add_argument("--archive-url", help="Catalog archive URL (default: latest release)")
    parser.add_argument("--sha256", help="Expected SHA-256 of the archive")
    parser.add_argument("--size", type=int, help="Expected archive size in bytes")
    parser.add_argument("--local-archive", help="Pre-placed data.zip (or directory) checked before downloading")
    parser.add_argument("--clear", action="store_true", help="Remove the local catalog and exit")
    return parser.parse_args(argv)


async def run_bootstrap(args) -> int:
    """Run one bootstrap and print progress; returns the process exit code"""
    engine = create_engine(settings.DATABASE_URL)
    try:
        await init_models(engine)

        remote = None
        if args.archive_url:
            remote = CatalogArchiveRef(url=args.archive_url, expected_sha256=args.sha256, expected_size=args.size)

        run_settings = settings
        if args.local_archive:
            run_settings = settings.copy(update={"CATALOG_LOCAL_ARCHIVE": args.local_archive})

        service = build_bootstrap_service(run_settings, create_session_maker(engine), remote=remote)
        if args.clear:
            try:
                removed = await service.clear()
            except BootstrapException as e:
                logger.error(f"Could not clear the local catalog: {e.message}")
                return 1
            logger.info(f"Local catalog cleared: {removed}")
            return 0

        handle = await service.start(force=args.force)

        async for progress in handle.subscribe():
            fraction = f"{progress.fraction * 100:5.1f}%" if progress.fraction is not None else "  ... "
            print(f"[{progress.phase.value:<20}] {fraction} {progress.detail or ''}")

        result = await handle.wait()
        if result.ok:
            summary = result.summary
            logger.info(
                f"Bootstrap completed: shows={summary.shows_imported}, "
                f"recordings={summary.recordings_imported}, venues={summary.venues_computed}, "
                f"collections={summary.collections_imported}, "
                f"used_local={summary.used_local}"
            )
            return 0

        logger.error(
            f"Bootstrap failed in {result.error.failed_phase.value}: "
            f"{result.error.kind}: {result.error.message}"
        )
        return 1
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(run_bootstrap(parse_args())))
