"""
SQLAlchemy ORM models for the local catalog database.

Models:
    base: Base declarative class and shared enums (BootstrapPhase, RunStatus)
    show: Shows keyed by their natural catalog id
    recording: Recordings, each owned by exactly one show
    venue: Venue roll-ups derived from shows
    collection: Curated show collections shipped with the catalog
    catalog_marker: Completion marker checked on every startup
    writer_lock: Single-row lease that keeps a second writer out
    bootstrap_run: Audit trail of bootstrap runs

Relationships:
    - Show → Recording (one-to-many, cascade on delete)
    - Venue is derived; it holds no foreign keys
    - Collection keeps resolved show ids as JSON, not as foreign keys

Usage:
    from models import Show, Recording, Venue, Collection, CatalogMarker, BootstrapRun
    from models.base import BootstrapPhase, RunStatus
"""

from models.base import Base, BootstrapPhase, RunStatus
from models.show import Show
from models.recording import Recording
from models.venue import Venue
from models.collection import Collection
from models.catalog_marker import CatalogMarker
from models.writer_lock import CatalogWriterLock
from models.bootstrap_run import BootstrapRun

__all__ = [
    "Base",
    "BootstrapPhase",
    "RunStatus",
    "Show",
    "Recording",
    "Venue",
    "Collection",
    "CatalogMarker",
    "CatalogWriterLock",
    "BootstrapRun",
]
