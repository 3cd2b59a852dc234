"""
Load parsed catalog entities into local storage with upsert logic (idempotency)
"""

from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional
import asyncio
import logging

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bootstrap.base import ProgressCallback, raise_if_cancelled, report
from bootstrap.store import CatalogStore
from core.exceptions import StorageError
from models.catalog_marker import CatalogMarker
from models.collection import Collection
from models.recording import Recording
from models.show import Show
from schemas.catalog import CollectionEntity, ShowSelector

logger = logging.getLogger(__name__)


def _take(iterator: Iterator, size: int) -> List:
    batch = []
    for item in iterator:
        batch.append(item)
        if len(batch) >= size:
            break
    return batch


def upsert_statement(session: AsyncSession, model, key: str, update_columns: Iterable[str]):
    """INSERT ... ON CONFLICT (key) DO UPDATE for the session's dialect"""
    dialect = session.bind.dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    stmt = insert(model)
    return stmt.on_conflict_do_update(
        index_elements=[key],
        set_={column: stmt.excluded[column] for column in update_columns}
    )


class CatalogImporter:
    """
    Persist shows and recordings transactionally.

    Ensures:
    - No duplicate rows on repeated runs (upsert keyed by natural identity)
    - Rows of previous catalog versions are removed in the same transaction
    - Nothing is visible until the whole sequence committed; any failure or
      cancellation rolls the transaction back
    """

    def __init__(self, store: CatalogStore, batch_size: int = 500):
        self.store = store
        self.batch_size = batch_size

    async def _load(
        self,
        session: AsyncSession,
        model,
        key: str,
        rows: Iterable,
        catalog_hash: str,
        total: Optional[int],
        on_progress: Optional[ProgressCallback],
        cancel: Optional[asyncio.Event],
        label: str
    ) -> int:
        columns = [c.name for c in model.__table__.columns if c.name not in (key, "created_at")]
        stmt = upsert_statement(session, model, key, columns)

        iterator = iter(rows)
        loaded = 0
        batch_number = 0
        while True:
            raise_if_cancelled(cancel, f"{label} import")
            # Parsing reads files; keep it off the event loop
            batch = await asyncio.to_thread(_take, iterator, self.batch_size)
            if not batch:
                break

            now = datetime.utcnow()
            params: List[Dict[str, Any]] = []
            for entity in batch:
                row = entity.to_row()
                row["catalog_hash"] = catalog_hash
                row["created_at"] = now
                if "updated_at" in columns:
                    row["updated_at"] = now
                params.append(row)

            await session.execute(stmt, params)
            loaded += len(batch)
            batch_number += 1
            logger.debug(f"{label.capitalize()} batch {batch_number}: loaded {len(batch)}")
            report(
                on_progress,
                min(loaded / total, 1.0) if total else None,
                f"{loaded} {label}s"
            )

        return loaded

    async def import_shows(
        self,
        shows: Iterable,
        catalog_hash: str,
        total: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None
    ) -> int:
        """
        Upsert every show and prune shows of older catalog versions.

        The completion marker is removed in the same transaction, so a
        catalog whose recordings are not yet imported is never valid.
        """
        try:
            async with self.store.transaction() as session:
                await session.execute(delete(CatalogMarker))
                loaded = await self._load(
                    session, Show, "show_id", shows, catalog_hash, total, on_progress, cancel, "show"
                )
                stale = select(Show.show_id).where(Show.catalog_hash != catalog_hash)
                await session.execute(delete(Recording).where(Recording.show_id.in_(stale)))
                result = await session.execute(delete(Show).where(Show.catalog_hash != catalog_hash))
                if result.rowcount:
                    logger.info(f"Pruned {result.rowcount} shows from previous catalog versions")
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to import shows",
                context={"operation": "UPSERT", "table_name": "shows"},
                original_exception=e
            )

        logger.info(f"Imported {loaded} shows")
        return loaded

    async def import_recordings(
        self,
        recordings: Iterable,
        catalog_hash: str,
        total: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None
    ) -> int:
        """Upsert every recording and prune recordings of older catalog versions"""
        try:
            async with self.store.transaction() as session:
                loaded = await self._load(
                    session, Recording, "identifier", recordings, catalog_hash, total, on_progress, cancel,
                    "recording"
                )
                result = await session.execute(delete(Recording).where(Recording.catalog_hash != catalog_hash))
                if result.rowcount:
                    logger.info(f"Pruned {result.rowcount} recordings from previous catalog versions")
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to import recordings",
                context={"operation": "UPSERT", "table_name": "recordings"},
                original_exception=e
            )

        logger.info(f"Imported {loaded} recordings")
        return loaded

    async def _resolve_selector(self, session: AsyncSession, selector: Optional[ShowSelector]) -> List[str]:
        """Sorted ids of the imported shows matched by any pattern of the selector"""
        if selector is None or selector.is_empty:
            return []

        clauses = []
        if selector.show_ids:
            clauses.append(Show.show_id.in_(selector.show_ids))
        if selector.dates:
            clauses.append(Show.date.in_(selector.dates))
        for date_range in selector.ranges:
            clauses.append(Show.date.between(date_range.start, date_range.end))
        if selector.range is not None:
            narrowed = [Show.date.between(selector.range.start, selector.range.end)]
            for excluded in selector.exclusion_ranges:
                narrowed.append(~Show.date.between(excluded.start, excluded.end))
            if selector.exclusion_dates:
                narrowed.append(Show.date.notin_(selector.exclusion_dates))
            clauses.append(and_(*narrowed))
        if selector.venues:
            clauses.append(func.lower(Show.venue_name).in_([v.strip().lower() for v in selector.venues]))
        if selector.years:
            clauses.append(Show.year.in_(selector.years))

        result = await session.execute(select(Show.show_id).where(or_(*clauses)).order_by(Show.show_id))
        return list(result.scalars().all())

    async def import_collections(self, collections: List[CollectionEntity], catalog_hash: str) -> int:
        """
        Replace the collections table with the given collections.

        Selectors are resolved against the shows already imported for this
        catalog; a collection whose patterns match nothing is kept with no shows.
        """
        try:
            async with self.store.transaction() as session:
                await session.execute(delete(Collection))
                now = datetime.utcnow()
                for collection in collections:
                    show_ids = await self._resolve_selector(session, collection.show_selector)
                    if not show_ids and collection.show_selector is not None:
                        logger.warning(f"Collection {collection.id} matched no shows")
                    session.add(Collection(
                        collection_id=collection.id,
                        name=collection.name,
                        description=collection.description,
                        tags=list(collection.tags),
                        primary_tag=collection.primary_tag,
                        show_ids=show_ids,
                        total_shows=len(show_ids),
                        catalog_hash=catalog_hash,
                        created_at=now
                    ))
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to import collections",
                context={"operation": "REPLACE", "table_name": "collections"},
                original_exception=e
            )

        logger.info(f"Imported {len(collections)} collections")
        return len(collections)
