"""
Derive venue roll-ups from committed shows
"""

from typing import List
import logging

import pandas as pd
from sqlalchemy import delete, insert, select
from sqlalchemy.exc import SQLAlchemyError

from bootstrap.store import CatalogStore
from core.exceptions import StorageError
from models.show import Show
from models.venue import Venue
from schemas.catalog import VenueEntity

logger = logging.getLogger(__name__)

_LOCATION = ["city", "state", "country"]


def _most_frequent(df: pd.DataFrame, columns: List[str]) -> pd.DataFrame:
    """Per venue_key, the most frequent combination of ``columns``; ties go to the lexicographically smallest"""
    counts = df.groupby(["venue_key"] + columns, dropna=False).size().reset_index(name="n")
    counts = counts.sort_values(
        ["venue_key", "n"] + columns,
        ascending=[True, False] + [True] * len(columns),
        kind="mergesort"
    )
    return counts.drop_duplicates("venue_key").set_index("venue_key")[columns]


def aggregate_venues(rows: List[dict]) -> List[VenueEntity]:
    """
    Group shows by normalized venue key.

    Output is sorted by venue key and depends only on the input rows, never
    on their order.
    """
    if not rows:
        return []

    df = pd.DataFrame(rows, columns=["venue_key", "venue_name", "date"] + _LOCATION)
    df[_LOCATION] = df[_LOCATION].fillna("")

    stats = df.groupby("venue_key").agg(
        show_count=("date", "size"),
        first_show_date=("date", "min"),
        last_show_date=("date", "max"),
    )
    names = _most_frequent(df, ["venue_name"])
    locations = _most_frequent(df, _LOCATION)
    venues = stats.join(names).join(locations).sort_index()

    return [
        VenueEntity(
            venue_key=key,
            name=row.venue_name,
            city=row.city or None,
            state=row.state or None,
            country=row.country or None,
            show_count=int(row.show_count),
            first_show_date=row.first_show_date,
            last_show_date=row.last_show_date,
        )
        for key, row in venues.iterrows()
    ]


class VenueAggregator:
    """
    Rebuild the venues table from shows.

    Ensures:
    - The venue set is fully replaced in one transaction
    - Identical shows always yield identical venues
    """

    def __init__(self, store: CatalogStore, batch_size: int = 500):
        self.store = store
        self.batch_size = batch_size

    async def compute_venues(self) -> int:
        try:
            async with self.store.transaction() as session:
                result = await session.execute(
                    select(
                        Show.venue_key,
                        Show.venue_name,
                        Show.date,
                        Show.city,
                        Show.state,
                        Show.country,
                    )
                )
                rows = [dict(r._mapping) for r in result]
                venues = aggregate_venues(rows)

                await session.execute(delete(Venue))
                for i in range(0, len(venues), self.batch_size):
                    batch = venues[i:i + self.batch_size]
                    await session.execute(insert(Venue), [v.dict() for v in batch])
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to compute venues",
                context={"operation": "REPLACE", "table_name": "venues"},
                original_exception=e
            )

        logger.info(f"Computed {len(venues)} venues from {len(rows)} shows")
        return len(venues)
