from sqlalchemy import Column, String, Integer, Text, DateTime, JSON
from datetime import datetime
from models.base import Base


class Collection(Base):
    """
    Curated set of shows shipped with the catalog (collections.json).

    Field Mapping:
    - id -> collection_id
    - tags -> tags (first tag also kept as primary_tag for filtering)
    - show_selector -> show_ids, resolved against the imported shows

    The whole table is replaced on every import; only shows present in the
    catalog are kept in show_ids.
    """
    __tablename__ = "collections"

    collection_id = Column(String(255), primary_key=True)
    name = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)

    tags = Column(JSON, nullable=False, default=list)
    primary_tag = Column(String(100), nullable=True, index=True)
    show_ids = Column(JSON, nullable=False, default=list)
    total_shows = Column(Integer, nullable=False, default=0)

    catalog_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
