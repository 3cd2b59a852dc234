from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime
from models.base import Base


class CatalogMarker(Base):
    """
    Completion marker of the last successful bootstrap.

    Purpose:
    - Decide on startup whether the local catalog can be used as-is
    - Record which archive (content hash) and schema version produced it

    Design:
    - A single row (id = 1); absent while a refresh is half applied
    - schema_version mismatch or a new remote content hash forces a re-bootstrap
    """
    __tablename__ = "catalog_marker"

    id = Column(Integer, primary_key=True, default=1)

    schema_version = Column(String(50), nullable=False)
    content_hash = Column(String(64), nullable=False)
    data_version = Column(String(100), nullable=True)  # manifest package version or release tag
    git_tag = Column(String(100), nullable=True)
    git_commit = Column(String(100), nullable=True)
    build_timestamp = Column(String(100), nullable=True)

    total_shows = Column(Integer, default=0)
    total_recordings = Column(Integer, default=0)
    total_venues = Column(Integer, default=0)

    imported_at = Column(DateTime, nullable=False, default=datetime.utcnow)
