from sqlalchemy import Column, String, Integer, Float, Text, DateTime, Index
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base


class Show(Base):
    """
    One concert in the local catalog.

    Identity:
    - show_id is the catalog's natural key (date + venue slug), so re-importing
      the same archive upserts rather than duplicates
    - catalog_hash records which archive version last wrote the row; rows from
      older versions are pruned inside the import transaction

    Field Mapping (shows/<show_id>.json):
    - show_id -> show_id
    - venue -> venue_name (venue_key is its normalized grouping key)
    - location_raw, city, state, country -> location fields
    - setlist[*].songs[*].name -> song_list (comma-joined)
    - lineup[*].name -> member_list (comma-joined)
    - avg_rating -> average_rating (0 means unrated)
    - total_high_ratings + total_low_ratings -> total_reviews
    """
    __tablename__ = "shows"

    show_id = Column(String(255), primary_key=True)

    # Date
    date = Column(String(10), nullable=False, index=True)
    year = Column(Integer, nullable=True, index=True)
    month = Column(Integer, nullable=True)

    band = Column(String(200), nullable=False)
    url = Column(String(2048), nullable=True)

    # Venue / location
    venue_name = Column(String(500), nullable=False)
    venue_key = Column(String(700), nullable=False, index=True)
    city = Column(String(200), nullable=True)
    state = Column(String(100), nullable=True)
    country = Column(String(100), nullable=True)
    location_raw = Column(String(500), nullable=True)

    # Set list / lineup summaries
    setlist_status = Column(String(50), nullable=True)
    song_list = Column(Text, nullable=True)
    lineup_status = Column(String(50), nullable=True)
    member_list = Column(Text, nullable=True)

    # Recording statistics
    recording_count = Column(Integer, default=0)
    best_recording_id = Column(String(255), nullable=True)
    average_rating = Column(Float, nullable=True)
    total_reviews = Column(Integer, default=0)

    cover_image_url = Column(String(2048), nullable=True)

    # Lineage
    catalog_hash = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    recordings = relationship("Recording", back_populates="show", passive_deletes=True)

    __table_args__ = (
        Index("idx_show_year_month", "year", "month"),
    )
