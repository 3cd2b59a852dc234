from sqlalchemy import Column, String, Integer, Float, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base


class Recording(Base):
    """
    One archived recording (tape) of a show.

    Each recording belongs to exactly one show; the foreign key cascades so
    pruning a show from an older catalog version removes its recordings.
    """
    __tablename__ = "recordings"

    identifier = Column(String(255), primary_key=True)
    show_id = Column(
        String(255),
        ForeignKey("shows.show_id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Source / lineage
    source_type = Column(String(50), nullable=True, index=True)
    taper = Column(Text, nullable=True)
    source = Column(Text, nullable=True)
    lineage = Column(Text, nullable=True)

    # Ratings
    rating = Column(Float, default=0.0)
    raw_rating = Column(Float, default=0.0)
    review_count = Column(Integer, default=0)
    confidence = Column(Float, default=0.0)
    high_ratings = Column(Integer, default=0)
    low_ratings = Column(Integer, default=0)

    # Tracks
    track_count = Column(Integer, default=0)
    total_duration = Column(Float, default=0.0)

    catalog_hash = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    show = relationship("Show", back_populates="recordings")
