from sqlalchemy import Column, String, Integer
from models.base import Base


class Venue(Base):
    """
    Venue roll-up derived from shows.

    Never present in the archive; the aggregator rebuilds the whole table in a
    single transaction after shows are committed.
    """
    __tablename__ = "venues"

    venue_key = Column(String(700), primary_key=True)
    name = Column(String(500), nullable=False, index=True)
    city = Column(String(200), nullable=True)
    state = Column(String(100), nullable=True)
    country = Column(String(100), nullable=True)

    show_count = Column(Integer, nullable=False, default=0)
    first_show_date = Column(String(10), nullable=True)
    last_show_date = Column(String(10), nullable=True)
