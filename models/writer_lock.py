from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime
from models.base import Base


class CatalogWriterLock(Base):
    """
    Exclusive writer lease over the local catalog and its staging directory.

    Design:
    - A single row (id = 1); inserting it is the claim, so two processes
      sharing one database can never both hold it
    - The holder renews heartbeat_at while its run is in flight; a lease whose
      heartbeat is older than the ttl was abandoned and may be taken over
    """
    __tablename__ = "catalog_writer_lock"

    id = Column(Integer, primary_key=True, default=1)

    owner = Column(String(64), nullable=False)  # run id, or "clear-<uuid>"
    pid = Column(Integer, nullable=True)
    hostname = Column(String(255), nullable=True)

    acquired_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    heartbeat_at = Column(DateTime, nullable=False, default=datetime.utcnow)
