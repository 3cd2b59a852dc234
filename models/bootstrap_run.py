from sqlalchemy import Column, BigInteger, String, Enum, DateTime, Float, Integer, Text, Index, JSON
from datetime import datetime
import uuid
from models.base import Base, BootstrapPhase, RunStatus


class BootstrapRun(Base):
    """
    Tracks metadata for each bootstrap execution.

    Purpose:
    - Audit trail of all runs
    - Error tracking (failed phase, stable error kind)
    - Import statistics, including skipped malformed records
    """
    __tablename__ = "bootstrap_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(36), default=lambda: str(uuid.uuid4()), unique=True, nullable=False, index=True)

    status = Column(Enum(RunStatus), default=RunStatus.RUNNING, nullable=False, index=True)
    forced = Column(Integer, default=0)
    used_local = Column(Integer, default=0)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Source
    archive_url = Column(String(2048), nullable=True)
    content_hash = Column(String(64), nullable=True)
    archive_size_bytes = Column(BigInteger, nullable=True)

    # Statistics
    shows_imported = Column(Integer, default=0)
    recordings_imported = Column(Integer, default=0)
    venues_computed = Column(Integer, default=0)
    collections_imported = Column(Integer, default=0)
    shows_skipped = Column(Integer, default=0)
    recordings_skipped = Column(Integer, default=0)

    # Error tracking
    failed_phase = Column(Enum(BootstrapPhase), nullable=True)
    error_kind = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_bootstrap_run_status", "status", "started_at"),
    )
