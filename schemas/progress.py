"""
Pydantic schemas for bootstrap progress snapshots and run outcomes
"""

from pydantic import BaseModel, Field, validator
from typing import Optional
from datetime import datetime
from models.base import BootstrapPhase, RunStatus


class FailureInfo(BaseModel):
    """Payload of the terminal Error snapshot"""
    failed_phase: BootstrapPhase
    kind: str
    message: str

    class Config:
        frozen = True


class RunSummary(BaseModel):
    """Payload of the terminal Completed snapshot"""
    used_local: bool = False
    shows_imported: int = 0
    recordings_imported: int = 0
    venues_computed: int = 0
    collections_imported: int = 0
    shows_skipped: int = 0
    recordings_skipped: int = 0
    content_hash: Optional[str] = None
    data_version: Optional[str] = None

    class Config:
        frozen = True


class BootstrapProgress(BaseModel):
    """
    Immutable progress snapshot.

    fraction is the completed share of the current phase (0.0 - 1.0), or None
    when the phase cannot estimate it. The payload is tied to the phase:
    - ERROR snapshots always carry ``error``
    - COMPLETED snapshots always carry ``summary``
    - no other phase carries either
    """

    phase: BootstrapPhase
    fraction: Optional[float] = Field(None, ge=0.0, le=1.0)
    detail: Optional[str] = None
    error: Optional[FailureInfo] = None
    summary: Optional[RunSummary] = None
    run_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @validator("error", always=True)
    def error_only_on_error_phase(cls, v, values):
        phase = values.get("phase")
        if phase == BootstrapPhase.ERROR and v is None:
            raise ValueError("error snapshots must carry a failure payload")
        if phase != BootstrapPhase.ERROR and v is not None:
            raise ValueError("failure payload is only allowed on the error phase")
        return v

    @validator("summary", always=True)
    def summary_only_on_completed_phase(cls, v, values):
        phase = values.get("phase")
        if phase == BootstrapPhase.COMPLETED and v is None:
            raise ValueError("completed snapshots must carry a run summary")
        if phase != BootstrapPhase.COMPLETED and v is not None:
            raise ValueError("run summary is only allowed on the completed phase")
        return v

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    class Config:
        frozen = True


class BootstrapResult(BaseModel):
    """Outcome of one bootstrap invocation"""
    run_id: str
    status: RunStatus
    summary: Optional[RunSummary] = None
    error: Optional[FailureInfo] = None

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.COMPLETED
