from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class BootstrapPhase(str, enum.Enum):
    """Phases of the catalog bootstrap state machine"""
    IDLE = "idle"
    CHECKING = "checking"
    USING_LOCAL = "using_local"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    IMPORTING_SHOWS = "importing_shows"
    COMPUTING_VENUES = "computing_venues"
    IMPORTING_RECORDINGS = "importing_recordings"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (BootstrapPhase.COMPLETED, BootstrapPhase.ERROR)


class RunStatus(str, enum.Enum):
    """Bootstrap run status"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
