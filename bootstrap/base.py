"""
Abstract component contracts and shared helpers for the bootstrap pipeline
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional
import asyncio

from core.exceptions import BootstrapCancelled
from schemas.catalog import CatalogArchiveRef

# (fraction or None when indeterminate, human readable detail)
ProgressCallback = Callable[[Optional[float], str], None]


def raise_if_cancelled(cancel: Optional[asyncio.Event], where: str):
    """Cancellation checkpoint: raise once cancellation was requested"""
    if cancel is not None and cancel.is_set():
        raise BootstrapCancelled(
            f"Bootstrap cancelled during {where}",
            context={"checkpoint": where}
        )


def report(on_progress: Optional[ProgressCallback], fraction: Optional[float], detail: str):
    if on_progress is not None:
        on_progress(fraction, detail)


@dataclass(frozen=True)
class StagedArchive:
    """An archive in staging whose size and hash have been verified"""
    path: Path
    sha256: str
    size_bytes: int


class ArchiveFetcher(ABC):
    """
    Brings a remote catalog archive into staging.

    Responsibilities:
    - Transfer with retry and resume
    - Size / content hash verification before anything reads the archive
    """

    @abstractmethod
    async def fetch(
        self,
        ref: CatalogArchiveRef,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None
    ) -> StagedArchive:
        pass

    @abstractmethod
    def discard(self):
        """Remove every download artifact from staging"""
        pass

    def local_ref(self) -> Optional[CatalogArchiveRef]:
        """Reference to a pre-placed archive usable without any remote, if one exists"""
        return None


class ArchiveExtractor(ABC):
    """Unpacks a verified archive and returns the catalog root directory"""

    @abstractmethod
    async def extract(
        self,
        archive_path: Path,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None
    ) -> Path:
        pass

    @abstractmethod
    def discard(self):
        """Remove every extraction artifact from staging"""
        pass
