"""
ZIP archive extractor for the catalog bootstrap
"""

from pathlib import Path, PurePosixPath
from typing import List, Optional
import asyncio
import errno
import logging
import shutil
import zipfile
import zlib

from bootstrap.base import ArchiveExtractor, ProgressCallback, raise_if_cancelled, report
from core.exceptions import CorruptArchiveError, DiskSpaceError

logger = logging.getLogger(__name__)

# Extracted files need some headroom for directory entries and filesystem overhead
_SPACE_HEADROOM = 1.05


def is_safe_member(name: str) -> bool:
    """Reject absolute paths and entries that climb out of the destination"""
    path = PurePosixPath(name.replace("\\", "/"))
    if path.is_absolute() or (path.parts and path.parts[0].endswith(":")):
        return False
    return ".." not in path.parts


def locate_catalog_root(base: Path) -> Optional[Path]:
    """The catalog root is the directory holding shows/, at top level or one directory down"""
    if (base / "shows").is_dir():
        return base
    children = [p for p in base.iterdir() if p.is_dir() and not p.name.startswith("__MACOSX")]
    if len(children) == 1 and (children[0] / "shows").is_dir():
        return children[0]
    return None


class ZipArchiveExtractor(ArchiveExtractor):
    """
    Extract a verified catalog archive into staging.

    Guarantees:
    - Previous extraction output is removed first
    - Insufficient disk space is reported before any entry is written
    - Entries are written to a temporary directory that is renamed into place
      only after every entry succeeded, so readers never see a partial tree
    - Path traversal entries are skipped with a warning
    """

    def __init__(self, staging_dir):
        self.staging_dir = Path(staging_dir)
        self.output_dir = self.staging_dir / "catalog"
        self._tmp_dir = self.staging_dir / "catalog.tmp"

    def discard(self):
        for path in (self._tmp_dir, self.output_dir):
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
        logger.debug(f"Extraction staging cleared: {self.staging_dir}")

    def _check_disk_space(self, archive_path: Path, members: List[zipfile.ZipInfo]):
        required = int(sum(m.file_size for m in members) * _SPACE_HEADROOM)
        free = shutil.disk_usage(self.staging_dir).free
        if required > free:
            raise DiskSpaceError(
                "Not enough free space to extract the catalog",
                context={
                    "staging_dir": str(self.staging_dir),
                    "required_bytes": required,
                    "free_bytes": free,
                    "archive_path": str(archive_path)
                }
            )

    @staticmethod
    def _extract_member(archive: zipfile.ZipFile, member: zipfile.ZipInfo, destination: Path):
        target = destination / PurePosixPath(member.filename.replace("\\", "/"))
        if member.is_dir():
            target.mkdir(parents=True, exist_ok=True)
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        with archive.open(member) as source, open(target, "wb") as sink:
            shutil.copyfileobj(source, sink)

    async def extract(
        self,
        archive_path: Path,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None
    ) -> Path:
        """
        Extract ``archive_path`` and return the catalog root directory.

        Raises:
            CorruptArchiveError: Unreadable archive, bad entry or no shows/ directory
            DiskSpaceError: Staging storage cannot hold the extracted catalog
            BootstrapCancelled: Between entries after cancellation
        """
        archive_path = Path(archive_path)
        self.discard()
        self.staging_dir.mkdir(parents=True, exist_ok=True)

        current_entry = None
        try:
            with zipfile.ZipFile(archive_path) as archive:
                members = []
                for member in archive.infolist():
                    if member.filename.startswith("__MACOSX/"):
                        continue
                    if not is_safe_member(member.filename):
                        logger.warning(f"Skipping unsafe archive entry: {member.filename}")
                        continue
                    members.append(member)

                self._check_disk_space(archive_path, members)
                self._tmp_dir.mkdir(parents=True)

                total = len(members)
                logger.info(f"Extracting {total} entries from {archive_path.name}")
                report(on_progress, 0.0 if total else None, f"0/{total} entries")

                for index, member in enumerate(members, start=1):
                    raise_if_cancelled(cancel, "extraction")
                    current_entry = member.filename
                    await asyncio.to_thread(self._extract_member, archive, member, self._tmp_dir)
                    report(on_progress, index / total, f"{index}/{total} entries")

        except (zipfile.BadZipFile, zlib.error, EOFError) as e:
            self.discard()
            raise CorruptArchiveError(
                "Catalog archive is corrupt",
                context={"archive_path": str(archive_path), "entry_name": current_entry},
                original_exception=e
            )
        except OSError as e:
            self.discard()
            if e.errno == errno.ENOSPC:
                raise DiskSpaceError(
                    "Ran out of disk space while extracting the catalog",
                    context={"staging_dir": str(self.staging_dir), "entry_name": current_entry},
                    original_exception=e
                )
            raise
        except BaseException:
            self.discard()
            raise

        root = locate_catalog_root(self._tmp_dir)
        if root is None:
            self.discard()
            raise CorruptArchiveError(
                "Catalog archive has no shows/ directory",
                context={"archive_path": str(archive_path)}
            )

        relative = root.relative_to(self._tmp_dir)
        self._tmp_dir.rename(self.output_dir)
        catalog_root = self.output_dir / relative
        logger.info(f"Catalog extracted to {catalog_root}")
        return catalog_root
