"""
Transform staged catalog files into typed show and recording entities
"""

from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional
import json
import logging

from core.exceptions import CatalogFormatError
from schemas.catalog import (
    CatalogManifest,
    CollectionEntity,
    RawRecordingRecord,
    RawShowRecord,
    RecordingEntity,
    ShowEntity,
)

logger = logging.getLogger(__name__)

_MALFORMED = (KeyError, TypeError, ValueError, AttributeError)


class RecordSequence:
    """
    Lazy, finite, restartable sequence of records.

    Every ``iter()`` starts a fresh pass over the staged files; ``len()`` is
    the number of files, which is what progress is measured against.
    """

    def __init__(self, factory: Callable[[], Iterator], file_count: int):
        self._factory = factory
        self._file_count = file_count

    def __iter__(self):
        return self._factory()

    def __len__(self) -> int:
        return self._file_count


class _SkipTracker:
    def __init__(self, record_type: str, tolerance: int):
        self.record_type = record_type
        self.tolerance = tolerance
        self.skipped = 0

    def skip(self, source: Path, error: Exception):
        self.skipped += 1
        logger.warning(f"Skipping malformed {self.record_type} {source.name}: {error}")
        if self.skipped > self.tolerance:
            raise CatalogFormatError(
                f"Too many malformed {self.record_type} records",
                context={
                    "record_type": self.record_type,
                    "skipped": self.skipped,
                    "tolerance": self.tolerance,
                    "last_error": str(error)[:500]
                },
                original_exception=error
            )


class CatalogParser:
    """
    Parse an extracted catalog directory.

    Layout:
    - shows/*.json       one show object per file
    - recordings/*.json  one recording per file, identifier is the file stem
    - manifest.json      optional package / build metadata
    - collections.json   optional curated collections (also looked up beside
                         the catalog root and under data/)

    Handles:
    - Sorted, one-file-at-a-time reading (bounded memory)
    - Skipping and counting malformed records up to ``tolerance``
    - Linking recordings to the first show that lists them
    """

    def __init__(self, root, tolerance: int = 100):
        self.root = Path(root)
        self.tolerance = tolerance
        self.shows_skipped = 0
        self.recordings_skipped = 0
        self.orphan_recordings = 0
        self.collections_skipped = 0
        self._owners: Optional[Dict[str, str]] = None

    @property
    def shows_dir(self) -> Path:
        return self.root / "shows"

    @property
    def recordings_dir(self) -> Path:
        return self.root / "recordings"

    def _files(self, directory: Path) -> List[Path]:
        if not directory.is_dir():
            return []
        return sorted(directory.glob("*.json"))

    def read_manifest(self) -> CatalogManifest:
        path = self.root / "manifest.json"
        if not path.exists():
            return CatalogManifest()
        try:
            return CatalogManifest.from_payload(json.loads(path.read_text(encoding="utf-8")))
        except _MALFORMED + (OSError,) as e:
            logger.warning(f"Ignoring unreadable manifest {path}: {e}")
            return CatalogManifest()

    def collections_path(self) -> Optional[Path]:
        for path in (
            self.root / "collections.json",
            self.root.parent / "collections.json",
            self.root / "data" / "collections.json",
        ):
            if path.is_file():
                return path
        return None

    def read_collections(self) -> List[CollectionEntity]:
        """
        Decode collections.json.

        Returns an empty list when the file is absent. Invalid collection
        objects are skipped and counted; a file that cannot be decoded at all
        raises CatalogFormatError.
        """
        self.collections_skipped = 0
        path = self.collections_path()
        if path is None:
            logger.info(f"No collections.json under {self.root}")
            return []

        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            items = payload["collections"]
            if not isinstance(items, list):
                raise TypeError("collections must be a list")
        except _MALFORMED + (OSError,) as e:
            raise CatalogFormatError(
                f"Unreadable collections file {path.name}",
                context={"record_type": "collection", "path": str(path)},
                original_exception=e
            )

        collections = []
        seen = set()
        for index, item in enumerate(items):
            try:
                collection = CollectionEntity(**item)
            except _MALFORMED as e:
                self.collections_skipped += 1
                logger.warning(f"Skipping malformed collection #{index} in {path.name}: {e}")
                continue
            if collection.id in seen:
                logger.warning(f"Duplicate collection id {collection.id}, keeping the first")
                continue
            seen.add(collection.id)
            collections.append(collection)

        logger.info(f"Parsed {len(collections)} collections from {path}")
        return collections

    # ------------------------------------------------------------------
    # Raw records
    # ------------------------------------------------------------------

    def _decode(self, path: Path, tracker: _SkipTracker) -> Optional[Dict[str, Any]]:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            tracker.skip(path, e)
            return None
        if not isinstance(payload, dict):
            tracker.skip(path, TypeError(f"expected a JSON object, got {type(payload).__name__}"))
            return None
        return payload

    def _iter_raw_shows(self, tracker: _SkipTracker) -> Iterator[RawShowRecord]:
        for path in self._files(self.shows_dir):
            payload = self._decode(path, tracker)
            if payload is not None:
                yield RawShowRecord(source=path, payload=payload)

    def _iter_raw_recordings(self, tracker: _SkipTracker) -> Iterator[RawRecordingRecord]:
        for path in self._files(self.recordings_dir):
            payload = self._decode(path, tracker)
            if payload is not None:
                yield RawRecordingRecord(identifier=path.stem, source=path, payload=payload)

    @property
    def raw_shows(self) -> RecordSequence:
        def factory():
            tracker = _SkipTracker("show", self.tolerance)
            return self._iter_raw_shows(tracker)
        return RecordSequence(factory, len(self._files(self.shows_dir)))

    @property
    def raw_recordings(self) -> RecordSequence:
        def factory():
            tracker = _SkipTracker("recording", self.tolerance)
            return self._iter_raw_recordings(tracker)
        return RecordSequence(factory, len(self._files(self.recordings_dir)))

    # ------------------------------------------------------------------
    # Typed records
    # ------------------------------------------------------------------

    def _iter_shows(self, publish_counts: bool) -> Iterator[ShowEntity]:
        tracker = _SkipTracker("show", self.tolerance)
        if publish_counts:
            self.shows_skipped = 0
        seen = set()
        try:
            for raw in self._iter_raw_shows(tracker):
                try:
                    show = self.to_show(raw)
                except _MALFORMED as e:
                    tracker.skip(raw.source, e)
                    continue
                if show.show_id in seen:
                    logger.warning(f"Duplicate show_id {show.show_id} in {raw.source.name}, keeping the first")
                    continue
                seen.add(show.show_id)
                yield show
        finally:
            if publish_counts:
                self.shows_skipped = tracker.skipped

    def _iter_recordings(self) -> Iterator[RecordingEntity]:
        owners = self.recording_owners()
        tracker = _SkipTracker("recording", self.tolerance)
        self.recordings_skipped = 0
        self.orphan_recordings = 0
        try:
            for raw in self._iter_raw_recordings(tracker):
                show_id = owners.get(raw.identifier)
                if show_id is None:
                    self.orphan_recordings += 1
                    logger.debug(f"Recording {raw.identifier} is not referenced by any show")
                    continue
                try:
                    yield self.to_recording(raw, show_id)
                except _MALFORMED as e:
                    tracker.skip(raw.source, e)
        finally:
            self.recordings_skipped = tracker.skipped
            if self.orphan_recordings:
                logger.info(f"Skipped {self.orphan_recordings} recordings without an owning show")

    @property
    def shows(self) -> RecordSequence:
        return RecordSequence(lambda: self._iter_shows(True), len(self._files(self.shows_dir)))

    @property
    def recordings(self) -> RecordSequence:
        return RecordSequence(self._iter_recordings, len(self._files(self.recordings_dir)))

    def recording_owners(self) -> Dict[str, str]:
        """Map recording identifier -> owning show_id; the first show in sorted order wins"""
        if self._owners is None:
            owners: Dict[str, str] = {}
            for show in self._iter_shows(False):
                for identifier in show.recording_ids:
                    if identifier in owners:
                        if owners[identifier] != show.show_id:
                            logger.debug(
                                f"Recording {identifier} claimed by {owners[identifier]} and {show.show_id}"
                            )
                        continue
                    owners[identifier] = show.show_id
            self._owners = owners
        return self._owners

    # ------------------------------------------------------------------
    # Field mapping
    # ------------------------------------------------------------------

    def to_show(self, raw: RawShowRecord) -> ShowEntity:
        record = raw.payload
        date = str(record["date"]).strip()
        recording_ids = [str(r) for r in (record.get("recordings") or [])]
        high = self._parse_int(record.get("total_high_ratings"))
        low = self._parse_int(record.get("total_low_ratings"))

        return ShowEntity(
            show_id=str(record.get("show_id") or raw.source.stem),
            date=date,
            year=self._parse_int(date[0:4]) or None,
            month=self._parse_int(date[5:7]) or None,
            band=record.get("band") or "",
            url=record.get("url"),
            venue_name=record.get("venue") or "",
            city=record.get("city"),
            state=record.get("state"),
            country=record.get("country") or "USA",
            location_raw=record.get("location_raw"),
            setlist_status=record.get("setlist_status"),
            song_list=self._song_list(record.get("setlist")),
            lineup_status=record.get("lineup_status"),
            member_list=self._member_list(record.get("lineup")),
            recording_ids=recording_ids,
            recording_count=self._parse_int(record.get("recording_count")) or len(recording_ids),
            best_recording_id=record.get("best_recording"),
            average_rating=self._rating(record.get("avg_rating")),
            total_reviews=high + low,
            cover_image_url=self._cover_image(record.get("ticket_images"), record.get("photos")),
        )

    def to_recording(self, raw: RawRecordingRecord, show_id: str) -> RecordingEntity:
        record = raw.payload
        tracks = record.get("tracks") or []
        if not isinstance(tracks, list):
            raise TypeError("tracks must be a list")

        return RecordingEntity(
            identifier=raw.identifier,
            show_id=show_id,
            source_type=record.get("source_type"),
            taper=self._text(record.get("taper")),
            source=self._text(record.get("source")),
            lineage=self._text(record.get("lineage")),
            rating=self._parse_float(record.get("rating")),
            raw_rating=self._parse_float(record.get("raw_rating")),
            review_count=self._parse_int(record.get("review_count")),
            confidence=self._parse_float(record.get("confidence")),
            high_ratings=self._parse_int(record.get("high_ratings")),
            low_ratings=self._parse_int(record.get("low_ratings")),
            track_count=len(tracks),
            total_duration=sum(self._parse_duration(t.get("duration")) for t in tracks),
        )

    @staticmethod
    def _song_list(setlist: Any) -> Optional[str]:
        """Comma-joined song names across all sets"""
        if not setlist:
            return None
        names = []
        for set_ in setlist:
            for song in set_.get("songs") or []:
                name = song.get("name") if isinstance(song, dict) else song
                if name:
                    names.append(str(name).strip())
        return ", ".join(names) or None

    @staticmethod
    def _member_list(lineup: Any) -> Optional[str]:
        if not lineup:
            return None
        names = [str(m.get("name")).strip() for m in lineup if m.get("name")]
        return ", ".join(names) or None

    @staticmethod
    def _cover_image(ticket_images: Any, photos: Any) -> Optional[str]:
        """Front ticket image, else a ticket image of unknown side, else the first photo"""
        tickets = [t for t in (ticket_images or []) if t.get("url")]
        for ticket in tickets:
            if (ticket.get("side") or "").lower() == "front":
                return ticket["url"]
        for ticket in tickets:
            if not ticket.get("side"):
                return ticket["url"]
        for photo in photos or []:
            if photo.get("url"):
                return photo["url"]
        return None

    @staticmethod
    def _text(value: Any) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, list):
            return "\n".join(str(v) for v in value)
        return str(value)

    @staticmethod
    def _rating(value: Any) -> Optional[float]:
        # 0 means the show has no rating yet
        rating = CatalogParser._parse_float(value)
        return rating if rating > 0 else None

    @staticmethod
    def _parse_float(value: Any) -> float:
        if value is None or value == "":
            return 0.0
        return float(value)

    @staticmethod
    def _parse_int(value: Any) -> int:
        if value is None or value == "":
            return 0
        return int(value)

    @staticmethod
    def _parse_duration(value: Any) -> float:
        """Seconds from a number, a numeric string, or "[h:]mm:ss" """
        if value is None or value == "":
            return 0.0
        if isinstance(value, (int, float)):
            return float(value)
        seconds = 0.0
        for part in str(value).split(":"):
            seconds = seconds * 60 + float(part)
        return seconds
