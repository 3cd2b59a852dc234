"""
Pydantic schemas for catalog entities with structural validation
"""

from dataclasses import dataclass
from pathlib import Path
from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
import re

_WHITESPACE = re.compile(r"\s+")
_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def normalize_venue_key(name: str, city: Optional[str] = None, state: Optional[str] = None) -> str:
    """
    Grouping key for venues: case-folded, whitespace-collapsed name, city and state.

    "Fillmore  West" / "san francisco" / "CA" and "fillmore west" / "San Francisco" / "ca"
    both map to "fillmore west|san francisco|ca".
    """
    parts = []
    for part in (name, city, state):
        parts.append(_WHITESPACE.sub(" ", (part or "")).strip().casefold())
    return "|".join(parts)


class CatalogArchiveRef(BaseModel):
    """Remote location of a catalog archive and what it must look like once fetched"""

    url: str = Field(..., min_length=1)
    expected_sha256: Optional[str] = Field(None, min_length=64, max_length=64)
    expected_size: Optional[int] = Field(None, ge=0)
    name: str = "data.zip"
    version: Optional[str] = None  # release tag, when resolved from a release

    @validator("expected_sha256", pre=True)
    def clean_sha256(cls, v):
        """Accept GitHub style "sha256:<hex>" digests"""
        if v is None or v == "":
            return None
        v = str(v).strip().lower()
        if v.startswith("sha256:"):
            v = v[len("sha256:"):]
        return v

    class Config:
        frozen = True


@dataclass(frozen=True)
class RawShowRecord:
    """A decoded shows/*.json object, untyped"""
    source: Path
    payload: Dict[str, Any]


@dataclass(frozen=True)
class RawRecordingRecord:
    """A decoded recordings/*.json object; identifier is the file stem"""
    identifier: str
    source: Path
    payload: Dict[str, Any]


class ShowEntity(BaseModel):
    """
    Typed show ready for import.

    Ensures:
    - show_id, band, venue and an ISO date are present
    - venue_key is derived deterministically from venue name and location
    """

    show_id: str = Field(..., min_length=1, max_length=255)
    date: str
    year: Optional[int] = None
    month: Optional[int] = None
    band: str = Field(..., min_length=1, max_length=200)
    url: Optional[str] = None

    venue_name: str = Field(..., min_length=1, max_length=500)
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = "USA"
    location_raw: Optional[str] = None
    venue_key: Optional[str] = None

    setlist_status: Optional[str] = None
    song_list: Optional[str] = None
    lineup_status: Optional[str] = None
    member_list: Optional[str] = None

    recording_ids: List[str] = Field(default_factory=list)
    recording_count: int = Field(0, ge=0)
    best_recording_id: Optional[str] = None
    average_rating: Optional[float] = Field(None, ge=0)
    total_reviews: int = Field(0, ge=0)
    cover_image_url: Optional[str] = None

    @validator("date")
    def check_date(cls, v):
        v = v.strip()
        if not _DATE.match(v):
            raise ValueError(f"date must be YYYY-MM-DD, got {v!r}")
        return v

    @validator("venue_name", "band")
    def strip_required(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("value cannot be empty after stripping")
        return v

    @validator("venue_key", always=True)
    def derive_venue_key(cls, v, values):
        if "venue_name" not in values:
            return v
        return normalize_venue_key(values["venue_name"], values.get("city"), values.get("state"))

    def to_row(self) -> Dict[str, Any]:
        """Column values for the shows table"""
        return self.dict(exclude={"recording_ids"})


class RecordingEntity(BaseModel):
    """Typed recording ready for import, bound to its owning show"""

    identifier: str = Field(..., min_length=1, max_length=255)
    show_id: str = Field(..., min_length=1, max_length=255)

    source_type: Optional[str] = None
    taper: Optional[str] = None
    source: Optional[str] = None
    lineage: Optional[str] = None

    rating: float = Field(0.0, ge=0)
    raw_rating: float = Field(0.0, ge=0)
    review_count: int = Field(0, ge=0)
    confidence: float = 0.0
    high_ratings: int = Field(0, ge=0)
    low_ratings: int = Field(0, ge=0)

    track_count: int = Field(0, ge=0)
    total_duration: float = Field(0.0, ge=0)

    def to_row(self) -> Dict[str, Any]:
        return self.dict()


class VenueEntity(BaseModel):
    """Derived venue roll-up"""

    venue_key: str
    name: str
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    show_count: int = Field(..., ge=1)
    first_show_date: Optional[str] = None
    last_show_date: Optional[str] = None

    class Config:
        from_attributes = True


class CatalogManifest(BaseModel):
    """Subset of manifest.json recorded in the catalog marker"""

    version: Optional[str] = None
    git_commit: Optional[str] = None
    build_timestamp: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CatalogManifest":
        package = payload.get("package") or {}
        build_info = payload.get("build_info") or {}
        return cls(
            version=package.get("version"),
            git_commit=build_info.get("git_commit"),
            build_timestamp=build_info.get("build_timestamp"),
        )


class DateRange(BaseModel):
    start: str
    end: str


class ExclusionRange(BaseModel):
    """Inclusive date range removed from a selector's ``range``; keyed from/to in collections.json"""

    start: str = Field(..., alias="from")
    end: str = Field(..., alias="to")

    class Config:
        populate_by_name = True


class ShowSelector(BaseModel):
    """
    Patterns selecting the shows of a collection; a show matching any pattern belongs to it.

    exclusion_ranges and exclusion_dates only narrow the single ``range``.
    """

    show_ids: List[str] = Field(default_factory=list)
    dates: List[str] = Field(default_factory=list)
    ranges: List[DateRange] = Field(default_factory=list)
    range: Optional[DateRange] = None
    exclusion_ranges: List[ExclusionRange] = Field(default_factory=list)
    exclusion_dates: List[str] = Field(default_factory=list)
    venues: List[str] = Field(default_factory=list)
    years: List[int] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.show_ids or self.dates or self.ranges or self.range or self.venues or self.years)


class CollectionEntity(BaseModel):
    """Curated collection from collections.json, before its selector is resolved"""

    id: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=500)
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    show_selector: Optional[ShowSelector] = None

    @property
    def primary_tag(self) -> Optional[str]:
        return self.tags[0] if self.tags else None
