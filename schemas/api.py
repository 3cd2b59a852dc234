"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import BootstrapPhase, RunStatus
from schemas.progress import BootstrapProgress

# ============================================================================
# Health Check Schemas
# ============================================================================

class CatalogMarkerInfo(BaseModel):
    """Completion marker of the local catalog"""
    schema_version: str
    content_hash: str
    data_version: Optional[str] = None
    git_tag: Optional[str] = None
    git_commit: Optional[str] = None
    imported_at: datetime
    total_shows: int = 0
    total_recordings: int = 0
    total_venues: int = 0

    class Config:
        from_attributes = True


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    database_connected: bool
    catalog_ready: bool = False
    bootstrap_phase: BootstrapPhase = BootstrapPhase.IDLE
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    catalog: Optional[CatalogMarkerInfo] = None
    counts: Dict[str, int] = Field(default_factory=dict)

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"
        if not values.get("catalog_ready", False):
            # Serving is possible once a first bootstrap completed
            return "degraded"
        return "healthy"

    class Config:
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "catalog_ready": True,
                "bootstrap_phase": "completed",
                "counts": {"shows": 2312, "recordings": 17810, "venues": 514}
            }
        }

# ============================================================================
# Bootstrap Schemas
# ============================================================================

class BootstrapStartResponse(BaseModel):
    """Accepted bootstrap request; joined is True when an in-flight run was joined"""
    run_id: str
    joined: bool
    forced: bool
    progress: BootstrapProgress


class BootstrapCancelResponse(BaseModel):
    cancelled: bool
    run_id: Optional[str] = None


class BootstrapRunResponse(BaseModel):
    """One bootstrap run record"""
    run_id: str
    status: RunStatus
    forced: bool
    used_local: bool
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    archive_url: Optional[str] = None
    content_hash: Optional[str] = None
    archive_size_bytes: Optional[int] = None
    shows_imported: int = 0
    recordings_imported: int = 0
    venues_computed: int = 0
    collections_imported: int = 0
    shows_skipped: int = 0
    recordings_skipped: int = 0
    failed_phase: Optional[BootstrapPhase] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @validator("forced", "used_local", pre=True)
    def int_flag_to_bool(cls, v):
        return bool(v)

    @validator("shows_imported", "recordings_imported", "venues_computed", "collections_imported",
               "shows_skipped", "recordings_skipped", pre=True)
    def none_to_zero(cls, v):
        return v or 0

    class Config:
        from_attributes = True
        use_enum_values = True

# ============================================================================
# Catalog Query Schemas
# ============================================================================

class RecordingResponse(BaseModel):
    identifier: str
    show_id: str
    source_type: Optional[str] = None
    taper: Optional[str] = None
    source: Optional[str] = None
    lineage: Optional[str] = None
    rating: float = 0.0
    raw_rating: float = 0.0
    review_count: int = 0
    confidence: float = 0.0
    high_ratings: int = 0
    low_ratings: int = 0
    track_count: int = 0
    total_duration: float = 0.0

    class Config:
        from_attributes = True


class ShowResponse(BaseModel):
    """Response model for a show"""
    show_id: str
    date: str
    year: Optional[int] = None
    month: Optional[int] = None
    band: str
    url: Optional[str] = None
    venue_name: str
    venue_key: str
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    location_raw: Optional[str] = None
    setlist_status: Optional[str] = None
    song_list: Optional[str] = None
    lineup_status: Optional[str] = None
    member_list: Optional[str] = None
    recording_count: int = 0
    best_recording_id: Optional[str] = None
    average_rating: Optional[float] = None
    total_reviews: int = 0
    cover_image_url: Optional[str] = None

    class Config:
        from_attributes = True
        json_schema_extra = {
            "example": {
                "show_id": "1977-05-08-barton-hall-cornell-u-ithaca-ny-usa",
                "date": "1977-05-08",
                "year": 1977,
                "month": 5,
                "band": "Grateful Dead",
                "venue_name": "Barton Hall, Cornell University",
                "venue_key": "barton hall, cornell university|ithaca|ny",
                "city": "Ithaca",
                "state": "NY",
                "country": "USA",
                "recording_count": 12,
                "average_rating": 4.8
            }
        }


class ShowDetailResponse(ShowResponse):
    recordings: List[RecordingResponse] = Field(default_factory=list)


class VenueResponse(BaseModel):
    venue_key: str
    name: str
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    show_count: int
    first_show_date: Optional[str] = None
    last_show_date: Optional[str] = None

    class Config:
        from_attributes = True


class PaginationMetadata(BaseModel):
    """Pagination metadata"""
    total_items: int
    total_pages: int
    current_page: int
    page_size: int
    has_next: bool
    has_previous: bool


class ShowsResponse(BaseModel):
    """Paginated shows response"""
    items: List[ShowResponse]
    pagination: PaginationMetadata
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


class VenuesResponse(BaseModel):
    """Paginated venues response"""
    items: List[VenueResponse]
    pagination: PaginationMetadata
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


class CollectionResponse(BaseModel):
    collection_id: str
    name: str
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    primary_tag: Optional[str] = None
    show_ids: List[str] = Field(default_factory=list)
    total_shows: int = 0

    class Config:
        from_attributes = True


class CollectionsResponse(BaseModel):
    items: List[CollectionResponse]
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


class CatalogClearResponse(BaseModel):
    """Rows removed per entity by DELETE /catalog"""
    cleared: bool
    removed: Dict[str, int] = Field(default_factory=dict)

# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
