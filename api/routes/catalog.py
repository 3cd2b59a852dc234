"""
Catalog query endpoints with pagination and filtering
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_, or_
from api.dependencies import get_db, get_service
from bootstrap.service import BootstrapService
from core.exceptions import CatalogLockedError
from schemas.api import (
    ShowsResponse,
    ShowResponse,
    ShowDetailResponse,
    RecordingResponse,
    VenuesResponse,
    VenueResponse,
    CollectionsResponse,
    CollectionResponse,
    CatalogClearResponse,
    PaginationMetadata,
)
from models.show import Show
from models.recording import Recording
from models.venue import Venue
from typing import Optional
import time
import math
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Catalog"])


async def _paginate(db: AsyncSession, model, filters, order_by, page: int, page_size: int):
    count_query = select(func.count()).select_from(model)
    query = select(model)
    if filters:
        count_query = count_query.where(and_(*filters))
        query = query.where(and_(*filters))

    total_items = (await db.execute(count_query)).scalar()
    total_pages = math.ceil(total_items / page_size) if total_items > 0 else 0

    query = query.order_by(*order_by).offset((page - 1) * page_size).limit(page_size)
    items = (await db.execute(query)).scalars().all()

    pagination = PaginationMetadata(
        current_page=page,
        page_size=page_size,
        total_items=total_items,
        total_pages=total_pages,
        has_next=page < total_pages,
        has_previous=page > 1
    )
    return items, pagination


@router.get("/shows", response_model=ShowsResponse)
async def list_shows(
    request: Request,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=1000, description="Items per page"),
    year: Optional[int] = Query(None, description="Filter by year"),
    venue_key: Optional[str] = Query(None, description="Filter by normalized venue key"),
    state: Optional[str] = Query(None, description="Filter by state"),
    search: Optional[str] = Query(None, description="Search in venue, city and songs"),
    db: AsyncSession = Depends(get_db)
):
    """
    Retrieve paginated shows in date order.

    Features:
    - Pagination
    - Year / venue / state filters
    - Substring search over venue, city and set list
    """
    start_time = time.time()
    request_id = getattr(request.state, "request_id", "-")

    filters = []
    if year is not None:
        filters.append(Show.year == year)
    if venue_key:
        filters.append(Show.venue_key == venue_key)
    if state:
        filters.append(Show.state == state)
    if search:
        filters.append(or_(
            Show.venue_name.ilike(f"%{search}%"),
            Show.city.ilike(f"%{search}%"),
            Show.song_list.ilike(f"%{search}%")
        ))

    items, pagination = await _paginate(db, Show, filters, [Show.date, Show.show_id], page, page_size)

    logger.info(
        f"[{request_id}] GET /shows - returned {len(items)} of {pagination.total_items} "
        f"({(time.time() - start_time) * 1000:.2f}ms)"
    )

    return ShowsResponse(
        items=[ShowResponse.model_validate(show) for show in items],
        pagination=pagination,
        filters_applied={k: v for k, v in {
            "year": year,
            "venue_key": venue_key,
            "state": state,
            "search": search
        }.items() if v is not None}
    )


@router.get("/shows/{show_id}", response_model=ShowDetailResponse)
async def get_show(show_id: str, db: AsyncSession = Depends(get_db)):
    """One show with its recordings, best rated first"""
    show = (await db.execute(select(Show).where(Show.show_id == show_id))).scalar_one_or_none()
    if show is None:
        raise HTTPException(status_code=404, detail=f"Show not found: {show_id}")

    result = await db.execute(
        select(Recording)
        .where(Recording.show_id == show_id)
        .order_by(Recording.rating.desc(), Recording.identifier)
    )
    recordings = [RecordingResponse.model_validate(r) for r in result.scalars().all()]

    detail = ShowResponse.model_validate(show).dict()
    return ShowDetailResponse(**detail, recordings=recordings)


@router.get("/venues", response_model=VenuesResponse)
async def list_venues(
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=1000, description="Items per page"),
    search: Optional[str] = Query(None, description="Search in venue name and city"),
    db: AsyncSession = Depends(get_db)
):
    """Venues ordered by number of shows"""
    filters = []
    if search:
        filters.append(or_(Venue.name.ilike(f"%{search}%"), Venue.city.ilike(f"%{search}%")))

    items, pagination = await _paginate(
        db, Venue, filters, [Venue.show_count.desc(), Venue.venue_key], page, page_size
    )

    return VenuesResponse(
        items=[VenueResponse.model_validate(v) for v in items],
        pagination=pagination,
        filters_applied={"search": search} if search else {}
    )


@router.get("/collections", response_model=CollectionsResponse)
async def list_collections(
    tag: Optional[str] = Query(None, description="Filter by primary tag"),
    service: BootstrapService = Depends(get_service)
):
    """Curated collections with their resolved show ids"""
    collections = await service.store.list_collections(tag)
    return CollectionsResponse(
        items=[CollectionResponse.model_validate(c) for c in collections],
        filters_applied={"tag": tag} if tag else {}
    )


@router.delete("/catalog", response_model=CatalogClearResponse)
async def clear_catalog(request: Request, service: BootstrapService = Depends(get_service)):
    """
    Remove the local catalog; the next bootstrap imports from scratch.

    Responds 409 while a bootstrap holds the writer lock.
    """
    request_id = getattr(request.state, "request_id", "-")
    try:
        removed = await service.clear()
    except CatalogLockedError as e:
        logger.warning(f"[{request_id}] DELETE /catalog refused: {e.message}")
        raise HTTPException(status_code=409, detail=e.message)

    logger.info(f"[{request_id}] DELETE /catalog - removed {removed}")
    return CatalogClearResponse(cleared=True, removed=removed)
