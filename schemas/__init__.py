"""
Pydantic schemas for validation and serialization.

Schemas:
    catalog: Archive reference, raw records and typed catalog entities
    progress: Progress snapshots, run summaries and run outcomes
    api: API endpoint response models

Features:
    - Structural validation of catalog records before import
    - Immutable progress snapshots whose payload matches their phase
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.catalog import CatalogArchiveRef, ShowEntity, RecordingEntity
    from schemas.progress import BootstrapProgress, BootstrapResult
    from schemas.api import ShowsResponse, HealthCheckResponse

Example:
    # A show that fails validation is skipped and counted by the parser
    show = ShowEntity(
        show_id="1977-05-08-barton-hall",
        date="1977-05-08",
        band="Grateful Dead",
        venue_name="Barton Hall",
        city="Ithaca",
        state="NY"
    )
    assert show.venue_key == "barton hall|ithaca|ny"
"""
