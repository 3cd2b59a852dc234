"""
Catalog bootstrap pipeline.

This package brings a local, queryable copy of the show/recording catalog
into existence on first run and refreshes it thereafter.

Modules:
    base: Component contracts, cancellation checkpoint, staged archive type
    progress: Phase state machine and non-blocking progress channel
    store: Local catalog store (transactions, marker, run records)
    runner: Bootstrap orchestrator driving the phases in order
    service: Concurrent-run policy (join) and composition root
    scheduler: APScheduler integration for periodic refreshes

Subpackages:
    fetchers: HTTP archive fetcher with resume/verify, release resolver
    extractors: ZIP extraction into staging
    transformers: Catalog parser (raw records -> typed entities)
    loaders: Transactional importer with idempotent upserts
    aggregators: Venue roll-ups derived from shows

Phases:
    Idle -> Checking -> UsingLocal -> Completed
    Idle -> Checking -> Downloading -> Extracting -> ImportingShows
         -> ComputingVenues -> ImportingRecordings -> Completed
    Any non-terminal phase -> Error

Usage:
    from core.config import settings
    from bootstrap.service import build_bootstrap_service

    service = build_bootstrap_service(settings)
    handle = await service.start()
    async for progress in handle.subscribe():
        print(progress.phase, progress.fraction)
    result = await handle.wait()
"""
