"""
Core utilities and configuration for the catalog bootstrap service.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Async engine, session factory and table creation
    exceptions: Exception hierarchy with structured error context
    logging: Logging configuration

Usage:
    from core.config import settings
    from core.database import create_engine, create_session_maker, init_models
    from core.exceptions import TransferError, IntegrityError, BootstrapError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Create the local catalog tables
    engine = create_engine(settings.DATABASE_URL)
    await init_models(engine)
"""
