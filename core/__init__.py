"""
Core utilities and configuration for the market data pipeline.

This package provides foundational components used throughout the engine:

Modules:
    config: Application configuration and environment variable management
    database: Async engine and session factory
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import RateLimitError, ReconciliationAborted
    from core.logging import setup_logging
"""
