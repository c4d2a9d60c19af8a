"""
Core utilities and configuration for the sync pipeline.

This package provides foundational components used by every stage:

Modules:
    config: Application configuration and environment variable management
    context: PipelineContext, the explicit bundle of collaborators handed to stages
    database: Database engine and session factory
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import Settings
    from core.context import PipelineContext
    from core.exceptions import NetworkError, UnsupportedEntityTypeError
    from core.logging import setup_logging

Example:
    setup_logging()
    context = PipelineContext(settings=Settings(), store=store, bus=bus)
"""

__all__ = [
    "Settings",
    "PipelineContext",
    "setup_logging",
    # Exceptions
    "PipelineException",
    "ConnectorError",
    "NetworkError",
    "RateLimitError",
    "AuthenticationError",
    "ResourceNotFoundError",
    "PipelineValidationError",
    "UnsupportedEntityTypeError",
    "DataSourceNotFoundError",
    "DataSourceInactiveError",
    "InvalidActionError",
    "ProcessingError",
    "RecordNormalizationError",
    "StorageError",
    "PublishError",
    "RetryableError",
    "NonRetryableError",
]
