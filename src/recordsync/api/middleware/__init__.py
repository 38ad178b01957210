"""API middleware package."""

from src.recordsync.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
