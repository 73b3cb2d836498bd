"""API middleware package."""

from src.crmsync.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
