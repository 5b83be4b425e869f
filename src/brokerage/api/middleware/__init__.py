"""API middleware package."""

from src.brokerage.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
