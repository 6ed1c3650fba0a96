"""HTTP middleware."""

from licensehub.app.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
