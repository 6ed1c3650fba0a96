"""API v1 module."""

from licensehub.app.api.v1.dispatch import router as dispatch_router

__all__ = ["dispatch_router"]
