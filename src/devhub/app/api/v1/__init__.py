"""API v1 module."""

from devhub.app.api.v1.ops import router as ops_router

__all__ = ["ops_router"]
