# src/ag_gateway/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import protocol_router

__all__ = ["protocol_router"]
