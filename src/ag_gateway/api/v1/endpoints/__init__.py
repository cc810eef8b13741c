# src/ag_gateway/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .protocol import router as protocol_router

__all__ = ["protocol_router"]
