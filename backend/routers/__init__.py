"""API Routers for the export service."""

from . import exports, system

__all__ = [
    "exports",
    "system",
]
