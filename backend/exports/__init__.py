"""
Streaming export pipeline

Filters, record sources, encoders, the appendable artifact sink and the
orchestrating ExportService.
"""

from .filters import ExportFilters
from .service import ExportService

__all__ = ["ExportFilters", "ExportService"]
