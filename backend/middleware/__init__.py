"""
Middleware package for the export service backend.

Includes:
- add_error_handlers: maps ExportServiceError subclasses to HTTP responses
"""

from middleware.error_handler import add_error_handlers, status_code_for

__all__ = [
    "add_error_handlers",
    "status_code_for",
]
