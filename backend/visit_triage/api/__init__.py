"""
Visit Triage - API Package

REST routes, request/response schemas and error handlers.
"""

from . import routes
from .errors import install_error_handlers

__all__ = ["routes", "install_error_handlers"]
