"""Middleware components for the Tabula API."""

from __future__ import annotations

from tabula_api.middleware.json_formatter import JSONFormatter, configure_logging
from tabula_api.middleware.logging import RequestLoggingMiddleware

__all__ = ["JSONFormatter", "RequestLoggingMiddleware", "configure_logging"]
