"""Tabula HTTP API: FastAPI surface over the snapshot engine."""

__version__ = "0.1.0"
