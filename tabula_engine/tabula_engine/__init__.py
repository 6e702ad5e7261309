"""Tabula engine: snapshot versioning, diffing, retention, pipelines and lineage."""

__version__ = "0.1.0"
