"""Lineage graph of data flowing between snapshots and pipeline steps."""

from tabula_engine.lineage.tracker import LineageTracker, snapshot_node, step_node

__all__ = ["LineageTracker", "snapshot_node", "step_node"]
