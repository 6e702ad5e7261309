"""Snapshot retention: keep-last-N cleanup and age-based policies.

The set of deletion candidates is captured when a cleanup starts.  Each
candidate is then re-validated inside its data source's critical section
immediately before it is deleted, so a snapshot created while the cleanup
runs is never removed and never counted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field

from tabula_engine.cancellation import CancellationToken
from tabula_engine.errors import NotFoundError, ValidationError
from tabula_engine.models.snapshot import Snapshot, SnapshotFilter
from tabula_engine.snapshots.store import SnapshotStore
from tabula_engine.state.tables import SnapshotTable

logger = logging.getLogger(__name__)


class RetentionStrategy(str, Enum):
    KEEP_LAST = "keep_last"
    KEEP_DAYS = "keep_days"
    KEEP_ALL = "keep_all"


@dataclass(frozen=True)
class RetentionPolicy:
    """How many snapshots of a data source to retain.

    Parameters
    ----------
    strategy:
        ``keep_last`` keeps the *value* most recent versions, ``keep_days``
        keeps snapshots younger than *value* days (and always the latest),
        ``keep_all`` never deletes.
    value:
        Count or number of days; ignored for ``keep_all``.
    """

    strategy: RetentionStrategy = RetentionStrategy.KEEP_LAST
    value: int = 10


class CleanupResult(BaseModel):
    data_source_id: str
    deleted_count: int = 0
    kept_count: int = 0
    deleted_versions: list[int] = Field(default_factory=list)
    kept_versions: list[int] = Field(default_factory=list)
    skipped_versions: list[int] = Field(
        default_factory=list,
        description="Candidates already gone when their turn came.",
    )


class RetentionManager:
    """Applies retention rules to one data source at a time.

    Parameters
    ----------
    store:
        Snapshot store owning the data sources.
    """

    def __init__(self, store: SnapshotStore) -> None:
        self._store = store

    async def cleanup(
        self,
        data_source_id: str,
        keep: int,
        *,
        project_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CleanupResult:
        """Keep the *keep* most recent snapshots and delete the rest.

        When *project_id* is given the data source must belong to it.

        Raises
        ------
        ValidationError
            If *keep* is negative.
        NotFoundError
            If the data source belongs to a different project.
        """
        if keep < 0:
            raise ValidationError("keep must be >= 0", data_source_id=data_source_id, keep=keep)

        snapshots = await self._snapshots_of(data_source_id, project_id)
        kept = snapshots[:keep]
        candidates = snapshots[keep:]
        if kept:
            floor = kept[-1].version
        else:
            floor = snapshots[0].version + 1 if snapshots else 1

        return await self._delete_candidates(data_source_id, kept, candidates, floor, cancel_token)

    async def apply_policy(
        self,
        data_source_id: str,
        policy: RetentionPolicy,
        *,
        project_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CleanupResult:
        """Apply *policy* to *data_source_id*."""
        if policy.strategy is RetentionStrategy.KEEP_LAST:
            return await self.cleanup(
                data_source_id, policy.value, project_id=project_id, cancel_token=cancel_token
            )

        snapshots = await self._snapshots_of(data_source_id, project_id)
        if policy.strategy is RetentionStrategy.KEEP_ALL or not snapshots:
            return CleanupResult(
                data_source_id=data_source_id,
                kept_count=len(snapshots),
                kept_versions=sorted(s.version for s in snapshots),
            )

        if policy.value < 0:
            raise ValidationError("keep_days must be >= 0", data_source_id=data_source_id)
        cutoff = datetime.now(UTC) - timedelta(days=policy.value)
        latest, older = snapshots[0], snapshots[1:]
        kept = [latest] + [s for s in older if s.created_at >= cutoff]
        candidates = [s for s in older if s.created_at < cutoff]
        return await self._delete_candidates(data_source_id, kept, candidates, latest.version, cancel_token)

    async def _snapshots_of(self, data_source_id: str, project_id: str | None) -> list[Snapshot]:
        if project_id is not None:
            source = await self._store.get_data_source(data_source_id)
            if source is not None and source.project_id != project_id:
                raise NotFoundError(
                    f"Data source {data_source_id} not found in project {project_id}",
                    data_source_id=data_source_id,
                    project_id=project_id,
                )
        return await self._store.list_by_data_source(data_source_id, SnapshotFilter(project_id=project_id))

    async def _delete_candidates(
        self,
        data_source_id: str,
        kept: list[Snapshot],
        candidates: list[Snapshot],
        floor: int,
        cancel_token: CancellationToken | None,
    ) -> CleanupResult:
        candidate_ids = {s.snapshot_id for s in candidates}

        def _still_stale(row: SnapshotTable) -> bool:
            return row.snapshot_id in candidate_ids and row.version < floor

        result = CleanupResult(
            data_source_id=data_source_id,
            kept_versions=sorted(s.version for s in kept),
        )
        for snapshot in candidates:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled(data_source_id=data_source_id)
            deleted = await self._store.delete_if(snapshot.snapshot_id, guard=_still_stale)
            if deleted is None:
                result.skipped_versions.append(snapshot.version)
            else:
                result.deleted_versions.append(deleted.version)

        result.deleted_versions.sort()
        result.deleted_count = len(result.deleted_versions)
        result.kept_count = len(result.kept_versions)
        logger.info(
            "Cleanup of %s: deleted %d, kept %d (skipped %d)",
            data_source_id,
            result.deleted_count,
            result.kept_count,
            len(result.skipped_versions),
        )
        return result
