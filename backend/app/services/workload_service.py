from __future__ import annotations

from typing import Iterable

from app.models.reviews import ACTIVE_STATUSES
from app.repositories.base import AssignmentFilter, ReviewAssignmentRepository


class WorkloadTracker:
    """Counts a reviewer's active (assigned / in_progress) assignments. Read-only."""

    def __init__(self, assignments: ReviewAssignmentRepository) -> None:
        self._assignments = assignments

    def current_load(self, reviewer_identity: str) -> int:
        rows = self._assignments.list_by_filter(
            AssignmentFilter.build(status=ACTIVE_STATUSES, reviewer=str(reviewer_identity))
        )
        return len(rows)

    def loads_for(self, reviewer_identities: Iterable[str]) -> dict[str, int]:
        return {rid: self.current_load(rid) for rid in dict.fromkeys(reviewer_identities)}
