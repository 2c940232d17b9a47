from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Protocol

from app.models.manuscript import Manuscript, ManuscriptStatus
from app.models.reviewer_profile import ReviewerProfile
from app.models.reviews import AssignmentStatus, ReviewAssignment


@dataclass(frozen=True)
class AssignmentFilter:
    statuses: Optional[frozenset[AssignmentStatus]] = None
    reviewer: Optional[str] = None
    editor: Optional[str] = None
    manuscript_id: Optional[str] = None
    overdue_only: bool = False
    limit: Optional[int] = None

    @classmethod
    def build(
        cls,
        *,
        status: AssignmentStatus | Iterable[AssignmentStatus] | None = None,
        reviewer: Optional[str] = None,
        editor: Optional[str] = None,
        manuscript_id: Optional[str] = None,
        overdue_only: bool = False,
        limit: Optional[int] = None,
    ) -> "AssignmentFilter":
        if status is None:
            statuses = None
        elif isinstance(status, AssignmentStatus):
            statuses = frozenset({status})
        else:
            statuses = frozenset(status)
        return cls(
            statuses=statuses,
            reviewer=reviewer,
            editor=editor,
            manuscript_id=manuscript_id,
            overdue_only=overdue_only,
            limit=limit,
        )


@dataclass(frozen=True)
class NewAssignment:
    deadline: datetime
    reviewer_identity: Optional[str] = None
    editor_identity: Optional[str] = None
    status: AssignmentStatus = AssignmentStatus.PENDING


class ManuscriptRepository(Protocol):
    def get_by_id(self, manuscript_id: str) -> Optional[Manuscript]: ...

    def list_by_status(self, status: ManuscriptStatus) -> list[Manuscript]: ...

    def update_status(
        self,
        manuscript_id: str,
        status: ManuscriptStatus,
        *,
        expected_status: ManuscriptStatus,
        changes: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Manuscript]:
        """Conditional status write; returns None when the row no longer has expected_status."""
        ...


class ReviewerProfileRepository(Protocol):
    def get_by_identity(self, identity: str) -> Optional[ReviewerProfile]: ...

    def list_all(self) -> list[ReviewerProfile]: ...


class ReviewAssignmentRepository(Protocol):
    def create(self, manuscript_id: str, opts: NewAssignment) -> ReviewAssignment: ...

    def get_by_id(self, assignment_id: str) -> Optional[ReviewAssignment]: ...

    def get_by_manuscript(self, manuscript_id: str) -> list[ReviewAssignment]: ...

    def update_by_id(
        self,
        assignment_id: str,
        delta: Mapping[str, Any],
        expected_state: AssignmentStatus,
    ) -> Optional[ReviewAssignment]:
        """
        Atomic compare-and-swap on status.

        Returns the updated record, or None when no row with (id, expected_state) exists.
        """
        ...

    def list_by_filter(self, filters: AssignmentFilter) -> list[ReviewAssignment]: ...
