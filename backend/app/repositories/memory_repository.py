from __future__ import annotations

from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Iterable, Mapping, Optional
from uuid import uuid4

from app.models.manuscript import Manuscript, ManuscriptStatus
from app.models.reviewer_profile import ReviewerProfile
from app.models.reviews import AssignmentStatus, ReviewAssignment
from app.repositories.base import AssignmentFilter, NewAssignment


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryManuscriptRepository:
    """进程内稿件仓储（本地运行 / 单元测试）。"""

    def __init__(self, manuscripts: Iterable[Manuscript] = ()) -> None:
        self._lock = Lock()
        self._rows: dict[str, Manuscript] = {m.id: m.model_copy(deep=True) for m in manuscripts}

    def add(self, manuscript: Manuscript) -> Manuscript:
        with self._lock:
            self._rows[manuscript.id] = manuscript.model_copy(deep=True)
        return manuscript

    def get_by_id(self, manuscript_id: str) -> Optional[Manuscript]:
        with self._lock:
            row = self._rows.get(str(manuscript_id))
            return row.model_copy(deep=True) if row else None

    def list_by_status(self, status: ManuscriptStatus) -> list[Manuscript]:
        with self._lock:
            return [m.model_copy(deep=True) for m in self._rows.values() if m.status == status]

    def update_status(
        self,
        manuscript_id: str,
        status: ManuscriptStatus,
        *,
        expected_status: ManuscriptStatus,
        changes: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Manuscript]:
        with self._lock:
            row = self._rows.get(str(manuscript_id))
            if row is None or row.status != expected_status:
                return None
            update = dict(changes or {})
            update["status"] = status
            updated = row.model_copy(update=update)
            self._rows[row.id] = updated
            return updated.model_copy(deep=True)


class InMemoryReviewerProfileRepository:
    def __init__(self, profiles: Iterable[ReviewerProfile] = ()) -> None:
        self._lock = Lock()
        self._rows: dict[str, ReviewerProfile] = {p.identity: p for p in profiles}

    def add(self, profile: ReviewerProfile) -> ReviewerProfile:
        with self._lock:
            self._rows[profile.identity] = profile
        return profile

    def get_by_identity(self, identity: str) -> Optional[ReviewerProfile]:
        with self._lock:
            return self._rows.get(str(identity))

    def list_all(self) -> list[ReviewerProfile]:
        with self._lock:
            return list(self._rows.values())


class InMemoryReviewAssignmentRepository:
    """
    进程内审稿任务仓储。

    中文注释:
    - update_by_id 与 Supabase 实现语义一致：只有当前 status == expected_state 才写入（CAS）。
    - 返回的都是副本，调用方修改不会影响仓储内状态。
    """

    def __init__(
        self,
        assignments: Iterable[ReviewAssignment] = (),
        *,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._lock = Lock()
        self._now = now
        self._rows: dict[str, ReviewAssignment] = {a.id: a.model_copy(deep=True) for a in assignments}

    def add(self, assignment: ReviewAssignment) -> ReviewAssignment:
        with self._lock:
            self._rows[assignment.id] = assignment.model_copy(deep=True)
        return assignment

    def create(self, manuscript_id: str, opts: NewAssignment) -> ReviewAssignment:
        now = self._now()
        row = ReviewAssignment(
            id=str(uuid4()),
            manuscript_id=str(manuscript_id),
            reviewer_identity=opts.reviewer_identity,
            editor_identity=opts.editor_identity,
            status=opts.status,
            deadline=opts.deadline,
            created_at=now,
            assigned_at=now if opts.status == AssignmentStatus.ASSIGNED else None,
        )
        with self._lock:
            self._rows[row.id] = row
        return row.model_copy(deep=True)

    def get_by_id(self, assignment_id: str) -> Optional[ReviewAssignment]:
        with self._lock:
            row = self._rows.get(str(assignment_id))
            return row.model_copy(deep=True) if row else None

    def get_by_manuscript(self, manuscript_id: str) -> list[ReviewAssignment]:
        with self._lock:
            rows = [a for a in self._rows.values() if a.manuscript_id == str(manuscript_id)]
        rows.sort(key=lambda a: a.created_at or a.deadline)
        return [a.model_copy(deep=True) for a in rows]

    def update_by_id(
        self,
        assignment_id: str,
        delta: Mapping[str, Any],
        expected_state: AssignmentStatus,
    ) -> Optional[ReviewAssignment]:
        with self._lock:
            row = self._rows.get(str(assignment_id))
            if row is None or row.status != expected_state:
                return None
            # 走一遍校验，保证写入后的记录仍是合法模型
            updated = ReviewAssignment.model_validate({**row.model_dump(), **dict(delta)})
            self._rows[row.id] = updated
            return updated.model_copy(deep=True)

    def list_by_filter(self, filters: AssignmentFilter) -> list[ReviewAssignment]:
        now = self._now()
        with self._lock:
            rows = list(self._rows.values())

        out: list[ReviewAssignment] = []
        for a in sorted(rows, key=lambda r: r.created_at or r.deadline, reverse=True):
            if filters.statuses is not None and a.status not in filters.statuses:
                continue
            if filters.reviewer is not None and a.reviewer_identity != filters.reviewer:
                continue
            if filters.editor is not None and a.editor_identity != filters.editor:
                continue
            if filters.manuscript_id is not None and a.manuscript_id != str(filters.manuscript_id):
                continue
            if filters.overdue_only and not a.is_overdue(now):
                continue
            out.append(a.model_copy(deep=True))
            if filters.limit is not None and len(out) >= filters.limit:
                break
        return out
