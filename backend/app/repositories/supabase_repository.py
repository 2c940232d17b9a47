from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional
from uuid import uuid4

from postgrest.exceptions import APIError
from pydantic import ValidationError

from app.lib.api_client import supabase_admin
from app.models.manuscript import Manuscript, ManuscriptStatus
from app.models.reviewer_profile import ReviewerProfile
from app.models.reviews import AssignmentStatus, ReviewAssignment
from app.repositories.base import AssignmentFilter, NewAssignment

logger = logging.getLogger("fronsci.repository")

_MANUSCRIPT_COLUMNS = "id,title,abstract,category,author_identity,status,published_by,published_at"
_ASSIGNMENT_COLUMNS = (
    "id,manuscript_id,reviewer_identity,editor_identity,status,deadline,comments,"
    "confidential_comments,recommendation,created_at,assigned_at,completed_at"
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _rows(resp: Any) -> list[dict[str, Any]]:
    data = getattr(resp, "data", None)
    if data is None:
        return []
    if isinstance(data, dict):
        return [data]
    return list(data)


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _payload(delta: Mapping[str, Any]) -> dict[str, Any]:
    return {k: _to_db(v) for k, v in delta.items()}


class SupabaseManuscriptRepository:
    """manuscripts 表（PostgREST）。"""

    def __init__(self, *, client: Any | None = None) -> None:
        self.client = client or supabase_admin

    @staticmethod
    def _parse(row: Mapping[str, Any]) -> Optional[Manuscript]:
        try:
            return Manuscript.model_validate(dict(row))
        except ValidationError as e:
            logger.warning("[Manuscripts] skip malformed row id=%s: %s", row.get("id"), e)
            return None

    def get_by_id(self, manuscript_id: str) -> Optional[Manuscript]:
        try:
            resp = (
                self.client.table("manuscripts")
                .select(_MANUSCRIPT_COLUMNS)
                .eq("id", str(manuscript_id))
                .limit(1)
                .execute()
            )
        except APIError as e:
            logger.error("[Manuscripts] get_by_id failed (id=%s): %s", manuscript_id, e)
            raise
        rows = _rows(resp)
        return self._parse(rows[0]) if rows else None

    def list_by_status(self, status: ManuscriptStatus) -> list[Manuscript]:
        resp = (
            self.client.table("manuscripts")
            .select(_MANUSCRIPT_COLUMNS)
            .eq("status", status.value)
            .order("created_at", desc=True)
            .execute()
        )
        out = [self._parse(r) for r in _rows(resp)]
        return [m for m in out if m is not None]

    def update_status(
        self,
        manuscript_id: str,
        status: ManuscriptStatus,
        *,
        expected_status: ManuscriptStatus,
        changes: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Manuscript]:
        payload = _payload({**dict(changes or {}), "status": status})
        try:
            resp = (
                self.client.table("manuscripts")
                .update(payload)
                .eq("id", str(manuscript_id))
                .eq("status", expected_status.value)
                .execute()
            )
        except APIError as e:
            logger.error("[Manuscripts] status update failed (id=%s -> %s): %s", manuscript_id, status.value, e)
            raise
        rows = _rows(resp)
        return self._parse(rows[0]) if rows else None


class SupabaseReviewerProfileRepository:
    """
    reviewer_profiles 表：identity + cv_data(JSON) + is_available。

    中文注释:
    - cv_data 是 CV 抽取服务写入的原始嵌套结构，这里统一经 ReviewerProfile.from_cv_data 校验。
    - 没有 cv_data 的行不进入候选池（等同于“未上传 CV”）。
    """

    def __init__(self, *, client: Any | None = None) -> None:
        self.client = client or supabase_admin

    @staticmethod
    def _parse(row: Mapping[str, Any]) -> Optional[ReviewerProfile]:
        identity = str(row.get("identity") or row.get("wallet_address") or "").strip()
        cv_data = row.get("cv_data")
        if not identity or not cv_data:
            return None
        available = row.get("is_available")
        return ReviewerProfile.from_cv_data(
            identity,
            cv_data,
            available=True if available is None else bool(available),
        )

    def get_by_identity(self, identity: str) -> Optional[ReviewerProfile]:
        resp = (
            self.client.table("reviewer_profiles")
            .select("identity,cv_data,is_available")
            .eq("identity", str(identity))
            .limit(1)
            .execute()
        )
        rows = _rows(resp)
        return self._parse(rows[0]) if rows else None

    def list_all(self) -> list[ReviewerProfile]:
        resp = self.client.table("reviewer_profiles").select("identity,cv_data,is_available").execute()
        out = [self._parse(r) for r in _rows(resp)]
        return [p for p in out if p is not None]


class SupabaseReviewAssignmentRepository:
    def __init__(self, *, client: Any | None = None, now: Callable[[], datetime] = _utc_now) -> None:
        self.client = client or supabase_admin
        self._now = now

    @staticmethod
    def _parse(row: Mapping[str, Any]) -> ReviewAssignment:
        return ReviewAssignment.model_validate(dict(row))

    def create(self, manuscript_id: str, opts: NewAssignment) -> ReviewAssignment:
        now = self._now()
        payload = _payload(
            {
                "id": str(uuid4()),
                "manuscript_id": str(manuscript_id),
                "reviewer_identity": opts.reviewer_identity,
                "editor_identity": opts.editor_identity,
                "status": opts.status,
                "deadline": opts.deadline,
                "created_at": now,
                "assigned_at": now if opts.status == AssignmentStatus.ASSIGNED else None,
            }
        )
        try:
            resp = self.client.table("review_assignments").insert(payload).execute()
        except APIError as e:
            logger.error("[ReviewAssignments] insert failed (manuscript_id=%s): %s", manuscript_id, e)
            raise
        rows = _rows(resp)
        return self._parse(rows[0] if rows else payload)

    def get_by_id(self, assignment_id: str) -> Optional[ReviewAssignment]:
        resp = (
            self.client.table("review_assignments")
            .select(_ASSIGNMENT_COLUMNS)
            .eq("id", str(assignment_id))
            .limit(1)
            .execute()
        )
        rows = _rows(resp)
        return self._parse(rows[0]) if rows else None

    def get_by_manuscript(self, manuscript_id: str) -> list[ReviewAssignment]:
        resp = (
            self.client.table("review_assignments")
            .select(_ASSIGNMENT_COLUMNS)
            .eq("manuscript_id", str(manuscript_id))
            .order("created_at")
            .execute()
        )
        return [self._parse(r) for r in _rows(resp)]

    def update_by_id(
        self,
        assignment_id: str,
        delta: Mapping[str, Any],
        expected_state: AssignmentStatus,
    ) -> Optional[ReviewAssignment]:
        # 条件更新：WHERE id = ? AND status = ?；返回空行即视为并发冲突（CAS 失败）
        try:
            resp = (
                self.client.table("review_assignments")
                .update(_payload(delta))
                .eq("id", str(assignment_id))
                .eq("status", expected_state.value)
                .execute()
            )
        except APIError as e:
            logger.error("[ReviewAssignments] conditional update failed (id=%s): %s", assignment_id, e)
            raise
        rows = _rows(resp)
        return self._parse(rows[0]) if rows else None

    def list_by_filter(self, filters: AssignmentFilter) -> list[ReviewAssignment]:
        query = self.client.table("review_assignments").select(_ASSIGNMENT_COLUMNS)
        if filters.statuses is not None:
            query = query.in_("status", sorted(s.value for s in filters.statuses))
        if filters.reviewer is not None:
            query = query.eq("reviewer_identity", filters.reviewer)
        if filters.editor is not None:
            query = query.eq("editor_identity", filters.editor)
        if filters.manuscript_id is not None:
            query = query.eq("manuscript_id", str(filters.manuscript_id))
        if filters.overdue_only:
            query = query.lt("deadline", self._now().isoformat()).neq("status", AssignmentStatus.COMPLETED.value)
        query = query.order("created_at", desc=True)
        if filters.limit is not None:
            query = query.limit(int(filters.limit))
        return [self._parse(r) for r in _rows(query.execute())]
