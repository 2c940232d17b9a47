from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class AssignmentStatus(str, Enum):
    """
    审稿任务状态机：pending -> assigned -> in_progress -> completed（终态）。

    "overdue" 只是派生视图（deadline < now 且未完成），从不落库。
    """

    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


# Assignments counted against a reviewer's workload cap.
ACTIVE_STATUSES = frozenset({AssignmentStatus.ASSIGNED, AssignmentStatus.IN_PROGRESS})


class Recommendation(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    MINOR_REVISION = "minor_revision"
    MAJOR_REVISION = "major_revision"

    @classmethod
    def parse(cls, value: object) -> Optional["Recommendation"]:
        if isinstance(value, Recommendation):
            return value
        text = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
        try:
            return cls(text)
        except ValueError:
            return None


def _aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class ReviewAssignment(BaseModel):
    """审稿任务记录：只流转、不删除，构成永久审计轨迹。"""

    id: str
    manuscript_id: str
    reviewer_identity: Optional[str] = None
    editor_identity: Optional[str] = None
    status: AssignmentStatus = AssignmentStatus.PENDING
    deadline: datetime

    # Public (author-visible)
    comments: Optional[str] = None
    # Confidential (editor-only)
    confidential_comments: Optional[str] = None

    recommendation: Optional[Recommendation] = Field(None, description="Set only once completed")
    created_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("id", "manuscript_id", mode="before")
    @classmethod
    def _stringify(cls, value):
        return str(value).strip() if value is not None else value

    @field_validator("deadline", "created_at", "assigned_at", "completed_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _aware(value) if value is not None else None

    def is_overdue(self, now: datetime) -> bool:
        return self.status != AssignmentStatus.COMPLETED and self.deadline < _aware(now)

    def days_until_deadline(self, now: datetime) -> int:
        seconds = (self.deadline - _aware(now)).total_seconds()
        return math.ceil(seconds / 86400)
