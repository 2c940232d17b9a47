from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, Field

from app.models.reviews import ReviewAssignment
from app.schemas.reviewer import CandidateEvaluation

T = TypeVar("T")

Strategy = Literal["deterministic", "oracle"]


# === Request payloads ===


class CreateAssignmentRequest(BaseModel):
    manuscript_id: str = Field(min_length=1)
    reviewer_identity: Optional[str] = None
    editor_identity: Optional[str] = None
    review_days: Optional[int] = Field(default=None, ge=1, le=365)


class AssignRequest(BaseModel):
    reviewer_identity: str = Field(min_length=1)
    editor_identity: Optional[str] = None
    review_days: Optional[int] = Field(default=None, ge=1, le=365)


class AssignReviewersRequest(BaseModel):
    reviewers: List[str] = Field(default_factory=list)
    assigned_by: Optional[str] = None


class DraftUpdate(BaseModel):
    comments: Optional[str] = Field(default=None, max_length=20000)
    confidential_comments: Optional[str] = Field(default=None, max_length=20000)


class ReviewDecision(BaseModel):
    # 中文注释: recommendation 保持 str，非法取值由服务层返回 validation_error（而不是 422 之前就被框架拦截）。
    recommendation: str
    comments: str = Field(default="", max_length=20000)
    confidential_comments: str = Field(default="", max_length=20000)
    reviewer_identity: str = ""


class ExtendDeadlineRequest(BaseModel):
    days: int


class PublishRequest(BaseModel):
    published_by: str = ""


# === Results ===


class ReviewError(BaseModel):
    """Structured failure surfaced to callers: always carries the unmet criteria."""

    category: str
    code: str
    message: str
    reasons: List[str] = Field(default_factory=list)
    retryable: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)
    status_code: int = Field(default=400, exclude=True)


class ServiceResult(BaseModel, Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[ReviewError] = None

    @classmethod
    def ok(cls, data: Any = None) -> "ServiceResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: ReviewError) -> "ServiceResult":
        return cls(success=False, error=error)


class AssignedReviewer(BaseModel):
    assignment_id: str
    manuscript_id: str
    reviewer_identity: str
    name: str
    deadline: datetime
    strategy: Strategy
    justification: str
    score: float = 0.0
    confidence: Optional[float] = None
    summary: Optional[str] = None
    candidates: List[CandidateEvaluation] = Field(default_factory=list)


class ConsensusStatus(BaseModel):
    manuscript_id: str
    completed_count: int
    accept_count: int
    can_publish: bool
    next_action: str
    publish_recommendation: Optional[Literal["approve", "reject"]] = None
    required_reviews: int = 3


class ReviewProgressItem(BaseModel):
    id: str
    reviewer_identity: Optional[str] = None
    status: str
    deadline: datetime
    completed_at: Optional[datetime] = None
    recommendation: Optional[str] = None
    overdue: bool = False


class ReviewStatusReport(BaseModel):
    manuscript_id: str
    manuscript_title: str
    current_status: str
    total_reviewers: int
    reviews_completed: int
    reviews_in_progress: int
    reviews_pending: int
    consensus: ConsensusStatus
    reviews: List[ReviewProgressItem] = Field(default_factory=list)


class AssignmentView(BaseModel):
    assignment: ReviewAssignment
    is_overdue: bool
    days_until_deadline: int


class AssignmentListing(BaseModel):
    reviews: List[AssignmentView] = Field(default_factory=list)
    total: int = 0
    overdue_count: int = 0
