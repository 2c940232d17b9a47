from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from app.core.config import OracleConfig, ReviewAssignmentConfig
from app.models.reviews import AssignmentStatus
from app.repositories.base import AssignmentFilter
from app.repositories.supabase_repository import (
    SupabaseManuscriptRepository,
    SupabaseReviewAssignmentRepository,
    SupabaseReviewerProfileRepository,
)
from app.schemas.review import (
    AssignRequest,
    AssignReviewersRequest,
    CreateAssignmentRequest,
    DraftUpdate,
    ExtendDeadlineRequest,
    PublishRequest,
    ReviewDecision,
    ServiceResult,
)
from app.services.consensus_service import ConsensusService
from app.services.review_lifecycle_service import ReviewLifecycleService
from app.services.reviewer_assignment_service import ReviewerAssignmentService

router = APIRouter(prefix="/reviews", tags=["Reviews"])


@dataclass(frozen=True)
class ReviewServices:
    assignment: ReviewerAssignmentService
    lifecycle: ReviewLifecycleService
    consensus: ConsensusService


@lru_cache(maxsize=1)
def _default_services() -> ReviewServices:
    config = ReviewAssignmentConfig.from_env()
    manuscripts = SupabaseManuscriptRepository()
    profiles = SupabaseReviewerProfileRepository()
    assignments = SupabaseReviewAssignmentRepository()
    return ReviewServices(
        assignment=ReviewerAssignmentService(
            manuscripts=manuscripts,
            profiles=profiles,
            assignments=assignments,
            config=config,
            oracle_config=OracleConfig.from_env(),
        ),
        lifecycle=ReviewLifecycleService(
            manuscripts=manuscripts,
            profiles=profiles,
            assignments=assignments,
            config=config,
        ),
        consensus=ConsensusService(manuscripts=manuscripts, assignments=assignments, config=config),
    )


def shutdown_review_services() -> None:
    """Close the default services' outbound clients (called from the app lifespan)."""
    if _default_services.cache_info().currsize:
        _default_services().assignment.close()
        _default_services.cache_clear()


def get_review_services() -> ReviewServices:
    """FastAPI dependency (tests override it with in-memory repositories)."""
    return _default_services()


def _unwrap(result: ServiceResult) -> dict[str, Any]:
    """
    ServiceResult -> 响应体。

    中文注释:
    - 成功：{"success": true, "data": ...}
    - 失败：HTTPException，detail 即 ReviewError（含 code / reasons / retryable），前端可直接展示未满足的条件。
    """
    if result.success:
        return {"success": True, "data": result.data}
    error = result.error
    if error is None:
        raise HTTPException(status_code=500, detail="Service returned no result")
    raise HTTPException(status_code=error.status_code, detail=error.model_dump(mode="json"))


# === Manuscript-level operations ===


@router.post("/manuscripts/{manuscript_id}/auto-assign")
def auto_assign_reviewer(
    manuscript_id: str,
    strategy: Optional[str] = Query(default=None, description="deterministic | oracle"),
    deadline_days: Optional[int] = Query(default=None, ge=1, le=365),
    editor_identity: Optional[str] = Query(default=None),
    services: ReviewServices = Depends(get_review_services),
):
    return _unwrap(
        services.assignment.auto_assign(
            manuscript_id,
            strategy=strategy,
            deadline_days=deadline_days,
            editor_identity=editor_identity,
        )
    )


@router.get("/manuscripts/{manuscript_id}/candidates")
def list_candidates(
    manuscript_id: str,
    strategy: Optional[str] = Query(default=None),
    services: ReviewServices = Depends(get_review_services),
):
    return _unwrap(services.assignment.evaluate_candidates(manuscript_id, strategy=strategy))


@router.post("/manuscripts/{manuscript_id}/assign-reviewers")
def assign_reviewers(
    manuscript_id: str,
    req: AssignReviewersRequest,
    services: ReviewServices = Depends(get_review_services),
):
    return _unwrap(
        services.lifecycle.assign_reviewers(manuscript_id, req.reviewers, assigned_by=req.assigned_by)
    )


@router.get("/manuscripts/{manuscript_id}/consensus")
def get_consensus(manuscript_id: str, services: ReviewServices = Depends(get_review_services)):
    return _unwrap(services.consensus.get_consensus_status(manuscript_id))


@router.get("/manuscripts/{manuscript_id}/review-status")
def get_review_status(manuscript_id: str, services: ReviewServices = Depends(get_review_services)):
    return _unwrap(services.consensus.get_review_status(manuscript_id))


@router.post("/manuscripts/{manuscript_id}/publish")
def publish_manuscript(
    manuscript_id: str,
    req: PublishRequest,
    services: ReviewServices = Depends(get_review_services),
):
    return _unwrap(services.consensus.publish(manuscript_id, req.published_by))


@router.post("/manuscripts/{manuscript_id}/reject")
def reject_manuscript(
    manuscript_id: str,
    rejected_by: str = Body(..., embed=True),
    services: ReviewServices = Depends(get_review_services),
):
    return _unwrap(services.consensus.reject(manuscript_id, rejected_by))


@router.get("/eligibility/{reviewer_identity}/{manuscript_id}")
def check_eligibility(
    reviewer_identity: str,
    manuscript_id: str,
    services: ReviewServices = Depends(get_review_services),
):
    return _unwrap(services.lifecycle.check_eligibility(reviewer_identity, manuscript_id))


@router.get("/reviewer/{reviewer_identity}/qualification")
def get_reviewer_qualification(reviewer_identity: str, services: ReviewServices = Depends(get_review_services)):
    return _unwrap(services.lifecycle.get_reviewer_qualification(reviewer_identity))


# === Assignment records ===


@router.post("/")
def create_assignment(req: CreateAssignmentRequest, services: ReviewServices = Depends(get_review_services)):
    return _unwrap(
        services.lifecycle.create(
            req.manuscript_id,
            reviewer_identity=req.reviewer_identity,
            editor_identity=req.editor_identity,
            review_days=req.review_days,
        )
    )


@router.get("/")
def list_assignments(
    status: Optional[AssignmentStatus] = Query(default=None),
    reviewer: Optional[str] = Query(default=None),
    editor: Optional[str] = Query(default=None),
    manuscript_id: Optional[str] = Query(default=None),
    overdue_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=500),
    services: ReviewServices = Depends(get_review_services),
):
    filters = AssignmentFilter.build(
        status=status,
        reviewer=reviewer,
        editor=editor,
        manuscript_id=manuscript_id,
        overdue_only=overdue_only,
        limit=limit,
    )
    return _unwrap(services.lifecycle.list_assignments(filters))


@router.get("/{assignment_id}")
def get_assignment(assignment_id: str, services: ReviewServices = Depends(get_review_services)):
    return _unwrap(services.lifecycle.get_assignment(assignment_id))


@router.put("/{assignment_id}/assign")
def assign_reviewer(
    assignment_id: str,
    req: AssignRequest,
    services: ReviewServices = Depends(get_review_services),
):
    return _unwrap(
        services.lifecycle.assign(
            assignment_id,
            req.reviewer_identity,
            editor_identity=req.editor_identity,
            review_days=req.review_days,
        )
    )


@router.patch("/{assignment_id}/draft")
def save_draft(assignment_id: str, req: DraftUpdate, services: ReviewServices = Depends(get_review_services)):
    return _unwrap(
        services.lifecycle.save_draft(
            assignment_id,
            comments=req.comments,
            confidential_comments=req.confidential_comments,
        )
    )


@router.post("/{assignment_id}/submit")
def submit_review(
    assignment_id: str,
    req: ReviewDecision,
    services: ReviewServices = Depends(get_review_services),
):
    return _unwrap(services.lifecycle.submit_decision(assignment_id, req))


@router.post("/{assignment_id}/extend-deadline")
def extend_deadline(
    assignment_id: str,
    req: ExtendDeadlineRequest,
    services: ReviewServices = Depends(get_review_services),
):
    return _unwrap(services.lifecycle.extend_deadline(assignment_id, req.days))
