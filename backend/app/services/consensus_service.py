from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from app.core.config import ReviewAssignmentConfig
from app.core.review_errors import (
    ConflictingTransitionError,
    IneligibleError,
    NotFoundError,
    ValidationFailedError,
    returns_service_result,
)
from app.models.manuscript import Manuscript, ManuscriptStatus
from app.models.reviews import AssignmentStatus, Recommendation, ReviewAssignment
from app.repositories.base import ManuscriptRepository, ReviewAssignmentRepository
from app.schemas.review import ConsensusStatus, ReviewProgressItem, ReviewStatusReport

logger = logging.getLogger("fronsci.consensus")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def compute_consensus(
    manuscript_id: str,
    assignments: Iterable[ReviewAssignment],
    *,
    quorum: int = 3,
    accept_threshold: int = 2,
) -> ConsensusStatus:
    """
    Pure aggregation over the manuscript's assignment records.

    can_publish = completed >= quorum and accepts >= accept_threshold. Reaching quorum only unlocks
    publication; it never changes the manuscript status by itself.
    """
    completed = [a for a in assignments if a.status == AssignmentStatus.COMPLETED]
    completed_count = len(completed)
    accept_count = sum(1 for a in completed if a.recommendation == Recommendation.ACCEPT)
    reached = completed_count >= quorum
    can_publish = reached and accept_count >= accept_threshold

    if can_publish:
        next_action = "ready_to_publish"
    elif reached:
        next_action = "review_complete"
    else:
        next_action = f"need_{quorum - completed_count}_more_reviews"

    recommendation = None
    if reached:
        recommendation = "approve" if can_publish else "reject"

    return ConsensusStatus(
        manuscript_id=str(manuscript_id),
        completed_count=completed_count,
        accept_count=accept_count,
        can_publish=can_publish,
        next_action=next_action,
        publish_recommendation=recommendation,
        required_reviews=quorum,
    )


class ConsensusService:
    """
    多审稿人共识 + 发布闸门。

    中文注释:
    - 计数每次都从仓储现算（不缓存），submit 之后立即读取即可看到最新结果。
    - publish / reject 是单独授权的操作，且都是条件更新（expected_status = 读到的状态）。
    """

    def __init__(
        self,
        *,
        manuscripts: ManuscriptRepository,
        assignments: ReviewAssignmentRepository,
        config: Optional[ReviewAssignmentConfig] = None,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.manuscripts = manuscripts
        self.assignments = assignments
        self.config = config or ReviewAssignmentConfig.from_env()
        self._now = now

    def _get_manuscript(self, manuscript_id: str) -> Manuscript:
        manuscript = self.manuscripts.get_by_id(str(manuscript_id))
        if manuscript is None:
            raise NotFoundError(f"Manuscript {manuscript_id} not found", code="manuscript_not_found")
        return manuscript

    def _consensus(self, manuscript_id: str) -> ConsensusStatus:
        return compute_consensus(
            manuscript_id,
            self.assignments.get_by_manuscript(str(manuscript_id)),
            quorum=self.config.quorum,
            accept_threshold=self.config.accept_threshold,
        )

    @returns_service_result
    def get_consensus_status(self, manuscript_id: str) -> ConsensusStatus:
        manuscript = self._get_manuscript(manuscript_id)
        return self._consensus(manuscript.id)

    @returns_service_result
    def get_review_status(self, manuscript_id: str) -> ReviewStatusReport:
        manuscript = self._get_manuscript(manuscript_id)
        rows = self.assignments.get_by_manuscript(manuscript.id)
        now = self._now()
        consensus = compute_consensus(
            manuscript.id,
            rows,
            quorum=self.config.quorum,
            accept_threshold=self.config.accept_threshold,
        )
        return ReviewStatusReport(
            manuscript_id=manuscript.id,
            manuscript_title=manuscript.title,
            current_status=manuscript.status.value,
            total_reviewers=sum(1 for a in rows if a.reviewer_identity),
            reviews_completed=consensus.completed_count,
            reviews_in_progress=sum(1 for a in rows if a.status == AssignmentStatus.IN_PROGRESS),
            reviews_pending=sum(
                1 for a in rows if a.status in (AssignmentStatus.PENDING, AssignmentStatus.ASSIGNED)
            ),
            consensus=consensus,
            reviews=[
                ReviewProgressItem(
                    id=a.id,
                    reviewer_identity=a.reviewer_identity,
                    status=a.status.value,
                    deadline=a.deadline,
                    completed_at=a.completed_at,
                    recommendation=a.recommendation.value if a.recommendation else None,
                    overdue=a.is_overdue(now),
                )
                for a in rows
            ],
        )

    def _transition(
        self,
        manuscript: Manuscript,
        target: ManuscriptStatus,
        changes: dict,
    ) -> Manuscript:
        if target.value not in ManuscriptStatus.allowed_next(manuscript.status.value):
            raise ConflictingTransitionError(
                f"Cannot move manuscript from {manuscript.status.value} to {target.value}",
                code="invalid_transition",
            )
        updated = self.manuscripts.update_status(
            manuscript.id,
            target,
            expected_status=manuscript.status,
            changes=changes,
        )
        if updated is None:
            raise ConflictingTransitionError(
                "Manuscript status changed concurrently",
                code="concurrent_update",
                details={"expected_status": manuscript.status.value},
            )
        return updated

    @returns_service_result
    def publish(self, manuscript_id: str, published_by: str) -> Manuscript:
        published_by = str(published_by or "").strip()
        if not published_by:
            raise ValidationFailedError("published_by is required", code="missing_publisher")
        manuscript = self._get_manuscript(manuscript_id)
        if manuscript.status == ManuscriptStatus.PUBLISHED:
            raise ConflictingTransitionError("Manuscript is already published", code="already_published")

        consensus = self._consensus(manuscript.id)
        if not consensus.can_publish:
            raise IneligibleError(
                "Manuscript has not reached a publishable consensus",
                code="consensus_not_reached",
                reasons=[
                    f"{consensus.completed_count}/{consensus.required_reviews} reviews completed",
                    f"{consensus.accept_count}/{self.config.accept_threshold} accept recommendations",
                ],
                details={"consensus": consensus.model_dump()},
            )

        updated = self._transition(
            manuscript,
            ManuscriptStatus.PUBLISHED,
            {"published_by": published_by, "published_at": self._now()},
        )
        logger.info("[Publish] manuscript=%s published_by=%s", updated.id, published_by)
        return updated

    @returns_service_result
    def reject(self, manuscript_id: str, rejected_by: str) -> Manuscript:
        rejected_by = str(rejected_by or "").strip()
        if not rejected_by:
            raise ValidationFailedError("rejected_by is required", code="missing_editor")
        manuscript = self._get_manuscript(manuscript_id)
        consensus = self._consensus(manuscript.id)
        if consensus.publish_recommendation != "reject":
            raise IneligibleError(
                "Manuscript has no rejecting consensus",
                code="consensus_not_reached",
                reasons=[f"next action: {consensus.next_action}"],
                details={"consensus": consensus.model_dump()},
            )
        updated = self._transition(manuscript, ManuscriptStatus.REJECTED, {})
        logger.info("[Publish] manuscript=%s rejected_by=%s", updated.id, rejected_by)
        return updated
