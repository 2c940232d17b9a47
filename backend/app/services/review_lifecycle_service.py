from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from app.core.config import ReviewAssignmentConfig
from app.core.locks import KeyedLocks, manuscript_locks
from app.core.review_errors import (
    ConflictingTransitionError,
    IneligibleError,
    NotFoundError,
    OverloadedError,
    ValidationFailedError,
    returns_service_result,
)
from app.models.manuscript import Manuscript, ManuscriptStatus
from app.models.reviews import AssignmentStatus, Recommendation, ReviewAssignment
from app.repositories.base import (
    AssignmentFilter,
    ManuscriptRepository,
    NewAssignment,
    ReviewAssignmentRepository,
    ReviewerProfileRepository,
)
from app.schemas.review import AssignmentListing, AssignmentView, ReviewDecision
from app.schemas.reviewer import EligibilityReport, EligibilityRequirements, QualificationResult
from app.services.qualification_service import QualificationEvaluator
from app.services.workload_service import WorkloadTracker

logger = logging.getLogger("fronsci.review_lifecycle")

MIN_BULK_REVIEWERS = 3
_CLOSED_MANUSCRIPT_STATUSES = {ManuscriptStatus.PUBLISHED, ManuscriptStatus.REJECTED}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReviewLifecycleService:
    """
    审稿任务状态机：pending -> assigned -> in_progress -> completed。

    中文注释:
    - 每一次状态写入都是 "读 -> 校验 -> 条件写"（expected_state = 读到的状态），
      两个并发 submit 不可能同时把同一条任务写成 completed。
    - 公开方法统一返回 ServiceResult；拒绝时 reasons 里给出具体未满足的条件。
    """

    def __init__(
        self,
        *,
        manuscripts: ManuscriptRepository,
        profiles: ReviewerProfileRepository,
        assignments: ReviewAssignmentRepository,
        config: Optional[ReviewAssignmentConfig] = None,
        evaluator: Optional[QualificationEvaluator] = None,
        locks: Optional[KeyedLocks] = None,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.manuscripts = manuscripts
        self.profiles = profiles
        self.assignments = assignments
        self.config = config or ReviewAssignmentConfig.from_env()
        self.evaluator = evaluator or QualificationEvaluator(min_topic_papers=self.config.min_topic_papers)
        self.workload = WorkloadTracker(assignments)
        self.locks = locks or manuscript_locks
        self._now = now

    # === lookups ===

    def _get_manuscript(self, manuscript_id: str) -> Manuscript:
        manuscript = self.manuscripts.get_by_id(str(manuscript_id))
        if manuscript is None:
            raise NotFoundError(f"Manuscript {manuscript_id} not found", code="manuscript_not_found")
        return manuscript

    def _get_assignment(self, assignment_id: str) -> ReviewAssignment:
        assignment = self.assignments.get_by_id(str(assignment_id))
        if assignment is None:
            raise NotFoundError(f"Review assignment {assignment_id} not found", code="assignment_not_found")
        return assignment

    def _completed_by(self, manuscript_id: str, reviewer_identity: str) -> bool:
        rows = self.assignments.list_by_filter(
            AssignmentFilter.build(
                status=AssignmentStatus.COMPLETED,
                reviewer=reviewer_identity,
                manuscript_id=manuscript_id,
                limit=1,
            )
        )
        return bool(rows)

    def _cas(self, assignment: ReviewAssignment, delta: Dict[str, Any]) -> ReviewAssignment:
        updated = self.assignments.update_by_id(assignment.id, delta, assignment.status)
        if updated is None:
            raise ConflictingTransitionError(
                "Review assignment was modified concurrently",
                code="concurrent_update",
                details={"assignment_id": assignment.id, "expected_status": assignment.status.value},
            )
        return updated

    # === assignment ===

    def _validate_reviewer_for(self, manuscript: Manuscript, reviewer_identity: str) -> None:
        """Author conflict, profile, availability, duplicate and workload checks shared by manual assignment."""
        if reviewer_identity == manuscript.author_identity:
            raise IneligibleError(
                "Authors cannot review their own manuscripts",
                code="is_author",
                reasons=["Reviewer is the manuscript author"],
            )
        profile = self.profiles.get_by_identity(reviewer_identity)
        if profile is None:
            raise NotFoundError(f"Reviewer {reviewer_identity} has no profile", code="reviewer_not_found")
        if not profile.available:
            raise IneligibleError(
                "Reviewer is not accepting reviews",
                code="reviewer_unavailable",
                reasons=["Reviewer marked unavailable"],
            )
        on_manuscript = [
            a for a in self.assignments.get_by_manuscript(manuscript.id) if a.reviewer_identity == reviewer_identity
        ]
        if on_manuscript:
            raise ConflictingTransitionError(
                "Reviewer is already assigned to this manuscript",
                code="duplicate_reviewer",
                details={"assignment_ids": [a.id for a in on_manuscript]},
            )
        load = self.workload.current_load(reviewer_identity)
        if load >= self.config.workload_cap:
            raise OverloadedError(
                "Reviewer is at the workload cap",
                code="reviewer_overloaded",
                reasons=[f"{load}/{self.config.workload_cap} active reviews"],
                details={"current_load": load, "workload_cap": self.config.workload_cap},
            )

    def _assign(
        self,
        assignment: ReviewAssignment,
        manuscript: Manuscript,
        reviewer_identity: str,
        editor_identity: Optional[str],
        review_days: Optional[int],
    ) -> ReviewAssignment:
        if assignment.status != AssignmentStatus.PENDING or assignment.reviewer_identity:
            raise ConflictingTransitionError(
                "Review assignment already has a reviewer",
                code="already_assigned",
                details={"status": assignment.status.value, "reviewer_identity": assignment.reviewer_identity},
            )
        self._validate_reviewer_for(manuscript, reviewer_identity)
        now = self._now()
        delta: Dict[str, Any] = {
            "reviewer_identity": reviewer_identity,
            "status": AssignmentStatus.ASSIGNED,
            "assigned_at": now,
        }
        if review_days:
            delta["deadline"] = now + timedelta(days=review_days)
        if editor_identity:
            delta["editor_identity"] = editor_identity
        updated = self.assignments.update_by_id(assignment.id, delta, AssignmentStatus.PENDING)
        if updated is None:
            raise ConflictingTransitionError(
                "Review assignment was assigned concurrently",
                code="already_assigned",
                details={"assignment_id": assignment.id},
            )
        return updated

    @returns_service_result
    def create(
        self,
        manuscript_id: str,
        *,
        reviewer_identity: Optional[str] = None,
        editor_identity: Optional[str] = None,
        review_days: Optional[int] = None,
    ) -> ReviewAssignment:
        """New Pending record (deadline = now + review window); optionally assigns a named reviewer right away."""
        manuscript = self._get_manuscript(manuscript_id)
        if manuscript.status in _CLOSED_MANUSCRIPT_STATUSES:
            raise ConflictingTransitionError(
                f"Manuscript is {manuscript.status.value}", code="manuscript_closed"
            )
        reviewer_identity = str(reviewer_identity or "").strip() or None
        with self.locks.hold(manuscript.id):
            if reviewer_identity:
                # 先校验再写入：校验失败时不落任何记录
                self._validate_reviewer_for(manuscript, reviewer_identity)
            deadline = self._now() + timedelta(days=review_days or self.config.deadline_days)
            created = self.assignments.create(
                manuscript.id,
                NewAssignment(
                    deadline=deadline,
                    reviewer_identity=reviewer_identity,
                    editor_identity=editor_identity,
                    status=AssignmentStatus.ASSIGNED if reviewer_identity else AssignmentStatus.PENDING,
                ),
            )
        logger.info("[Review] created assignment=%s manuscript=%s", created.id, manuscript.id)
        return created

    @returns_service_result
    def assign(
        self,
        assignment_id: str,
        reviewer_identity: str,
        *,
        editor_identity: Optional[str] = None,
        review_days: Optional[int] = None,
    ) -> ReviewAssignment:
        reviewer_identity = str(reviewer_identity or "").strip()
        if not reviewer_identity:
            raise ValidationFailedError("reviewer_identity is required", code="missing_reviewer")
        assignment = self._get_assignment(assignment_id)
        manuscript = self._get_manuscript(assignment.manuscript_id)
        with self.locks.hold(manuscript.id):
            # 锁内重新读取，避免使用锁外的旧状态
            assignment = self._get_assignment(assignment_id)
            updated = self._assign(assignment, manuscript, reviewer_identity, editor_identity, review_days)
        logger.info("[Review] assigned assignment=%s reviewer=%s", updated.id, reviewer_identity)
        return updated

    @returns_service_result
    def assign_reviewers(
        self,
        manuscript_id: str,
        reviewers: Iterable[str],
        *,
        assigned_by: Optional[str] = None,
    ) -> List[ReviewAssignment]:
        """Bulk assignment of at least three distinct reviewers; all are validated before anything is written."""
        wanted = list(dict.fromkeys(str(r).strip() for r in reviewers or [] if str(r or "").strip()))
        if len(wanted) < MIN_BULK_REVIEWERS:
            raise ValidationFailedError(
                f"At least {MIN_BULK_REVIEWERS} reviewers are required",
                code="insufficient_reviewers",
                reasons=[f"{len(wanted)} distinct reviewer(s) provided"],
            )
        manuscript = self._get_manuscript(manuscript_id)
        if manuscript.status in _CLOSED_MANUSCRIPT_STATUSES:
            raise ConflictingTransitionError(
                f"Manuscript is {manuscript.status.value}", code="manuscript_closed"
            )

        with self.locks.hold(manuscript.id):
            for reviewer in wanted:
                self._validate_reviewer_for(manuscript, reviewer)

            deadline = self._now() + timedelta(days=self.config.deadline_days)
            created = [
                self.assignments.create(
                    manuscript.id,
                    NewAssignment(
                        deadline=deadline,
                        reviewer_identity=reviewer,
                        editor_identity=assigned_by,
                        status=AssignmentStatus.ASSIGNED,
                    ),
                )
                for reviewer in wanted
            ]
            if manuscript.status == ManuscriptStatus.SUBMITTED:
                moved = self.manuscripts.update_status(
                    manuscript.id,
                    ManuscriptStatus.UNDER_REVIEW,
                    expected_status=ManuscriptStatus.SUBMITTED,
                )
                if moved is None:
                    logger.warning("[Review] manuscript %s status changed concurrently (ignored)", manuscript.id)

        logger.info("[Review] manuscript=%s assigned %d reviewers", manuscript.id, len(created))
        return created

    # === review work ===

    @returns_service_result
    def save_draft(
        self,
        assignment_id: str,
        *,
        comments: Optional[str] = None,
        confidential_comments: Optional[str] = None,
    ) -> ReviewAssignment:
        assignment = self._get_assignment(assignment_id)
        if assignment.status == AssignmentStatus.COMPLETED:
            raise ConflictingTransitionError("Review is already completed", code="review_completed")
        delta: Dict[str, Any] = {}
        if comments is not None:
            delta["comments"] = comments
        if confidential_comments is not None:
            delta["confidential_comments"] = confidential_comments
        if assignment.status == AssignmentStatus.PENDING:
            delta["status"] = AssignmentStatus.IN_PROGRESS
        if not delta:
            return assignment
        return self._cas(assignment, delta)

    def _ensure_qualified_at_submission(self, manuscript: Manuscript, reviewer_identity: str) -> None:
        """Re-validated at submission time; never trusted from assignment time."""
        profile = self.profiles.get_by_identity(reviewer_identity)
        if profile is None:
            raise IneligibleError(
                "Reviewer does not meet the qualification requirements",
                code="reviewer_not_qualified",
                reasons=["Reviewer has no CV profile"],
            )
        q = self.evaluator.evaluate(profile, manuscript)
        unmet: List[str] = []
        if not q.has_bachelors:
            unmet.append("Missing Bachelor's degree or higher")
        if q.first_author_papers_on_topic < self.evaluator.min_topic_papers:
            unmet.append(
                f"Only {q.first_author_papers_on_topic} first-author papers on relevant topic "
                f"(need {self.evaluator.min_topic_papers})"
            )
        if unmet:
            raise IneligibleError(
                "Reviewer does not meet the qualification requirements",
                code="reviewer_not_qualified",
                reasons=unmet,
                details={"qualification": q.model_dump()},
            )

    @returns_service_result
    def submit_decision(self, assignment_id: str, decision: ReviewDecision) -> ReviewAssignment:
        recommendation = Recommendation.parse(decision.recommendation)
        if recommendation is None:
            raise ValidationFailedError(
                f"Invalid recommendation: {decision.recommendation!r}",
                code="invalid_recommendation",
                reasons=["recommendation must be one of: " + ", ".join(r.value for r in Recommendation)],
            )
        reviewer = str(decision.reviewer_identity or "").strip()
        if not reviewer:
            raise ValidationFailedError("reviewer_identity is required", code="missing_reviewer")

        assignment = self._get_assignment(assignment_id)
        manuscript = self._get_manuscript(assignment.manuscript_id)

        with self.locks.hold(manuscript.id):
            assignment = self._get_assignment(assignment_id)
            if assignment.status == AssignmentStatus.COMPLETED:
                raise ConflictingTransitionError("Review is already completed", code="already_completed")
            if assignment.reviewer_identity and assignment.reviewer_identity != reviewer:
                raise IneligibleError(
                    "Only the assigned reviewer can submit this review",
                    code="not_assigned_reviewer",
                    reasons=["Submitting identity does not match the assigned reviewer"],
                )
            if manuscript.status in _CLOSED_MANUSCRIPT_STATUSES:
                raise ConflictingTransitionError(
                    f"Manuscript is {manuscript.status.value}", code="manuscript_closed"
                )
            if reviewer == manuscript.author_identity:
                raise IneligibleError(
                    "Authors cannot review their own manuscripts",
                    code="is_author",
                    reasons=["Reviewer is the manuscript author"],
                )
            if self._completed_by(manuscript.id, reviewer):
                raise IneligibleError(
                    "Reviewer has already reviewed this manuscript",
                    code="already_reviewed",
                    reasons=["A completed review already exists for this reviewer"],
                )
            self._ensure_qualified_at_submission(manuscript, reviewer)

            completed = self._cas(
                assignment,
                {
                    "status": AssignmentStatus.COMPLETED,
                    "recommendation": recommendation,
                    "comments": decision.comments,
                    "confidential_comments": decision.confidential_comments,
                    "reviewer_identity": reviewer,
                    "completed_at": self._now(),
                },
            )
        logger.info(
            "[Review] submitted assignment=%s manuscript=%s recommendation=%s",
            completed.id,
            manuscript.id,
            recommendation.value,
        )
        return completed

    @returns_service_result
    def extend_deadline(self, assignment_id: str, days: int) -> ReviewAssignment:
        if int(days or 0) < 1:
            raise ValidationFailedError("days must be a positive integer", code="invalid_extension")
        assignment = self._get_assignment(assignment_id)
        if assignment.status == AssignmentStatus.COMPLETED:
            raise ConflictingTransitionError("Review is already completed", code="review_completed")
        return self._cas(assignment, {"deadline": assignment.deadline + timedelta(days=int(days))})

    # === read side ===

    @returns_service_result
    def check_eligibility(self, reviewer_identity: str, manuscript_id: str) -> EligibilityReport:
        """
        Structured eligibility report. Ineligibility is a normal outcome here (can_review=False), not an error.

        Checks run in order: author, already reviewed, CV profile, qualification.
        """
        reviewer = str(reviewer_identity or "").strip()
        manuscript = self._get_manuscript(manuscript_id)
        req = EligibilityRequirements()
        base = {
            "reviewer_identity": reviewer,
            "manuscript_id": manuscript.id,
            "required_topic_papers": self.evaluator.min_topic_papers,
        }

        if reviewer == manuscript.author_identity:
            return EligibilityReport(
                **base,
                can_review=False,
                code="is_author",
                reason="Authors cannot review their own manuscripts",
                requirements=req,
                reasons=["Reviewer is the manuscript author"],
            )
        req.not_author = True

        if self._completed_by(manuscript.id, reviewer):
            return EligibilityReport(
                **base,
                can_review=False,
                code="already_reviewed",
                reason="You have already reviewed this manuscript",
                requirements=req,
                reasons=["A completed review already exists for this reviewer"],
            )
        req.not_already_reviewed = True

        profile = self.profiles.get_by_identity(reviewer)
        if profile is None:
            return EligibilityReport(
                **base,
                can_review=False,
                code="reviewer_not_qualified",
                reason="Reviewer has no CV profile",
                requirements=req,
                reasons=["Reviewer has no CV profile"],
            )
        req.has_cv = True

        q = self.evaluator.evaluate(profile, manuscript)
        req.has_bachelors = q.has_bachelors
        req.has_three_topic_papers = q.first_author_papers_on_topic >= self.evaluator.min_topic_papers
        req.has_topic_expertise = q.expertise_match
        return EligibilityReport(
            **base,
            can_review=q.is_qualified,
            code=None if q.is_qualified else "reviewer_not_qualified",
            reason="Reviewer meets all qualification requirements"
            if q.is_qualified
            else "Reviewer does not meet the qualification requirements",
            requirements=req,
            total_first_author_papers=q.first_author_papers,
            topic_relevant_papers=q.first_author_papers_on_topic,
            reasons=list(q.reasons),
            qualification=q,
        )

    @returns_service_result
    def get_reviewer_qualification(self, reviewer_identity: str) -> QualificationResult:
        """General qualification from the CV alone (no manuscript, so never qualified on topic)."""
        identity = str(reviewer_identity or "").strip()
        profile = self.profiles.get_by_identity(identity)
        if profile is None:
            raise NotFoundError(
                f"Reviewer {identity} has no CV profile",
                code="reviewer_not_found",
                reasons=["Reviewer has no CV profile"],
            )
        return self.evaluator.general_qualification(profile)

    @returns_service_result
    def get_assignment(self, assignment_id: str) -> AssignmentView:
        assignment = self._get_assignment(assignment_id)
        now = self._now()
        return AssignmentView(
            assignment=assignment,
            is_overdue=assignment.is_overdue(now),
            days_until_deadline=assignment.days_until_deadline(now),
        )

    @returns_service_result
    def list_assignments(self, filters: Optional[AssignmentFilter] = None) -> AssignmentListing:
        now = self._now()
        rows = self.assignments.list_by_filter(filters or AssignmentFilter())
        views = [
            AssignmentView(
                assignment=a,
                is_overdue=a.is_overdue(now),
                days_until_deadline=a.days_until_deadline(now),
            )
            for a in rows
        ]
        return AssignmentListing(
            reviews=views,
            total=len(views),
            overdue_count=sum(1 for v in views if v.is_overdue),
        )
