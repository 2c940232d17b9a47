from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

from app.core.config import OracleConfig, ReviewAssignmentConfig
from app.core.locks import KeyedLocks, manuscript_locks
from app.core.review_errors import (
    ConflictingTransitionError,
    NoQualifiedReviewersError,
    NotFoundError,
    OverloadedError,
    ValidationFailedError,
    returns_service_result,
)
from app.models.manuscript import Manuscript, ManuscriptStatus
from app.models.reviews import AssignmentStatus, ReviewAssignment
from app.repositories.base import (
    ManuscriptRepository,
    NewAssignment,
    ReviewAssignmentRepository,
    ReviewerProfileRepository,
)
from app.schemas.review import AssignedReviewer
from app.schemas.reviewer import CandidateEvaluation
from app.services.assignment_strategies import AssignmentStrategy, build_strategy, summarize_tiers
from app.services.oracle_client import HttpOracle, Oracle
from app.services.qualification_service import QualificationEvaluator
from app.services.workload_service import WorkloadTracker

logger = logging.getLogger("fronsci.assignment")

_OPEN_MANUSCRIPT_STATUSES = {ManuscriptStatus.SUBMITTED, ManuscriptStatus.UNDER_REVIEW}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReviewerAssignmentService:
    """
    自动分配审稿人（deterministic / oracle 两种策略共用一条编排路径）。

    中文注释:
    - 候选池全量评估（不做预过滤），评估过程只读、可并发。
    - "选人 -> 写入" 在每个稿件一把锁内串行；写入本身仍是条件更新（expected_state=pending），
      跨进程并发时最多只有一个调用成功。
    - 任一失败路径都不会产生部分写入。
    """

    def __init__(
        self,
        *,
        manuscripts: ManuscriptRepository,
        profiles: ReviewerProfileRepository,
        assignments: ReviewAssignmentRepository,
        config: Optional[ReviewAssignmentConfig] = None,
        oracle: Optional[Oracle] = None,
        oracle_config: Optional[OracleConfig] = None,
        evaluator: Optional[QualificationEvaluator] = None,
        locks: Optional[KeyedLocks] = None,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.manuscripts = manuscripts
        self.profiles = profiles
        self.assignments = assignments
        self.config = config or ReviewAssignmentConfig.from_env()
        # 中文注释: HttpOracle 在此构建一次并复用其 httpx 连接池，由 close() 释放
        self._owns_oracle = oracle is None and oracle_config is not None
        self.oracle: Optional[Oracle] = HttpOracle(oracle_config) if self._owns_oracle else oracle
        self.evaluator = evaluator or QualificationEvaluator(min_topic_papers=self.config.min_topic_papers)
        self.workload = WorkloadTracker(assignments)
        self.locks = locks or manuscript_locks
        self._now = now

    def _strategy(self, name: Optional[str]) -> AssignmentStrategy:
        return build_strategy(
            name,
            config=self.config,
            evaluator=self.evaluator,
            workload=self.workload,
            oracle=self.oracle,
        )

    def close(self) -> None:
        """Release the HTTP client of an oracle this service built itself."""
        if self._owns_oracle and isinstance(self.oracle, HttpOracle):
            self.oracle.close()

    def _get_manuscript(self, manuscript_id: str) -> Manuscript:
        manuscript = self.manuscripts.get_by_id(str(manuscript_id))
        if manuscript is None:
            raise NotFoundError(f"Manuscript {manuscript_id} not found", code="manuscript_not_found")
        return manuscript

    @staticmethod
    def _ensure_open(manuscript: Manuscript) -> None:
        if manuscript.status not in _OPEN_MANUSCRIPT_STATUSES:
            raise ConflictingTransitionError(
                f"Manuscript is {manuscript.status.value}; reviewers can no longer be assigned",
                code="manuscript_closed",
                details={"manuscript_status": manuscript.status.value},
            )

    def _exclude_conflicts(
        self,
        candidates: Sequence[CandidateEvaluation],
        manuscript: Manuscript,
        existing: Sequence[ReviewAssignment],
    ) -> List[CandidateEvaluation]:
        """Author and reviewers already on this manuscript stay in the diagnostics but become ineligible."""
        on_manuscript = {a.reviewer_identity for a in existing if a.reviewer_identity}
        out: List[CandidateEvaluation] = []
        for c in candidates:
            extra: Optional[str] = None
            if c.reviewer_identity == manuscript.author_identity:
                extra = "Reviewer is the manuscript author"
            elif c.reviewer_identity in on_manuscript:
                extra = "Reviewer is already assigned to this manuscript"
            if extra is None:
                out.append(c)
            else:
                out.append(c.model_copy(update={"eligible": False, "reasons": [*c.reasons, extra]}))
        return out

    def _evaluate(self, manuscript: Manuscript, strategy: AssignmentStrategy) -> List[CandidateEvaluation]:
        pool = self.profiles.list_all()
        candidates = strategy.evaluate(pool, manuscript)
        existing = self.assignments.get_by_manuscript(manuscript.id)
        return self._exclude_conflicts(candidates, manuscript, existing)

    @returns_service_result
    def evaluate_candidates(self, manuscript_id: str, *, strategy: Optional[str] = None) -> List[CandidateEvaluation]:
        """Ranked candidate list with per-criterion reasons (diagnostics; writes nothing)."""
        manuscript = self._get_manuscript(manuscript_id)
        return self._evaluate(manuscript, self._strategy(strategy))

    def _open_slot(self, manuscript_id: str) -> ReviewAssignment:
        """
        Oldest unassigned Pending record of the manuscript.

        A manuscript with no records at all gets one created first; a manuscript whose records are all
        taken is rejected (never overwritten).
        """
        existing = self.assignments.get_by_manuscript(manuscript_id)
        for a in existing:
            if a.status == AssignmentStatus.PENDING and not a.reviewer_identity:
                return a
        if not existing:
            deadline = self._now() + timedelta(days=self.config.deadline_days)
            return self.assignments.create(manuscript_id, NewAssignment(deadline=deadline))
        raise ConflictingTransitionError(
            "Manuscript has no unassigned review slot",
            code="already_assigned",
            reasons=[f"{len(existing)} review assignment(s) already carry a reviewer"],
        )

    @staticmethod
    def _justification(chosen: CandidateEvaluation, load: int, cap: int) -> str:
        if chosen.strategy == "oracle":
            head = f"Selected {chosen.name} (score {chosen.score:.0f}/100, {chosen.tier or 'unrated'})"
        else:
            head = (
                f"Selected {chosen.name}: {chosen.first_author_papers_on_topic} first-author papers on topic"
            )
        return f"{head}; current workload {load}/{cap}. " + "; ".join(chosen.reasons)

    @returns_service_result
    def auto_assign(
        self,
        manuscript_id: str,
        *,
        strategy: Optional[str] = None,
        deadline_days: Optional[int] = None,
        editor_identity: Optional[str] = None,
    ) -> AssignedReviewer:
        if deadline_days is not None and deadline_days < 1:
            raise ValidationFailedError("deadline_days must be positive", code="invalid_deadline")

        manuscript = self._get_manuscript(manuscript_id)
        self._ensure_open(manuscript)
        strat = self._strategy(strategy)

        candidates = self._evaluate(manuscript, strat)
        qualified = [c for c in candidates if c.eligible]
        if not qualified:
            raise NoQualifiedReviewersError(
                "No qualified reviewers found for this manuscript",
                reasons=[
                    "Reviewers need a Bachelor's degree or higher, "
                    f"{self.config.min_topic_papers}+ first-author papers on the topic and matching expertise"
                ],
                details={"candidates": [c.model_dump(mode="json") for c in candidates]},
            )

        cap = self.config.workload_cap
        with self.locks.hold(manuscript.id):
            # 中文注释: 评估阶段在锁外，锁内重新读取已在本稿件上的审稿人，避免并发调用选中同一人
            existing = self.assignments.get_by_manuscript(manuscript.id)
            taken = {a.reviewer_identity for a in existing if a.reviewer_identity}
            qualified = [c for c in qualified if c.reviewer_identity not in taken]
            if not qualified:
                raise NoQualifiedReviewersError(
                    "Every qualified reviewer is already assigned to this manuscript",
                    reasons=["Qualified reviewers were assigned to this manuscript concurrently"],
                    details={"already_assigned": sorted(taken)},
                )
            loads = self.workload.loads_for(c.reviewer_identity for c in qualified)
            ordered = strat.order_for_selection(qualified, loads, cap)
            if not ordered:
                raise OverloadedError(
                    "All qualified reviewers are at their workload cap or unavailable",
                    reasons=[
                        f"{c.name}: {loads.get(c.reviewer_identity, 0)}/{cap} active reviews"
                        + ("" if c.available else " (unavailable)")
                        for c in qualified
                    ],
                    details={"workloads": loads, "workload_cap": cap},
                )
            chosen = ordered[0]

            # re-check after evaluation: the manuscript may have been withdrawn meanwhile
            current = self._get_manuscript(manuscript.id)
            self._ensure_open(current)
            slot = self._open_slot(current.id)

            now = self._now()
            deadline = now + timedelta(days=deadline_days or self.config.deadline_days)
            delta: Dict[str, object] = {
                "reviewer_identity": chosen.reviewer_identity,
                "status": AssignmentStatus.ASSIGNED,
                "deadline": deadline,
                "assigned_at": now,
            }
            if editor_identity:
                delta["editor_identity"] = editor_identity
            written = self.assignments.update_by_id(slot.id, delta, AssignmentStatus.PENDING)
            if written is None:
                raise ConflictingTransitionError(
                    "Review slot was assigned concurrently",
                    code="already_assigned",
                    details={"assignment_id": slot.id},
                )

            if current.status == ManuscriptStatus.SUBMITTED:
                moved = self.manuscripts.update_status(
                    current.id,
                    ManuscriptStatus.UNDER_REVIEW,
                    expected_status=ManuscriptStatus.SUBMITTED,
                )
                if moved is None:
                    logger.warning("[AutoAssign] manuscript %s status changed concurrently (ignored)", current.id)

        logger.info(
            "[AutoAssign] manuscript=%s reviewer=%s strategy=%s assignment=%s",
            manuscript.id,
            chosen.reviewer_identity,
            strat.name,
            written.id,
        )
        return AssignedReviewer(
            assignment_id=written.id,
            manuscript_id=manuscript.id,
            reviewer_identity=chosen.reviewer_identity,
            name=chosen.name,
            deadline=written.deadline,
            strategy=strat.name,
            justification=self._justification(chosen, loads.get(chosen.reviewer_identity, 0), cap),
            score=chosen.score,
            confidence=round(chosen.score / 100.0, 4) if strat.name == "oracle" else None,
            summary=summarize_tiers(candidates) if strat.name == "oracle" else None,
            candidates=candidates,
        )
