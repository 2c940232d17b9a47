from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, TypeVar

from app.core.config import ReviewAssignmentConfig
from app.core.review_errors import OracleUnavailableError, ValidationFailedError
from app.models.manuscript import Manuscript
from app.models.reviewer_profile import ReviewerProfile
from app.schemas.reviewer import CandidateEvaluation
from app.services.oracle_client import Oracle
from app.services.qualification_service import QualificationEvaluator
from app.services.workload_service import WorkloadTracker

logger = logging.getLogger("fronsci.assignment")

ORACLE_FAILURE_REASON = "oracle unavailable or invalid response"

_T = TypeVar("_T")
_R = TypeVar("_R")


def map_bounded(fn: Callable[[_T], _R], items: Sequence[_T], *, max_workers: int) -> List[_R]:
    """
    Apply fn to every item on a bounded thread pool, preserving input order.

    fn must not raise for an individual item; per-item failures are its own business.
    """
    if not items:
        return []
    workers = max(1, min(int(max_workers or 1), len(items)))
    if workers == 1:
        return [fn(item) for item in items]
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="candidate-eval") as pool:
        return list(pool.map(fn, items))


class AssignmentStrategy(Protocol):
    """
    Shared contract of the deterministic and oracle strategies.

    evaluate() ranks the pool; order_for_selection() applies the workload cap and returns the
    remaining candidates in the order they should be tried.
    """

    name: str

    def evaluate(self, pool: Sequence[ReviewerProfile], manuscript: Manuscript) -> List[CandidateEvaluation]: ...

    def order_for_selection(
        self,
        candidates: Sequence[CandidateEvaluation],
        loads: Mapping[str, int],
        workload_cap: int,
    ) -> List[CandidateEvaluation]: ...


class DeterministicStrategy:
    """Keyword-heuristic qualification; least-loaded first, more on-topic papers wins ties."""

    name = "deterministic"

    def __init__(self, evaluator: QualificationEvaluator, *, max_workers: int = 8) -> None:
        self.evaluator = evaluator
        self.max_workers = max_workers

    def _evaluate_one(self, manuscript: Manuscript) -> Callable[[ReviewerProfile], CandidateEvaluation]:
        def run(profile: ReviewerProfile) -> CandidateEvaluation:
            q = self.evaluator.evaluate(profile, manuscript)
            return CandidateEvaluation(
                reviewer_identity=profile.identity,
                name=q.name,
                institution=q.institution,
                strategy="deterministic",
                score=float(q.first_author_papers_on_topic) if q.is_qualified else 0.0,
                eligible=q.is_qualified,
                reasons=list(q.reasons),
                first_author_papers_on_topic=q.first_author_papers_on_topic,
                available=profile.available,
                qualification=q,
            )

        return run

    def evaluate(self, pool: Sequence[ReviewerProfile], manuscript: Manuscript) -> List[CandidateEvaluation]:
        results = map_bounded(self._evaluate_one(manuscript), list(pool), max_workers=self.max_workers)
        # stable: qualified first, then by expertise depth
        return sorted(results, key=lambda c: (not c.eligible, -c.first_author_papers_on_topic))

    def order_for_selection(
        self,
        candidates: Sequence[CandidateEvaluation],
        loads: Mapping[str, int],
        workload_cap: int,
    ) -> List[CandidateEvaluation]:
        open_candidates = [
            c
            for c in candidates
            if c.eligible and c.available and loads.get(c.reviewer_identity, 0) < workload_cap
        ]
        return sorted(
            open_candidates,
            key=lambda c: (loads.get(c.reviewer_identity, 0), -c.first_author_papers_on_topic),
        )


def build_candidate_context(profile: ReviewerProfile, *, current_load: Optional[int] = None) -> Dict[str, Any]:
    """Candidate summary sent to the oracle (top 5 publications, top 3 experience entries)."""
    return {
        "identity": profile.identity,
        "name": profile.display_name,
        "institution": profile.institution or "Unknown",
        "field": profile.display_field,
        "education": [
            {"degree": e.degree, "field": e.field, "institution": e.institution, "year": e.end_date or e.start_date}
            for e in profile.education
        ],
        "publication_count": len(profile.publications),
        "publications": [
            {"title": p.title, "venue": p.venue, "date": p.date, "authors": p.authors[:3]}
            for p in profile.publications[:5]
        ],
        "experience": [
            {"position": x.position, "company": x.company, "description": x.description[:200]}
            for x in profile.experience[:3]
        ],
        "current_review_load": current_load,
    }


def build_manuscript_context(manuscript: Manuscript) -> Dict[str, Any]:
    return {
        "id": manuscript.id,
        "title": manuscript.title,
        "abstract": manuscript.abstract,
        "categories": list(manuscript.categories),
    }


class OracleStrategy:
    """
    Oracle-scored ranking (score 0-100 = qualification 0-40 + expertise 0-35 + availability 0-25).

    中文注释:
    - 单个候选人的 oracle 调用失败/返回非法结构 -> 记 0 分并排除，不影响整体评估。
    - not_suitable 的候选人同样排除在排名之外。
    """

    name = "oracle"

    def __init__(
        self,
        oracle: Oracle,
        *,
        workload: Optional[WorkloadTracker] = None,
        max_workers: int = 8,
    ) -> None:
        self.oracle = oracle
        self.workload = workload
        self.max_workers = max_workers

    def _evaluate_one(self, manuscript: Manuscript) -> Callable[[ReviewerProfile], CandidateEvaluation]:
        manuscript_ctx = build_manuscript_context(manuscript)

        def run(profile: ReviewerProfile) -> CandidateEvaluation:
            base = {
                "reviewer_identity": profile.identity,
                "name": profile.display_name,
                "institution": profile.institution or "Unknown",
                "strategy": "oracle",
                "available": profile.available,
            }
            try:
                load = self.workload.current_load(profile.identity) if self.workload else None
                result = self.oracle.evaluate(build_candidate_context(profile, current_load=load), manuscript_ctx)
            except OracleUnavailableError as e:
                logger.warning("[Oracle] evaluate failed for %s (ignored): %s", profile.identity, e.message)
                return CandidateEvaluation(**base, score=0.0, eligible=False, reasons=[ORACLE_FAILURE_REASON])
            except Exception as e:
                # 中文注释: 任何单点异常都只降级该候选人
                logger.warning("[Oracle] unexpected error for %s (ignored): %r", profile.identity, e)
                return CandidateEvaluation(**base, score=0.0, eligible=False, reasons=[ORACLE_FAILURE_REASON])

            reasons = [result.rationale] if result.rationale else []
            reasons.extend(f"Strength: {s}" for s in result.strengths)
            reasons.extend(f"Concern: {c}" for c in result.concerns)
            # not_suitable 视同排除: 记 0 分，subscores 原样保留供诊断
            suitable = result.tier != "not_suitable"
            return CandidateEvaluation(
                **base,
                score=result.score if suitable else 0.0,
                eligible=suitable,
                reasons=reasons or ["No explanation provided"],
                current_load=load,
                tier=result.tier,
                subscores=result.subscores.model_dump(),
            )

        return run

    def evaluate(self, pool: Sequence[ReviewerProfile], manuscript: Manuscript) -> List[CandidateEvaluation]:
        results = map_bounded(self._evaluate_one(manuscript), list(pool), max_workers=self.max_workers)
        return sorted(results, key=lambda c: (not c.eligible, -c.score))

    def order_for_selection(
        self,
        candidates: Sequence[CandidateEvaluation],
        loads: Mapping[str, int],
        workload_cap: int,
    ) -> List[CandidateEvaluation]:
        # rank order is kept; overloaded candidates fall through to the next one
        ranked = sorted((c for c in candidates if c.eligible), key=lambda c: -c.score)
        return [c for c in ranked if c.available and loads.get(c.reviewer_identity, 0) < workload_cap]


def summarize_tiers(candidates: Sequence[CandidateEvaluation]) -> str:
    counts = {tier: 0 for tier in ("highly_recommended", "recommended", "suitable")}
    for c in candidates:
        if c.tier in counts:
            counts[c.tier] += 1
    return (
        f"Found {len(candidates)} potential reviewers. "
        f"{counts['highly_recommended']} highly recommended, "
        f"{counts['recommended']} recommended, "
        f"{counts['suitable']} suitable."
    )


def build_strategy(
    name: Optional[str],
    *,
    config: ReviewAssignmentConfig,
    evaluator: QualificationEvaluator,
    workload: WorkloadTracker,
    oracle: Optional[Oracle] = None,
) -> AssignmentStrategy:
    chosen = (name or config.strategy or "deterministic").strip().lower()
    if chosen == "deterministic":
        return DeterministicStrategy(evaluator, max_workers=config.evaluation_workers)
    if chosen == "oracle":
        if oracle is None:
            raise OracleUnavailableError(
                "Oracle strategy requested but no oracle is configured",
                code="oracle_not_configured",
                reasons=["Set REVIEW_ORACLE_URL or retry with strategy=deterministic"],
            )
        return OracleStrategy(oracle, workload=workload, max_workers=config.evaluation_workers)
    raise ValidationFailedError(
        f"Unknown assignment strategy: {name}",
        code="invalid_strategy",
        reasons=["strategy must be one of: deterministic, oracle"],
    )
