import threading
import time

import pytest

from app.core.config import OracleConfig
from app.core.locks import KeyedLocks
from app.core.review_errors import OracleUnavailableError
from app.models.reviews import AssignmentStatus
from app.services.assignment_strategies import (
    ORACLE_FAILURE_REASON,
    OracleStrategy,
    build_candidate_context,
    summarize_tiers,
)
from app.services.oracle_client import HttpOracle, parse_oracle_payload
from app.services.reviewer_assignment_service import ReviewerAssignmentService


def _score(total_q, total_e, total_a, tier="recommended"):
    return parse_oracle_payload(
        {
            "score": total_q + total_e + total_a,
            "subscores": {"qualification": total_q, "expertise": total_e, "availability": total_a},
            "tier": tier,
            "rationale": f"scored {tier}",
        }
    )


class FakeOracle:
    """Scores keyed by candidate identity; an exception instance means that call fails."""

    def __init__(self, by_identity):
        self.by_identity = by_identity
        self.calls = []
        self._lock = threading.Lock()

    def evaluate(self, candidate, manuscript):
        with self._lock:
            self.calls.append(candidate["identity"])
        outcome = self.by_identity[candidate["identity"]]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def oracle_service(manuscripts_repo, profiles_repo, assignments_repo, review_config, clock):
    def _build(oracle):
        return ReviewerAssignmentService(
            manuscripts=manuscripts_repo,
            profiles=profiles_repo,
            assignments=assignments_repo,
            config=review_config,
            oracle=oracle,
            locks=KeyedLocks(),
            now=clock,
        )

    return _build


def test_oracle_ranks_by_score_and_reports_confidence(
    oracle_service, profiles_repo, make_profile, seed_assignment
):
    profiles_repo.add(make_profile("r-1", "Ada Lovelace"))
    profiles_repo.add(make_profile("r-2", "Alan Turing"))
    profiles_repo.add(make_profile("r-3", "Grace Murray"))
    seed_assignment("ms-1")
    oracle = FakeOracle(
        {
            "r-1": _score(30, 20, 10, "recommended"),
            "r-2": _score(38, 33, 20, "highly_recommended"),
            "r-3": _score(5, 5, 5, "not_suitable"),
        }
    )

    result = oracle_service(oracle).auto_assign("ms-1", strategy="oracle")

    assert result.success is True
    assert result.data.reviewer_identity == "r-2"
    assert result.data.strategy == "oracle"
    assert result.data.score == 91
    assert result.data.confidence == pytest.approx(0.91)
    assert result.data.summary == (
        "Found 3 potential reviewers. 1 highly recommended, 1 recommended, 0 suitable."
    )
    not_suitable = next(c for c in result.data.candidates if c.reviewer_identity == "r-3")
    assert not_suitable.eligible is False
    assert not_suitable.score == 0
    assert not_suitable.subscores == {"qualification": 5, "expertise": 5, "availability": 5}


def test_oracle_failure_degrades_only_that_candidate(
    oracle_service, profiles_repo, make_profile, seed_assignment
):
    profiles_repo.add(make_profile("r-1", "Ada Lovelace"))
    profiles_repo.add(make_profile("r-2", "Alan Turing"))
    seed_assignment("ms-1")
    oracle = FakeOracle(
        {
            "r-1": OracleUnavailableError("Oracle timed out", code="oracle_timeout"),
            "r-2": _score(20, 20, 20, "suitable"),
        }
    )

    result = oracle_service(oracle).auto_assign("ms-1", strategy="oracle")

    assert result.data.reviewer_identity == "r-2"
    failed = next(c for c in result.data.candidates if c.reviewer_identity == "r-1")
    assert failed.score == 0
    assert failed.eligible is False
    assert failed.reasons == [ORACLE_FAILURE_REASON]


def test_oracle_walks_down_past_overloaded_top_choice(
    oracle_service, profiles_repo, make_profile, seed_assignment
):
    profiles_repo.add(make_profile("r-1", "Ada Lovelace"))
    profiles_repo.add(make_profile("r-2", "Alan Turing"))
    for i in range(3):
        seed_assignment(f"busy-{i}", "r-1", status=AssignmentStatus.IN_PROGRESS)
    seed_assignment("ms-1")
    oracle = FakeOracle({"r-1": _score(40, 35, 20), "r-2": _score(20, 20, 10)})

    result = oracle_service(oracle).auto_assign("ms-1", strategy="oracle")

    assert result.data.reviewer_identity == "r-2"


def test_all_oracle_calls_failing_means_no_qualified_reviewers(
    oracle_service, profiles_repo, make_profile, seed_assignment
):
    profiles_repo.add(make_profile("r-1", "Ada Lovelace"))
    seed_assignment("ms-1")
    oracle = FakeOracle({"r-1": RuntimeError("connection reset")})

    result = oracle_service(oracle).auto_assign("ms-1", strategy="oracle")

    assert result.success is False
    assert result.error.code == "no_qualified_reviewers"


def test_slow_candidate_does_not_serialize_the_pool(make_profile, manuscript):
    profiles = [make_profile(f"r-{i}", "Ada Lovelace") for i in range(4)]

    class SlowOracle:
        def evaluate(self, candidate, manuscript_ctx):
            time.sleep(0.2)
            return _score(20, 20, 20)

    started = time.monotonic()
    results = OracleStrategy(SlowOracle(), max_workers=4).evaluate(profiles, manuscript)
    elapsed = time.monotonic() - started

    assert len(results) == 4
    assert elapsed < 0.6


def test_candidate_context_is_trimmed(make_profile):
    profile = make_profile("r-1", "Ada Lovelace", topic_papers=6, off_topic_papers=2)

    ctx = build_candidate_context(profile, current_load=2)

    assert ctx["publication_count"] == 8
    assert len(ctx["publications"]) == 5
    assert ctx["current_review_load"] == 2
    assert ctx["field"] == "Distributed Systems"


def test_summarize_tiers_counts_each_tier():
    assert summarize_tiers([]) == "Found 0 potential reviewers. 0 highly recommended, 0 recommended, 0 suitable."


def test_configured_oracle_is_built_once_and_closed_with_the_service(
    manuscripts_repo, profiles_repo, assignments_repo, review_config
):
    service = ReviewerAssignmentService(
        manuscripts=manuscripts_repo,
        profiles=profiles_repo,
        assignments=assignments_repo,
        config=review_config,
        oracle_config=OracleConfig(url="https://oracle.test/evaluate", api_key=None, timeout_sec=1.0, verify_tls=True),
        locks=KeyedLocks(),
    )

    oracles = {id(service._strategy("oracle").oracle) for _ in range(3)}

    assert len(oracles) == 1
    assert isinstance(service.oracle, HttpOracle)
    service.close()
    assert service.oracle._client.is_closed is True


def test_injected_oracle_is_not_closed_by_the_service(oracle_service):
    oracle = FakeOracle({})
    service = oracle_service(oracle)

    service.close()

    assert service._strategy("oracle").oracle is oracle
