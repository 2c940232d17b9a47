import os
import sys
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Import app from the correct location
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from main import app  # noqa: E402

from app.api.v1.reviews import ReviewServices, get_review_services  # noqa: E402
from app.core.config import ReviewAssignmentConfig  # noqa: E402
from app.core.locks import KeyedLocks  # noqa: E402
from app.models.manuscript import Manuscript  # noqa: E402
from app.models.reviewer_profile import EducationRecord, Publication, ReviewerProfile  # noqa: E402
from app.models.reviews import AssignmentStatus, Recommendation, ReviewAssignment  # noqa: E402
from app.repositories.memory_repository import (  # noqa: E402
    InMemoryManuscriptRepository,
    InMemoryReviewAssignmentRepository,
    InMemoryReviewerProfileRepository,
)
from app.services.consensus_service import ConsensusService  # noqa: E402
from app.services.review_lifecycle_service import ReviewLifecycleService  # noqa: E402
from app.services.reviewer_assignment_service import ReviewerAssignmentService  # noqa: E402

# === 全局测试配置 ===
# 中文注释:
# 1. 所有服务都跑在内存仓储上，不触达真实 Supabase。
# 2. 时间固定为 NOW，deadline / overdue 相关断言可复现。

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

ON_TOPIC_TITLES = [
    "Consensus protocols for distributed ledgers",
    "Byzantine agreement in asynchronous networks",
    "Fault tolerant replication for distributed databases",
    "Scalable consensus under partial synchrony",
    "Leader election in distributed systems",
    "Tolerant state machine replication",
]
OFF_TOPIC_TITLES = [
    "Medieval pottery glazing techniques",
    "Wetland bird migration patterns",
    "Baroque violin construction methods",
]


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def review_config() -> ReviewAssignmentConfig:
    return ReviewAssignmentConfig(
        strategy="deterministic",
        workload_cap=3,
        quorum=3,
        accept_threshold=2,
        min_topic_papers=3,
        deadline_days=30,
        evaluation_workers=4,
    )


@pytest.fixture
def make_profile():
    def _make(
        identity: str,
        full_name: str,
        *,
        degree: Optional[str] = "PhD in Computer Science",
        topic_papers: int = 3,
        off_topic_papers: int = 0,
        field: str = "Distributed Systems",
        available: bool = True,
        first_author: bool = True,
    ) -> ReviewerProfile:
        pubs = []
        for i in range(topic_papers):
            authors = [full_name, "Grace Hopper"] if first_author else ["Grace Hopper", full_name]
            pubs.append(Publication(title=ON_TOPIC_TITLES[i % len(ON_TOPIC_TITLES)], authors=authors, venue="PODC"))
        for i in range(off_topic_papers):
            pubs.append(
                Publication(title=OFF_TOPIC_TITLES[i % len(OFF_TOPIC_TITLES)], authors=[full_name], venue="Folio")
            )
        return ReviewerProfile(
            identity=identity,
            full_name=full_name,
            institution="Institut Teknologi Bandung",
            field=field,
            education=[EducationRecord(degree=degree)] if degree else [],
            publications=pubs,
            available=available,
        )

    return _make


@pytest.fixture
def manuscript() -> Manuscript:
    return Manuscript(
        id="ms-1",
        title="Byzantine fault tolerant consensus for distributed ledgers",
        abstract="We present a leaderless consensus protocol with optimal message complexity.",
        categories=["Distributed Systems"],
        author_identity="author-1",
    )


@pytest.fixture
def manuscripts_repo(manuscript) -> InMemoryManuscriptRepository:
    return InMemoryManuscriptRepository([manuscript])


@pytest.fixture
def profiles_repo() -> InMemoryReviewerProfileRepository:
    return InMemoryReviewerProfileRepository()


@pytest.fixture
def assignments_repo(clock) -> InMemoryReviewAssignmentRepository:
    return InMemoryReviewAssignmentRepository(now=clock)


@pytest.fixture
def seed_assignment(assignments_repo):
    """Insert an assignment record directly (bypassing the lifecycle), oldest first."""
    seq = count()

    def _seed(
        manuscript_id: str,
        reviewer_identity: Optional[str] = None,
        *,
        status: AssignmentStatus = AssignmentStatus.PENDING,
        recommendation: Optional[Recommendation] = None,
        deadline: Optional[datetime] = None,
    ) -> ReviewAssignment:
        n = next(seq)
        row = ReviewAssignment(
            id=f"ra-{n}",
            manuscript_id=manuscript_id,
            reviewer_identity=reviewer_identity,
            status=status,
            deadline=deadline or NOW + timedelta(days=30),
            recommendation=recommendation,
            created_at=NOW - timedelta(days=10) + timedelta(minutes=n),
        )
        return assignments_repo.add(row)

    return _seed


@pytest.fixture
def assignment_service(manuscripts_repo, profiles_repo, assignments_repo, review_config, clock):
    return ReviewerAssignmentService(
        manuscripts=manuscripts_repo,
        profiles=profiles_repo,
        assignments=assignments_repo,
        config=review_config,
        locks=KeyedLocks(),
        now=clock,
    )


@pytest.fixture
def lifecycle_service(manuscripts_repo, profiles_repo, assignments_repo, review_config, clock):
    return ReviewLifecycleService(
        manuscripts=manuscripts_repo,
        profiles=profiles_repo,
        assignments=assignments_repo,
        config=review_config,
        locks=KeyedLocks(),
        now=clock,
    )


@pytest.fixture
def consensus_service(manuscripts_repo, assignments_repo, review_config, clock):
    return ConsensusService(
        manuscripts=manuscripts_repo,
        assignments=assignments_repo,
        config=review_config,
        now=clock,
    )


@pytest_asyncio.fixture
async def client(assignment_service, lifecycle_service, consensus_service) -> AsyncGenerator:
    """
    提供一个模拟的异步测试客户端（服务依赖替换为内存仓储版本）
    """
    services = ReviewServices(
        assignment=assignment_service,
        lifecycle=lifecycle_service,
        consensus=consensus_service,
    )
    app.dependency_overrides[get_review_services] = lambda: services
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
            yield ac
    finally:
        app.dependency_overrides.pop(get_review_services, None)
