from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


OracleTier = Literal["highly_recommended", "recommended", "suitable", "not_suitable"]


class QualificationResult(BaseModel):
    """
    Per (reviewer, manuscript) qualification verdict.

    Doubles as audit/diagnostic output, so every criterion is reported explicitly in `reasons`.
    """

    reviewer_identity: str
    name: str = "Unknown"
    institution: str = "Unknown"
    field: str = "Unknown"
    is_qualified: bool = False
    reasons: List[str] = Field(default_factory=list)
    expertise: List[str] = Field(default_factory=list, description="Matched expertise topics")
    publication_count: int = 0
    first_author_papers: int = 0
    first_author_papers_on_topic: int = 0
    has_bachelors: bool = False
    expertise_match: bool = False


class CandidateEvaluation(BaseModel):
    reviewer_identity: str
    name: str = "Unknown"
    institution: str = "Unknown"
    strategy: Literal["deterministic", "oracle"]
    score: float = 0.0
    eligible: bool = False
    reasons: List[str] = Field(default_factory=list)
    first_author_papers_on_topic: int = 0
    available: bool = True
    current_load: Optional[int] = None
    tier: Optional[OracleTier] = None
    subscores: Optional[Dict[str, float]] = None
    qualification: Optional[QualificationResult] = None


class EligibilityRequirements(BaseModel):
    not_author: bool = False
    not_already_reviewed: bool = False
    has_cv: bool = False
    has_bachelors: bool = False
    has_three_topic_papers: bool = False
    has_topic_expertise: bool = False


class EligibilityReport(BaseModel):
    reviewer_identity: str
    manuscript_id: str
    can_review: bool
    code: Optional[Literal["is_author", "already_reviewed", "reviewer_not_qualified"]] = None
    reason: str
    requirements: EligibilityRequirements
    total_first_author_papers: int = 0
    topic_relevant_papers: int = 0
    required_topic_papers: int = 3
    reasons: List[str] = Field(default_factory=list)
    qualification: Optional[QualificationResult] = None
