from __future__ import annotations

import re
from typing import Iterable, List, Optional, Protocol, Sequence

from app.models.manuscript import Manuscript
from app.models.reviewer_profile import EducationRecord, Publication, ReviewerProfile
from app.schemas.reviewer import QualificationResult
from app.services.topic_matcher import extract_keywords, matching_topics, topics_overlap

DEFAULT_MIN_TOPIC_PAPERS = 3

# Bachelor's is the minimum accepted tier; master/doctorate keywords count as well.
DEGREE_KEYWORDS = (
    "bachelor",
    "b.s",
    "b.a",
    "master",
    "m.s",
    "m.a",
    "doctorate",
    "doctoral",
    "ph.d",
    "phd",
)
# Short abbreviations only count as whole tokens ("MS" yes, "diploma" no).
DEGREE_ABBREVIATIONS = frozenset({"bs", "ba", "bsc", "ms", "ma", "msc", "mba", "phd", "dphil"})

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def has_bachelors_or_higher(education: Iterable[EducationRecord]) -> bool:
    for edu in education or []:
        degree = (edu.degree or "").lower()
        if not degree:
            continue
        if any(keyword in degree for keyword in DEGREE_KEYWORDS):
            return True
        if DEGREE_ABBREVIATIONS.intersection(_TOKEN_RE.findall(degree)):
            return True
    return False


class NameMatcher(Protocol):
    """Decides whether an author-list entry refers to the reviewer."""

    def matches(self, reviewer_name: str, author_entry: str) -> bool: ...


class ApproximateNameMatcher:
    """
    First/last name token substring match.

    Heuristic proxy for identity: two reviewers sharing a name are both credited.
    """

    def matches(self, reviewer_name: str, author_entry: str) -> bool:
        tokens = (reviewer_name or "").lower().split()
        entry = (author_entry or "").lower()
        if not tokens or not entry:
            return False
        return tokens[0] in entry and tokens[-1] in entry


def manuscript_keywords(manuscript: Optional[Manuscript]) -> List[str]:
    if manuscript is None:
        return []
    bag = [c for c in manuscript.categories if c]
    bag.extend(extract_keywords(manuscript.title))
    bag.extend(extract_keywords(manuscript.abstract))
    return bag


def publication_keywords(publication: Publication) -> List[str]:
    return extract_keywords(publication.title) + extract_keywords(publication.venue)


def expertise_keywords(profile: ReviewerProfile) -> List[str]:
    bag: List[str] = []
    if profile.field:
        bag.append(profile.field)
    if profile.profession:
        bag.append(profile.profession)
    for pub in profile.publications:
        if pub.venue:
            bag.append(pub.venue)
        bag.extend(extract_keywords(pub.title))
    for exp in profile.experience:
        if exp.position:
            bag.append(exp.position)
        bag.extend(extract_keywords(exp.description))
    return bag


class QualificationEvaluator:
    """
    Decides, per (reviewer, manuscript), whether the reviewer is eligible.

    Total and pure: never raises, never touches storage. Safe to run concurrently.
    """

    def __init__(
        self,
        *,
        name_matcher: Optional[NameMatcher] = None,
        min_topic_papers: int = DEFAULT_MIN_TOPIC_PAPERS,
    ) -> None:
        self.name_matcher = name_matcher or ApproximateNameMatcher()
        self.min_topic_papers = min_topic_papers

    def first_authored(self, profile: ReviewerProfile) -> List[Publication]:
        return [
            pub
            for pub in profile.publications
            if pub.authors and self.name_matcher.matches(profile.full_name, pub.authors[0])
        ]

    def count_first_author_papers_on_topic(
        self,
        profile: ReviewerProfile,
        manuscript_bag: Sequence[str],
    ) -> int:
        if not manuscript_bag:
            return 0
        return sum(
            1 for pub in self.first_authored(profile) if topics_overlap(publication_keywords(pub), manuscript_bag)
        )

    def evaluate(self, profile: ReviewerProfile, manuscript: Optional[Manuscript]) -> QualificationResult:
        manuscript_bag = manuscript_keywords(manuscript)

        has_bachelors = has_bachelors_or_higher(profile.education)
        first_author = len(self.first_authored(profile))
        on_topic = self.count_first_author_papers_on_topic(profile, manuscript_bag)
        matched = matching_topics(expertise_keywords(profile), manuscript_bag)
        expertise_match = bool(matched)

        is_qualified = has_bachelors and on_topic >= self.min_topic_papers and expertise_match

        reasons: List[str] = []
        if has_bachelors:
            reasons.append("Has Bachelor's degree or higher")
        else:
            reasons.append("Missing Bachelor's degree or higher")
        if on_topic >= self.min_topic_papers:
            reasons.append(f"{on_topic} first-author papers on relevant topic")
        else:
            reasons.append(
                f"Only {on_topic} first-author papers on relevant topic (need {self.min_topic_papers})"
            )
        if expertise_match:
            reasons.append(f"Expertise match: {', '.join(matched)}")
        else:
            reasons.append("No expertise match with manuscript topic")

        return QualificationResult(
            reviewer_identity=profile.identity,
            name=profile.display_name,
            institution=profile.institution or "Unknown",
            field=profile.display_field,
            is_qualified=is_qualified,
            reasons=reasons,
            expertise=matched,
            publication_count=len(profile.publications),
            first_author_papers=first_author,
            first_author_papers_on_topic=on_topic,
            has_bachelors=has_bachelors,
            expertise_match=expertise_match,
        )

    def general_qualification(self, profile: ReviewerProfile) -> QualificationResult:
        """Qualification with no manuscript context (diagnostics only; never qualifies on topic)."""
        return self.evaluate(profile, None)
