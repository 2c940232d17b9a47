from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from app.models.manuscript import ManuscriptStatus
from app.models.reviews import AssignmentStatus, Recommendation
from app.repositories.base import AssignmentFilter
from app.schemas.review import ReviewDecision


def _decision(reviewer: str, recommendation: str = "accept") -> ReviewDecision:
    return ReviewDecision(
        recommendation=recommendation,
        comments="Sound methodology.",
        confidential_comments="Minor overlap with prior work.",
        reviewer_identity=reviewer,
    )


@pytest.fixture
def qualified(profiles_repo, make_profile):
    profiles_repo.add(make_profile("r-1", "Ada Lovelace"))
    profiles_repo.add(make_profile("r-2", "Alan Turing"))
    profiles_repo.add(make_profile("r-3", "Grace Murray"))
    return ["r-1", "r-2", "r-3"]


# === create / assign ===


def test_create_is_pending_with_default_deadline(lifecycle_service, clock):
    result = lifecycle_service.create("ms-1", editor_identity="editor-1")

    assert result.success is True
    assert result.data.status == AssignmentStatus.PENDING
    assert result.data.reviewer_identity is None
    assert result.data.deadline == clock() + timedelta(days=30)


def test_create_with_reviewer_assigns_immediately(lifecycle_service, qualified):
    result = lifecycle_service.create("ms-1", reviewer_identity="r-1", review_days=10)

    assert result.data.status == AssignmentStatus.ASSIGNED
    assert result.data.reviewer_identity == "r-1"


def test_create_with_author_as_reviewer_writes_nothing(lifecycle_service, assignments_repo, make_profile, profiles_repo):
    profiles_repo.add(make_profile("author-1", "Ada Lovelace"))

    result = lifecycle_service.create("ms-1", reviewer_identity="author-1")

    assert result.error.code == "is_author"
    assert assignments_repo.get_by_manuscript("ms-1") == []


def test_create_for_unknown_manuscript(lifecycle_service):
    assert lifecycle_service.create("nope").error.code == "manuscript_not_found"


def test_assign_pending_record(lifecycle_service, seed_assignment, qualified):
    slot = seed_assignment("ms-1")

    result = lifecycle_service.assign(slot.id, "r-1", editor_identity="editor-1")

    assert result.data.status == AssignmentStatus.ASSIGNED
    assert result.data.reviewer_identity == "r-1"
    assert result.data.editor_identity == "editor-1"
    assert result.data.assigned_at is not None


def test_reassigning_assigned_record_is_rejected(lifecycle_service, assignments_repo, seed_assignment, qualified):
    slot = seed_assignment("ms-1", "r-1", status=AssignmentStatus.ASSIGNED)

    result = lifecycle_service.assign(slot.id, "r-2")

    assert result.success is False
    assert result.error.code == "already_assigned"
    assert assignments_repo.get_by_id(slot.id).reviewer_identity == "r-1"


def test_assign_respects_workload_cap(lifecycle_service, seed_assignment, qualified):
    for i in range(3):
        seed_assignment(f"busy-{i}", "r-1", status=AssignmentStatus.ASSIGNED)
    slot = seed_assignment("ms-1")

    result = lifecycle_service.assign(slot.id, "r-1")

    assert result.error.code == "reviewer_overloaded"
    assert result.error.retryable is True


def test_assign_rejects_unavailable_and_unknown_reviewers(
    lifecycle_service, seed_assignment, profiles_repo, make_profile
):
    profiles_repo.add(make_profile("r-9", "Ada Lovelace", available=False))
    slot = seed_assignment("ms-1")

    assert lifecycle_service.assign(slot.id, "r-9").error.code == "reviewer_unavailable"
    assert lifecycle_service.assign(slot.id, "ghost").error.code == "reviewer_not_found"
    assert lifecycle_service.assign(slot.id, " ").error.code == "missing_reviewer"


def test_assign_reviewers_requires_three(lifecycle_service, qualified):
    result = lifecycle_service.assign_reviewers("ms-1", ["r-1", "r-2", "r-2"])

    assert result.error.code == "insufficient_reviewers"


def test_assign_reviewers_creates_assigned_records(lifecycle_service, manuscripts_repo, qualified):
    result = lifecycle_service.assign_reviewers("ms-1", qualified, assigned_by="editor-1")

    assert result.success is True
    assert [a.reviewer_identity for a in result.data] == qualified
    assert all(a.status == AssignmentStatus.ASSIGNED for a in result.data)
    assert manuscripts_repo.get_by_id("ms-1").status == ManuscriptStatus.UNDER_REVIEW


def test_assign_reviewers_is_all_or_nothing(lifecycle_service, assignments_repo, qualified, profiles_repo, make_profile):
    profiles_repo.add(make_profile("author-1", "Ada Lovelace"))

    result = lifecycle_service.assign_reviewers("ms-1", ["r-1", "r-2", "author-1"])

    assert result.error.code == "is_author"
    assert assignments_repo.get_by_manuscript("ms-1") == []


# === draft ===


def test_save_draft_promotes_pending_to_in_progress(lifecycle_service, seed_assignment):
    slot = seed_assignment("ms-1")

    result = lifecycle_service.save_draft(slot.id, comments="first pass")

    assert result.data.status == AssignmentStatus.IN_PROGRESS
    assert result.data.comments == "first pass"


def test_save_draft_keeps_state_otherwise(lifecycle_service, seed_assignment):
    slot = seed_assignment("ms-1", "r-1", status=AssignmentStatus.ASSIGNED)

    result = lifecycle_service.save_draft(slot.id, confidential_comments="for the editor")

    assert result.data.status == AssignmentStatus.ASSIGNED
    assert result.data.confidential_comments == "for the editor"


def test_save_draft_on_completed_review_is_conflict(lifecycle_service, seed_assignment):
    slot = seed_assignment("ms-1", "r-1", status=AssignmentStatus.COMPLETED, recommendation=Recommendation.ACCEPT)

    assert lifecycle_service.save_draft(slot.id, comments="late edit").error.code == "review_completed"


# === submit ===


def test_submit_completes_and_stores_recommendation(lifecycle_service, seed_assignment, qualified, clock):
    slot = seed_assignment("ms-1", "r-1", status=AssignmentStatus.IN_PROGRESS)

    result = lifecycle_service.submit_decision(slot.id, _decision("r-1", "Minor Revision"))

    assert result.success is True
    assert result.data.status == AssignmentStatus.COMPLETED
    assert result.data.recommendation == Recommendation.MINOR_REVISION
    assert result.data.completed_at == clock()
    assert result.data.confidential_comments == "Minor overlap with prior work."


def test_submit_from_pending_records_submitter(lifecycle_service, seed_assignment, qualified):
    slot = seed_assignment("ms-1")

    result = lifecycle_service.submit_decision(slot.id, _decision("r-2"))

    assert result.data.reviewer_identity == "r-2"


def test_submit_invalid_recommendation_is_validation_error(lifecycle_service, seed_assignment, qualified):
    slot = seed_assignment("ms-1", "r-1", status=AssignmentStatus.ASSIGNED)

    result = lifecycle_service.submit_decision(slot.id, _decision("r-1", "strong accept"))

    assert result.error.code == "invalid_recommendation"
    assert result.error.status_code == 422


def test_submit_by_author_is_ineligible(lifecycle_service, seed_assignment, profiles_repo, make_profile):
    profiles_repo.add(make_profile("author-1", "Ada Lovelace"))
    slot = seed_assignment("ms-1")

    result = lifecycle_service.submit_decision(slot.id, _decision("author-1"))

    assert result.error.code == "is_author"
    assert result.error.category == "ineligible"


def test_submit_by_other_reviewer_is_rejected(lifecycle_service, seed_assignment, qualified):
    slot = seed_assignment("ms-1", "r-1", status=AssignmentStatus.ASSIGNED)

    assert lifecycle_service.submit_decision(slot.id, _decision("r-2")).error.code == "not_assigned_reviewer"


def test_second_review_of_same_manuscript_is_already_reviewed(lifecycle_service, seed_assignment, qualified):
    seed_assignment("ms-1", "r-1", status=AssignmentStatus.COMPLETED, recommendation=Recommendation.ACCEPT)
    slot = seed_assignment("ms-1")

    result = lifecycle_service.submit_decision(slot.id, _decision("r-1"))

    assert result.error.code == "already_reviewed"


def test_completed_assignment_cannot_be_completed_again(lifecycle_service, seed_assignment, qualified):
    slot = seed_assignment("ms-1", "r-1", status=AssignmentStatus.IN_PROGRESS)
    assert lifecycle_service.submit_decision(slot.id, _decision("r-1")).success is True

    again = lifecycle_service.submit_decision(slot.id, _decision("r-1", "reject"))

    assert again.error.code == "already_completed"


def test_qualification_is_rechecked_at_submission(lifecycle_service, seed_assignment, profiles_repo, make_profile):
    profiles_repo.add(make_profile("r-5", "Ada Lovelace", topic_papers=1))
    slot = seed_assignment("ms-1", "r-5", status=AssignmentStatus.ASSIGNED)

    result = lifecycle_service.submit_decision(slot.id, _decision("r-5"))

    assert result.error.code == "reviewer_not_qualified"
    assert "Only 1 first-author papers on relevant topic (need 3)" in result.error.reasons


def test_missing_profile_is_not_qualified(lifecycle_service, seed_assignment):
    slot = seed_assignment("ms-1", "r-404", status=AssignmentStatus.ASSIGNED)

    result = lifecycle_service.submit_decision(slot.id, _decision("r-404"))

    assert result.error.code == "reviewer_not_qualified"
    assert result.error.reasons == ["Reviewer has no CV profile"]


def test_concurrent_submissions_complete_once(lifecycle_service, assignments_repo, seed_assignment, qualified):
    slot = seed_assignment("ms-1", "r-1", status=AssignmentStatus.IN_PROGRESS)

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: lifecycle_service.submit_decision(slot.id, _decision("r-1")), range(4)))

    assert sum(1 for r in results if r.success) == 1
    assert all(r.error.code in {"already_completed", "concurrent_update"} for r in results if not r.success)
    assert assignments_repo.get_by_id(slot.id).status == AssignmentStatus.COMPLETED


# === deadline / listing / eligibility ===


def test_extend_deadline_keeps_state(lifecycle_service, seed_assignment, clock):
    slot = seed_assignment("ms-1", "r-1", status=AssignmentStatus.ASSIGNED)

    result = lifecycle_service.extend_deadline(slot.id, 7)

    assert result.data.status == AssignmentStatus.ASSIGNED
    assert result.data.deadline == clock() + timedelta(days=37)


@pytest.mark.parametrize("days", [0, -3])
def test_extend_deadline_rejects_non_positive_days(lifecycle_service, seed_assignment, days):
    slot = seed_assignment("ms-1")

    assert lifecycle_service.extend_deadline(slot.id, days).error.code == "invalid_extension"


def test_extend_deadline_unknown_assignment(lifecycle_service):
    result = lifecycle_service.extend_deadline("missing", 3)

    assert result.error.code == "assignment_not_found"
    assert result.error.status_code == 404


def test_list_assignments_derives_overdue(lifecycle_service, seed_assignment, clock):
    seed_assignment("ms-1", "r-1", status=AssignmentStatus.ASSIGNED, deadline=clock() - timedelta(days=2))
    seed_assignment("ms-1", "r-2", status=AssignmentStatus.COMPLETED, deadline=clock() - timedelta(days=2))
    seed_assignment("ms-1", "r-3", status=AssignmentStatus.IN_PROGRESS, deadline=clock() + timedelta(hours=36))

    listing = lifecycle_service.list_assignments().data

    assert listing.total == 3
    assert listing.overdue_count == 1
    by_reviewer = {v.assignment.reviewer_identity: v for v in listing.reviews}
    assert by_reviewer["r-1"].is_overdue is True
    assert by_reviewer["r-2"].is_overdue is False
    assert by_reviewer["r-3"].days_until_deadline == 2

    overdue = lifecycle_service.list_assignments(AssignmentFilter.build(overdue_only=True)).data
    assert [v.assignment.reviewer_identity for v in overdue.reviews] == ["r-1"]


def test_eligibility_author_first(lifecycle_service, profiles_repo, make_profile):
    profiles_repo.add(make_profile("author-1", "Ada Lovelace"))

    report = lifecycle_service.check_eligibility("author-1", "ms-1").data

    assert report.can_review is False
    assert report.code == "is_author"
    assert report.requirements.not_author is False


def test_eligibility_already_reviewed(lifecycle_service, seed_assignment, qualified):
    seed_assignment("ms-1", "r-1", status=AssignmentStatus.COMPLETED, recommendation=Recommendation.REJECT)

    report = lifecycle_service.check_eligibility("r-1", "ms-1").data

    assert report.code == "already_reviewed"
    assert report.requirements.not_author is True
    assert report.requirements.not_already_reviewed is False


def test_eligibility_without_cv(lifecycle_service):
    report = lifecycle_service.check_eligibility("r-404", "ms-1").data

    assert report.code == "reviewer_not_qualified"
    assert report.requirements.has_cv is False


def test_eligibility_full_report(lifecycle_service, profiles_repo, make_profile):
    profiles_repo.add(make_profile("r-1", "Ada Lovelace", topic_papers=4, off_topic_papers=2))

    report = lifecycle_service.check_eligibility("r-1", "ms-1").data

    assert report.can_review is True
    assert report.code is None
    assert report.requirements.model_dump() == {
        "not_author": True,
        "not_already_reviewed": True,
        "has_cv": True,
        "has_bachelors": True,
        "has_three_topic_papers": True,
        "has_topic_expertise": True,
    }
    assert report.total_first_author_papers == 6
    assert report.topic_relevant_papers == 4
    assert report.required_topic_papers == 3


def test_eligibility_unknown_manuscript(lifecycle_service):
    assert lifecycle_service.check_eligibility("r-1", "nope").error.code == "manuscript_not_found"


def test_reviewer_qualification_reports_cv_without_manuscript(lifecycle_service, profiles_repo, make_profile):
    profiles_repo.add(make_profile("r-1", "Ada Lovelace", topic_papers=4))

    result = lifecycle_service.get_reviewer_qualification("r-1")

    assert result.success is True
    assert result.data.has_bachelors is True
    assert result.data.first_author_papers == 4
    assert result.data.is_qualified is False
    assert "Has Bachelor's degree or higher" in result.data.reasons


def test_reviewer_qualification_without_profile_is_not_found(lifecycle_service):
    result = lifecycle_service.get_reviewer_qualification("ghost")

    assert result.success is False
    assert result.error.status_code == 404
    assert result.error.code == "reviewer_not_found"


def test_get_assignment_derives_deadline_fields(lifecycle_service, seed_assignment, clock):
    slot = seed_assignment("ms-1", "r-1", status=AssignmentStatus.ASSIGNED, deadline=clock() - timedelta(days=1))

    result = lifecycle_service.get_assignment(slot.id)

    assert result.data.assignment.id == slot.id
    assert result.data.is_overdue is True
    assert result.data.days_until_deadline == -1

    missing = lifecycle_service.get_assignment("nope")
    assert missing.error.code == "assignment_not_found"
