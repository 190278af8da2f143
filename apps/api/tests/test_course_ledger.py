"""
Course session ledger tests.

Tests cover:
1. Counters move with every ledger row (total = used + remaining)
2. USE / RETURN / ADJUST rules and their errors
3. Idempotent use_session / return_session
4. Immutability of ledger rows
5. Ledger consistency check
"""
import pytest
from django.core.exceptions import ValidationError

from apps.clinical.exceptions import ForbiddenTransitionError
from apps.courses.models import Course, CourseStatusChoices, CourseUsageActionChoices, CourseUsageEntry
from apps.courses.services import (
    CourseInactiveError,
    InsufficientSessionsError,
    OverReturnError,
    adjust_sessions,
    get_outstanding_use,
    return_session,
    return_sessions,
    use_session,
    use_sessions,
    verify_course_ledger,
)


def assert_balanced(course):
    course.refresh_from_db()
    assert course.total_sessions == course.used_sessions + course.remaining_sessions
    assert course.used_sessions >= 0
    assert course.remaining_sessions >= 0


@pytest.mark.django_db
class TestCourseModel:
    """Course counters and validation."""

    def test_remaining_defaults_to_total(self, course):
        assert course.used_sessions == 0
        assert course.remaining_sessions == 5
        assert course.status == CourseStatusChoices.ACTIVE
        assert course.is_usable

    def test_unbalanced_counters_rejected(self, course):
        course.remaining_sessions = 4
        with pytest.raises(ValidationError):
            course.save()


@pytest.mark.django_db
class TestUseSessions:

    def test_use_moves_counters_and_appends_entry(self, course, case, admin_user):
        entry = use_sessions(course, 1, case=case, created_by=admin_user)

        assert entry.action_type == CourseUsageActionChoices.USE
        assert entry.session_delta == 1
        assert entry.case_id == case.id
        assert course.used_sessions == 1
        assert course.remaining_sessions == 4
        assert_balanced(course)

    def test_last_session_completes_course(self, course, case):
        use_sessions(course, 5, case=case)

        course.refresh_from_db()
        assert course.remaining_sessions == 0
        assert course.status == CourseStatusChoices.COMPLETED

    def test_insufficient_sessions_writes_nothing(self, course, case):
        use_sessions(course, 5, case=case)

        with pytest.raises(InsufficientSessionsError) as exc_info:
            use_sessions(course, 1, case=case)

        assert exc_info.value.remaining == 0
        assert exc_info.value.requested == 1
        assert CourseUsageEntry.objects.filter(course=course).count() == 1
        assert_balanced(course)

    @pytest.mark.parametrize('status', [CourseStatusChoices.CANCELLED, CourseStatusChoices.EXPIRED])
    def test_inactive_course_rejects_use(self, course, case, status):
        course.status = status
        course.save()

        with pytest.raises(CourseInactiveError):
            use_sessions(course, 1, case=case)

        assert not CourseUsageEntry.objects.filter(course=course).exists()

    def test_non_positive_amount_rejected(self, course, case):
        with pytest.raises(ValueError):
            use_sessions(course, 0, case=case)


@pytest.mark.django_db
class TestReturnSessions:

    def test_return_compensates_use(self, course, case):
        use_entry = use_sessions(course, 1, case=case)

        return_entry = return_sessions(course, reversed_entry=use_entry)

        assert return_entry.action_type == CourseUsageActionChoices.RETURN
        assert return_entry.session_delta == -1
        assert return_entry.case_id == case.id
        assert return_entry.reversed_entry_id == use_entry.id
        course.refresh_from_db()
        assert course.used_sessions == 0
        assert course.remaining_sessions == 5

    def test_return_reactivates_completed_course(self, course, case):
        use_entry = use_sessions(course, 5, case=case)

        return_sessions(course, amount=1, reversed_entry=use_entry)

        course.refresh_from_db()
        assert course.status == CourseStatusChoices.ACTIVE
        assert course.remaining_sessions == 1

    def test_over_return_rejected(self, course):
        with pytest.raises(OverReturnError) as exc_info:
            return_sessions(course, amount=1)

        assert exc_info.value.used == 0
        assert_balanced(course)

    def test_entry_cannot_be_returned_twice(self, course, case):
        use_entry = use_sessions(course, 1, case=case)
        return_sessions(course, reversed_entry=use_entry)

        with pytest.raises(ValidationError):
            return_sessions(course, reversed_entry=use_entry)

        course.refresh_from_db()
        assert course.used_sessions == 0


@pytest.mark.django_db
class TestAdjustSessions:

    def test_admin_can_adjust_with_reason(self, course, admin_user):
        entry = adjust_sessions(course, 2, 'Sessions used before system migration', admin_user)

        assert entry.action_type == CourseUsageActionChoices.ADJUST
        assert entry.session_delta == 2
        assert entry.notes == 'Sessions used before system migration'
        assert_balanced(course)
        assert course.used_sessions == 2

    def test_negative_adjust_gives_sessions_back(self, course, admin_user):
        adjust_sessions(course, 5, 'Imported', admin_user)
        course.refresh_from_db()
        assert course.status == CourseStatusChoices.COMPLETED

        adjust_sessions(course, -1, 'Counted twice', admin_user)

        course.refresh_from_db()
        assert course.used_sessions == 4
        assert course.status == CourseStatusChoices.ACTIVE

    def test_non_privileged_user_forbidden(self, course, clinic_user):
        with pytest.raises(ForbiddenTransitionError):
            adjust_sessions(course, 1, 'Correction', clinic_user)

        assert not CourseUsageEntry.objects.filter(course=course).exists()

    def test_reason_required(self, course, admin_user):
        with pytest.raises(ValidationError):
            adjust_sessions(course, 1, '  ', admin_user)

    def test_adjust_cannot_break_bounds(self, course, admin_user):
        with pytest.raises(InsufficientSessionsError):
            adjust_sessions(course, 6, 'Too many', admin_user)
        with pytest.raises(OverReturnError):
            adjust_sessions(course, -1, 'Nothing used', admin_user)

        assert_balanced(course)


@pytest.mark.django_db
class TestIdempotentHelpers:
    """use_session / return_session decide from the ledger, not the caller."""

    def test_use_session_twice_consumes_once(self, course, case, pt_user):
        first = use_session(course.id, case.id, actor=pt_user)
        second = use_session(course.id, case.id, actor=pt_user)

        assert first.id == second.id
        course.refresh_from_db()
        assert course.used_sessions == 1

    def test_return_session_twice_returns_once(self, course, case, pt_user):
        use_session(course.id, case.id, actor=pt_user)

        first = return_session(course.id, case.id, actor=pt_user)
        second = return_session(course.id, case.id, actor=pt_user)

        assert first is not None
        assert second is None
        course.refresh_from_db()
        assert course.used_sessions == 0
        assert CourseUsageEntry.objects.filter(
            course=course, action_type=CourseUsageActionChoices.RETURN
        ).count() == 1

    def test_return_without_use_is_noop(self, course, case):
        assert return_session(course.id, case.id) is None
        assert not CourseUsageEntry.objects.exists()

    def test_use_after_return_consumes_again(self, course, case):
        use_session(course.id, case.id)
        return_session(course.id, case.id)

        entry = use_session(course.id, case.id)

        assert get_outstanding_use(case=case).id == entry.id
        course.refresh_from_db()
        assert course.used_sessions == 1

    def test_appointment_scoped_usage(self, course, appointment_data, pt_user):
        from apps.clinical.services_appointments import book_appointment

        appointment = book_appointment(appointment_data, pt_user).appointment

        use_session(course.id, appointment_id=appointment.id)
        assert get_outstanding_use(appointment=appointment) is not None

        return_session(course.id, appointment_id=appointment.id)
        assert get_outstanding_use(appointment=appointment) is None

    def test_helpers_require_a_scope(self, course):
        with pytest.raises(ValueError):
            use_session(course.id)
        with pytest.raises(ValueError):
            return_session(course.id)


@pytest.mark.django_db
class TestLedgerImmutability:

    def test_entries_cannot_be_updated(self, course, case):
        entry = use_sessions(course, 1, case=case)
        entry.notes = 'edited'

        with pytest.raises(ValidationError):
            entry.save()

    def test_entries_cannot_be_deleted(self, course, case):
        entry = use_sessions(course, 1, case=case)

        with pytest.raises(ValidationError):
            entry.delete()

        assert CourseUsageEntry.objects.filter(pk=entry.pk).exists()


@pytest.mark.django_db
class TestLedgerConsistency:

    def test_consistent_after_mixed_operations(self, course, case, admin_user):
        use_session(course.id, case.id)
        return_session(course.id, case.id)
        use_session(course.id, case.id)
        adjust_sessions(course, 1, 'Walk-in session', admin_user)

        assert verify_course_ledger(course) is True

    def test_detects_counter_drift(self, course, case):
        use_sessions(course, 1, case=case)
        # Bypass the ledger
        Course.objects.filter(pk=course.pk).update(used_sessions=2, remaining_sessions=3)

        assert verify_course_ledger(course) is False
