"""
PN case state machine tests.

Tests cover:
1. Allowed / rejected transitions and status parsing
2. Course ledger side effects (use on completion, return on cancel/reversal)
3. Privileged reversals and required reasons
4. Status history written once per transition
5. Rollback when a side effect fails
"""
import pytest
from django.core.exceptions import ValidationError

from apps.clinical.exceptions import (
    ForbiddenTransitionError,
    IncompleteAssessmentError,
    IncompleteSOAPError,
    InvalidTransitionError,
    MissingReasonError,
    UnknownStatusError,
)
from apps.clinical.models import Case, CaseStatusChoices, CaseStatusHistory, SOAPNote
from apps.clinical.services import create_case, generate_pn_code, link_course_to_case, transition_case
from apps.courses.models import Course, CourseStatusChoices, CourseUsageActionChoices, CourseUsageEntry
from apps.courses.services import CourseInactiveError, InsufficientSessionsError, use_sessions


def ledger(course, action_type=None):
    entries = CourseUsageEntry.objects.filter(course=course)
    if action_type:
        entries = entries.filter(action_type=action_type)
    return entries


@pytest.fixture
def accepted_case(case, pt_user, assessment_payload):
    transition_case(case.id, 'ACCEPTED', pt_user, assessment_payload)
    case.refresh_from_db()
    return case


@pytest.fixture
def completed_case(accepted_case, pt_user, soap_payload):
    transition_case(accepted_case.id, 'COMPLETED', pt_user, soap_payload)
    accepted_case.refresh_from_db()
    return accepted_case


@pytest.mark.django_db
class TestCaseCreation:

    def test_new_case_is_pending_without_history(self, case):
        assert case.status == CaseStatusChoices.PENDING
        assert case.pn_code.startswith('PN-')
        assert not case.status_history.exists()

    def test_pn_codes_are_unique(self, case):
        assert generate_pn_code() != case.pn_code

    def test_course_of_another_patient_rejected(self, other_patient, clinic_main, course):
        with pytest.raises(ValidationError):
            create_case(
                patient=other_patient,
                source_clinic=clinic_main,
                target_clinic=clinic_main,
                diagnosis='Shoulder pain',
                purpose='Physiotherapy',
                course=course,
            )

    def test_cancelled_course_rejected(self, patient, clinic_main, course):
        course.status = CourseStatusChoices.CANCELLED
        course.save()

        with pytest.raises(CourseInactiveError):
            create_case(
                patient=patient,
                source_clinic=clinic_main,
                target_clinic=clinic_main,
                diagnosis='Shoulder pain',
                purpose='Physiotherapy',
                course=course,
            )


@pytest.mark.django_db
class TestTransitionRules:

    def test_unknown_status_rejected(self, case, pt_user):
        with pytest.raises(UnknownStatusError):
            transition_case(case.id, 'DISCHARGED', pt_user)

        case.refresh_from_db()
        assert case.status == CaseStatusChoices.PENDING

    def test_lowercase_status_is_not_a_status(self, case, pt_user):
        with pytest.raises(UnknownStatusError):
            transition_case(case.id, 'accepted', pt_user)

    def test_pending_cannot_complete(self, case, pt_user, soap_payload):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition_case(case.id, 'COMPLETED', pt_user, soap_payload)

        assert exc_info.value.current_status == CaseStatusChoices.PENDING
        assert exc_info.value.requested_status == CaseStatusChoices.COMPLETED

    def test_cancelled_is_terminal(self, case, pt_user):
        transition_case(case.id, 'CANCELLED', pt_user, {'reason': 'Duplicate referral'})

        for target in ('PENDING', 'ACCEPTED', 'COMPLETED'):
            with pytest.raises(InvalidTransitionError):
                transition_case(case.id, target, pt_user, {'reason': 'retry'})

    def test_same_status_is_not_a_transition(self, case, pt_user):
        with pytest.raises(InvalidTransitionError):
            transition_case(case.id, 'PENDING', pt_user)

    def test_cancel_requires_reason(self, case, pt_user):
        with pytest.raises(MissingReasonError):
            transition_case(case.id, 'CANCELLED', pt_user, {'reason': '   '})

        case.refresh_from_db()
        assert case.status == CaseStatusChoices.PENDING

    def test_in_progress_legacy_rows_are_frozen(self, case, admin_user):
        Case.objects.filter(pk=case.pk).update(status=CaseStatusChoices.IN_PROGRESS)

        with pytest.raises(InvalidTransitionError):
            transition_case(case.id, 'COMPLETED', admin_user)


@pytest.mark.django_db
class TestAcceptance:

    def test_cross_clinic_accept_stores_assessment(self, case, pt_user, assessment_payload):
        result = transition_case(case.id, 'ACCEPTED', pt_user, assessment_payload)

        case = result.case
        assert case.status == CaseStatusChoices.ACCEPTED
        assert case.pt_diagnosis == 'Lumbar strain'
        assert case.pt_pain_score == 6
        assert case.assessed_by == pt_user
        assert case.accepted_at is not None

    def test_accept_consumes_no_session(self, accepted_case, course):
        assert not ledger(course).exists()

    def test_same_clinic_accept_needs_no_assessment(self, same_clinic_case, pt_user):
        result = transition_case(same_clinic_case.id, 'ACCEPTED', pt_user)

        assert result.case.status == CaseStatusChoices.ACCEPTED
        assert result.case.assessed_at is None

    def test_no_assessment_clinic_accepts_without_assessment(self, patient, clinic_branch2, clinic_main, pt_user):
        case = create_case(
            patient=patient,
            source_clinic=clinic_branch2,
            target_clinic=clinic_main,
            diagnosis='Ankle sprain',
            purpose='Physiotherapy',
        )

        result = transition_case(case.id, 'ACCEPTED', pt_user)

        assert result.case.status == CaseStatusChoices.ACCEPTED

    def test_invalid_pain_score_rejected(self, case, pt_user, assessment_payload):
        assessment_payload['pt_pain_score'] = 11

        with pytest.raises(IncompleteAssessmentError) as exc_info:
            transition_case(case.id, 'ACCEPTED', pt_user, assessment_payload)

        assert exc_info.value.missing_fields == ['pt_pain_score']


@pytest.mark.django_db
class TestCompletion:

    def test_completion_writes_soap_and_uses_one_session(self, completed_case, course):
        assert completed_case.status == CaseStatusChoices.COMPLETED
        assert completed_case.completed_at is not None
        assert SOAPNote.objects.filter(case=completed_case).count() == 1

        uses = ledger(course, CourseUsageActionChoices.USE)
        assert uses.count() == 1
        assert uses.get().case_id == completed_case.id

    def test_incomplete_soap_rolls_back(self, accepted_case, pt_user, course):
        with pytest.raises(IncompleteSOAPError) as exc_info:
            transition_case(accepted_case.id, 'COMPLETED', pt_user, {'subjective': 'Better'})

        assert set(exc_info.value.missing_fields) == {'objective', 'assessment', 'plan'}
        accepted_case.refresh_from_db()
        assert accepted_case.status == CaseStatusChoices.ACCEPTED
        assert not ledger(course).exists()
        assert not SOAPNote.objects.exists()

    def test_empty_course_blocks_completion(self, accepted_case, pt_user, soap_payload, course):
        use_sessions(course, 5)

        with pytest.raises(InsufficientSessionsError):
            transition_case(accepted_case.id, 'COMPLETED', pt_user, soap_payload)

        accepted_case.refresh_from_db()
        assert accepted_case.status == CaseStatusChoices.ACCEPTED
        assert not SOAPNote.objects.exists()
        assert accepted_case.status_history.filter(new_status='COMPLETED').count() == 0

    def test_case_without_course_completes_without_ledger(self, patient, clinic_main, pt_user, soap_payload):
        case = create_case(
            patient=patient,
            source_clinic=clinic_main,
            target_clinic=clinic_main,
            diagnosis='Neck pain',
            purpose='Physiotherapy',
        )
        transition_case(case.id, 'ACCEPTED', pt_user)
        transition_case(case.id, 'COMPLETED', pt_user, soap_payload)

        assert not CourseUsageEntry.objects.exists()


@pytest.mark.django_db
class TestReversals:

    def test_reopen_completed_keeps_session(self, completed_case, admin_user, course):
        result = transition_case(
            completed_case.id, 'ACCEPTED', admin_user, {'reason': 'SOAP entered on wrong case'}
        )

        case = result.case
        assert case.status == CaseStatusChoices.ACCEPTED
        assert case.is_reversed is True
        assert case.last_reversal_reason == 'SOAP entered on wrong case'
        assert case.completed_at is None
        assert result.history_entry.is_reversal is True

        course.refresh_from_db()
        assert course.used_sessions == 1
        assert not ledger(course, CourseUsageActionChoices.RETURN).exists()

    def test_reversal_then_recomplete_uses_one_session(self, completed_case, admin_user, pt_user, soap_payload, course):
        transition_case(completed_case.id, 'ACCEPTED', admin_user, {'reason': 'Fix SOAP'})
        result = transition_case(completed_case.id, 'COMPLETED', pt_user, soap_payload)

        assert result.case.is_reversed is False
        assert ledger(course, CourseUsageActionChoices.USE).count() == 1
        assert SOAPNote.objects.filter(case=completed_case).count() == 2
        course.refresh_from_db()
        assert course.used_sessions == 1

    def test_reversal_requires_privilege(self, completed_case, pt_user):
        with pytest.raises(ForbiddenTransitionError):
            transition_case(completed_case.id, 'ACCEPTED', pt_user, {'reason': 'Mistake'})

        completed_case.refresh_from_db()
        assert completed_case.status == CaseStatusChoices.COMPLETED

    def test_reversal_requires_reason(self, completed_case, admin_user):
        with pytest.raises(MissingReasonError):
            transition_case(completed_case.id, 'ACCEPTED', admin_user)

    def test_revert_to_pending_clears_assessment(self, accepted_case, admin_user):
        result = transition_case(accepted_case.id, 'PENDING', admin_user, {'reason': 'Wrong clinic'})

        case = result.case
        assert case.status == CaseStatusChoices.PENDING
        assert case.pt_diagnosis == ''
        assert case.pt_pain_score is None
        assert case.accepted_at is None
        assert case.is_reversed is False
        assert result.history_entry.is_reversal is True

    def test_revert_to_pending_returns_outstanding_session(self, completed_case, admin_user, course):
        transition_case(completed_case.id, 'ACCEPTED', admin_user, {'reason': 'Reopen'})
        transition_case(completed_case.id, 'PENDING', admin_user, {'reason': 'Re-assess'})

        course.refresh_from_db()
        assert course.used_sessions == 0
        assert ledger(course, CourseUsageActionChoices.RETURN).count() == 1


@pytest.mark.django_db
class TestCancellation:

    def test_cancel_pending(self, case, clinic_user):
        result = transition_case(case.id, 'CANCELLED', clinic_user, {'reason': 'Patient declined'})

        assert result.case.cancellation_reason == 'Patient declined'
        assert result.case.cancelled_at is not None

    def test_cancel_accepted_without_usage_writes_no_ledger(self, accepted_case, clinic_user, course):
        transition_case(accepted_case.id, 'CANCELLED', clinic_user, {'reason': 'No show'})

        assert not ledger(course).exists()


@pytest.mark.django_db
class TestStatusHistory:

    def test_one_entry_per_transition(self, completed_case, pt_user):
        entries = list(completed_case.status_history.order_by('created_at'))

        assert [(e.old_status, e.new_status) for e in entries] == [
            ('PENDING', 'ACCEPTED'),
            ('ACCEPTED', 'COMPLETED'),
        ]
        assert all(e.changed_by == pt_user for e in entries)
        assert not any(e.is_reversal for e in entries)

    def test_rejected_transition_writes_no_history(self, case, pt_user):
        with pytest.raises(IncompleteAssessmentError):
            transition_case(case.id, 'ACCEPTED', pt_user)

        assert not CaseStatusHistory.objects.filter(case=case).exists()

    def test_history_is_immutable(self, accepted_case):
        entry = accepted_case.status_history.get()
        entry.change_reason = 'rewritten'

        with pytest.raises(ValidationError):
            entry.save()
        with pytest.raises(ValidationError):
            entry.delete()


@pytest.mark.django_db
class TestLedgerFlows:
    """End-to-end ledger scenarios on a five-session course."""

    def test_complete_uses_one_session(self, case, course, pt_user, assessment_payload, soap_payload):
        transition_case(case.id, 'ACCEPTED', pt_user, assessment_payload)
        transition_case(case.id, 'COMPLETED', pt_user, soap_payload)

        course.refresh_from_db()
        assert course.used_sessions == 1
        assert course.remaining_sessions == 4
        uses = ledger(course, CourseUsageActionChoices.USE)
        assert uses.count() == 1
        assert uses.get().case_id == case.id

    def test_reverse_then_cancel_returns_session(self, completed_case, course, admin_user):
        transition_case(completed_case.id, 'ACCEPTED', admin_user, {'reason': 'Reopen'})
        transition_case(completed_case.id, 'CANCELLED', admin_user, {'reason': 'wrong patient'})

        course.refresh_from_db()
        assert course.used_sessions == 0
        assert course.remaining_sessions == 5
        returns = ledger(course, CourseUsageActionChoices.RETURN)
        assert returns.count() == 1
        assert returns.get().case_id == completed_case.id

        completed_case.refresh_from_db()
        assert completed_case.status == CaseStatusChoices.CANCELLED
        assert completed_case.is_reversed is False

    def test_cross_clinic_accept_without_assessment(self, patient, clinic_branch2, clinic_branch3, pt_user):
        case = create_case(
            patient=patient,
            source_clinic=clinic_branch2,
            target_clinic=clinic_branch3,
            diagnosis='Knee pain',
            purpose='Physiotherapy',
        )

        with pytest.raises(IncompleteAssessmentError) as exc_info:
            transition_case(case.id, 'ACCEPTED', pt_user, {})

        assert set(exc_info.value.missing_fields) == {
            'pt_diagnosis', 'pt_chief_complaint', 'pt_present_history', 'pt_pain_score'
        }
        case.refresh_from_db()
        assert case.status == CaseStatusChoices.PENDING

    def test_empty_course_rejects_use(self, course, case):
        use_sessions(course, 5)
        entries_before = ledger(course).count()

        with pytest.raises(InsufficientSessionsError):
            use_sessions(course, 1, case=case)

        course.refresh_from_db()
        assert ledger(course).count() == entries_before
        assert course.status == CourseStatusChoices.COMPLETED
        assert course.remaining_sessions == 0


@pytest.mark.django_db
class TestLinkCourse:

    def test_link_course_then_complete_uses_it(self, patient, clinic_main, course, pt_user, soap_payload):
        case = create_case(
            patient=patient,
            source_clinic=clinic_main,
            target_clinic=clinic_main,
            diagnosis='Hip pain',
            purpose='Physiotherapy',
        )

        link_course_to_case(case.id, course.id, pt_user)
        transition_case(case.id, 'ACCEPTED', pt_user)
        transition_case(case.id, 'COMPLETED', pt_user, soap_payload)

        course.refresh_from_db()
        assert course.used_sessions == 1

    def test_cannot_link_other_patients_course(self, patient, other_patient, clinic_main, pt_user):
        case = create_case(
            patient=patient,
            source_clinic=clinic_main,
            target_clinic=clinic_main,
            diagnosis='Hip pain',
            purpose='Physiotherapy',
        )
        foreign_course = Course.objects.create(
            course_code='CRS-0002',
            course_name='Other package',
            patient=other_patient,
            clinic=clinic_main,
            total_sessions=3,
        )

        with pytest.raises(ValidationError):
            link_course_to_case(case.id, foreign_course.id, pt_user)

    def test_cannot_switch_course_with_unreturned_session(self, completed_case, patient, clinic_main, admin_user):
        transition_case(completed_case.id, 'ACCEPTED', admin_user, {'reason': 'Wrong package'})
        second_course = Course.objects.create(
            course_code='CRS-0003',
            course_name='Second package',
            patient=patient,
            clinic=clinic_main,
            total_sessions=10,
        )

        with pytest.raises(ValidationError):
            link_course_to_case(completed_case.id, second_course.id, admin_user)
