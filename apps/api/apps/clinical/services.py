"""
Clinical services - PN case lifecycle.

The case state machine is the only writer of Case.status. A transition
validates its preconditions, applies its side effects (assessment capture,
SOAP note, course ledger), writes one status-history row and, when the case
is linked to an appointment, asks the appointment bridge to mirror the new
status. Everything happens inside one transaction.
"""
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from django.conf import settings
from django.core.exceptions import PermissionDenied, ValidationError
from django.db import transaction
from django.utils import timezone

from apps.authz.permissions import is_privileged
from apps.core.observability import get_sanitized_logger, log_domain_event, metrics
from apps.core.observability.events import log_case_transition
from apps.core.observability.tracing import trace_span
from apps.courses.models import Course, CourseStatusChoices
from apps.courses.services import (
    CourseInactiveError,
    get_outstanding_use,
    return_session,
    use_session,
)

from .assessment import ASSESSMENT_TEXT_FIELDS, PAIN_SCORE_FIELD, clean_assessment, clean_soap, requires_assessment
from .exceptions import ForbiddenTransitionError, InvalidTransitionError, MissingReasonError
from .models import Case, CaseStatusChoices, CaseStatusHistory, SOAPNote, record_status_change

logger = get_sanitized_logger(__name__)

PN_CODE_MAX_ATTEMPTS = 10


@dataclass
class TransitionResult:
    case: Case
    new_status: str
    history_entry: CaseStatusHistory


# ============================================================================
# Case creation
# ============================================================================

def generate_pn_code() -> str:
    """
    Generate a unique PN code: <PREFIX>-YYYYMMDDHHMMSS-NNNN.

    NNNN is random; the code is re-drawn on collision.
    """
    prefix = settings.PN_CODE_PREFIX
    for _ in range(PN_CODE_MAX_ATTEMPTS):
        code = f'{prefix}-{timezone.localtime():%Y%m%d%H%M%S}-{random.randint(0, 9999):04d}'
        if not Case.objects.filter(pn_code=code).exists():
            return code
    raise RuntimeError('Could not generate a unique PN code')


def _check_course_for_patient(course: Optional[Course], patient_id):
    if course is None:
        return
    if course.patient_id != patient_id:
        raise ValidationError({'course': 'Course belongs to a different patient'})
    if course.status == CourseStatusChoices.CANCELLED:
        raise CourseInactiveError(course.status)


@transaction.atomic
def create_case(
    patient,
    source_clinic,
    target_clinic,
    diagnosis: str,
    purpose: str,
    created_by=None,
    referring_doctor: str = '',
    assigned_pt=None,
    course: Optional[Course] = None,
    appointment=None,
    notes: str = '',
) -> Case:
    """
    Create a PENDING case (manual referral or auto-creation from a booking).

    Args:
        patient: Patient being referred
        source_clinic: Referring clinic
        target_clinic: Treating clinic
        diagnosis: Referral diagnosis
        purpose: Purpose of the referral
        created_by: Acting user
        referring_doctor: Free text (optional)
        assigned_pt: Physiotherapist user (optional)
        course: Course to consume sessions from (must belong to patient)
        appointment: Booking appointment back-link (optional)
        notes: Free text (optional)

    Returns:
        The new Case

    Raises:
        ValidationError: Invalid data or course of another patient
        CourseInactiveError: Course is CANCELLED

    No status-history row is written on creation.
    """
    _check_course_for_patient(course, patient.pk)

    case = Case(
        pn_code=generate_pn_code(),
        patient=patient,
        diagnosis=diagnosis,
        purpose=purpose,
        status=CaseStatusChoices.PENDING,
        source_clinic=source_clinic,
        target_clinic=target_clinic,
        referring_doctor=referring_doctor or '',
        assigned_pt=assigned_pt,
        course=course,
        appointment=appointment,
        notes=notes or '',
        created_by=created_by,
    )
    case.save()

    log_domain_event(
        'case_created',
        entity_type='Case',
        entity_id=str(case.id),
        entity_ids={
            'case_id': str(case.id),
            'pn_code': case.pn_code,
            'source_clinic': source_clinic.code,
            'target_clinic': target_clinic.code,
        },
        has_course=course is not None,
        from_appointment=appointment is not None,
    )
    return case


@transaction.atomic
def link_course_to_case(case_id, course_id, actor) -> Case:
    """
    Attach a course to a case so completion consumes a session from it.

    Raises:
        ValidationError: Course of another patient, case cancelled, or the
            case still holds an unreturned session of a different course
        CourseInactiveError: Course is CANCELLED
    """
    case = Case.objects.select_for_update().get(pk=case_id)
    course = Course.objects.get(pk=course_id)

    if case.status == CaseStatusChoices.CANCELLED:
        raise ValidationError('Cannot link a course to a cancelled case')

    _check_course_for_patient(course, case.patient_id)

    outstanding = get_outstanding_use(case=case)
    if outstanding is not None and outstanding.course_id != course.id:
        raise ValidationError(
            'Case has an unreturned session on another course; cancel or reverse it first'
        )

    case.course = course
    case.save(update_fields=['course', 'updated_at'])

    log_domain_event(
        'case_course_linked',
        entity_type='Case',
        entity_id=str(case.id),
        entity_ids={
            'case_id': str(case.id),
            'course_id': str(course.id),
            'actor_id': str(actor.id) if actor else None,
        },
    )
    return case


# ============================================================================
# Transition side effects
# ============================================================================

def _return_outstanding_use(case, actor, note):
    """RETURN the case's unreturned USE, whatever course it was taken from."""
    outstanding = get_outstanding_use(case=case)
    if outstanding is None:
        return None
    return return_session(outstanding.course_id, case.id, actor=actor, notes=note)


def _accept(case, actor, payload, reason, now):
    values = clean_assessment(payload, required=requires_assessment(case))
    for field, value in values.items():
        setattr(case, field, value)
    if values:
        case.assessed_by = actor
        case.assessed_at = now
    case.accepted_at = now


def _reopen_completed(case, actor, payload, reason, now):
    # The session consumed on completion stays used; re-completion reuses it.
    case.is_reversed = True
    case.last_reversal_reason = reason
    case.last_reversed_at = now
    case.completed_at = None


def _complete(case, actor, payload, reason, now):
    soap = clean_soap(payload)
    SOAPNote.objects.create(
        case=case,
        subjective=soap.subjective,
        objective=soap.objective,
        assessment=soap.assessment,
        plan=soap.plan,
        notes=soap.notes,
        created_by=actor,
    )
    if case.course_id:
        use_session(case.course_id, case.id, actor=actor, notes=f'Used for PN case {case.pn_code}')
    case.completed_at = now


def _cancel(case, actor, payload, reason, now):
    _return_outstanding_use(case, actor, f'Returned: PN case {case.pn_code} cancelled')
    case.cancelled_at = now
    case.cancellation_reason = reason


def _revert_to_pending(case, actor, payload, reason, now):
    _return_outstanding_use(case, actor, f'Returned: PN case {case.pn_code} reverted to pending')
    for field in ASSESSMENT_TEXT_FIELDS:
        setattr(case, field, '')
    setattr(case, PAIN_SCORE_FIELD, None)
    case.assessed_by = None
    case.assessed_at = None
    case.accepted_at = None
    case.last_reversal_reason = reason
    case.last_reversed_at = now


_TRANSITION_HANDLERS = {
    (CaseStatusChoices.PENDING, CaseStatusChoices.ACCEPTED): _accept,
    (CaseStatusChoices.PENDING, CaseStatusChoices.CANCELLED): _cancel,
    (CaseStatusChoices.ACCEPTED, CaseStatusChoices.COMPLETED): _complete,
    (CaseStatusChoices.ACCEPTED, CaseStatusChoices.CANCELLED): _cancel,
    (CaseStatusChoices.ACCEPTED, CaseStatusChoices.PENDING): _revert_to_pending,
    (CaseStatusChoices.COMPLETED, CaseStatusChoices.ACCEPTED): _reopen_completed,
}

# Transitions that cannot proceed without a reason
_REASON_REQUIRED = {
    (CaseStatusChoices.PENDING, CaseStatusChoices.CANCELLED),
    (CaseStatusChoices.ACCEPTED, CaseStatusChoices.CANCELLED),
    (CaseStatusChoices.ACCEPTED, CaseStatusChoices.PENDING),
    (CaseStatusChoices.COMPLETED, CaseStatusChoices.ACCEPTED),
}


# ============================================================================
# State machine
# ============================================================================

def transition_case(
    case_id,
    target_status,
    actor,
    payload: Optional[Dict[str, Any]] = None,
    propagate: bool = True,
) -> TransitionResult:
    """
    Move a case to ``target_status`` and apply the transition's side effects.

    Args:
        case_id: Case id (or instance)
        target_status: Requested status string
        actor: Acting user (None for system actions)
        payload: Transition data: ``reason``, assessment fields
            (pt_diagnosis, pt_chief_complaint, pt_present_history,
            pt_pain_score) and SOAP fields (subjective, objective,
            assessment, plan, notes)
        propagate: Mirror the new status onto the linked appointment. The
            appointment bridge passes False when it is the originator.

    Returns:
        TransitionResult(case, new_status, history_entry)

    Raises:
        UnknownStatusError: target_status is not a case status
        InvalidTransitionError: (current, target) not allowed
        ForbiddenTransitionError: reversal by a non-privileged actor
        MissingReasonError: cancellation/reversal without a reason
        IncompleteAssessmentError: assessment required but incomplete
        IncompleteSOAPError: SOAP note incomplete on completion
        InsufficientSessionsError / CourseInactiveError: course cannot be used
        LinkageInconsistencyError: case and appointment links disagree

    Business Rules:
        PENDING -> ACCEPTED      assessment when cross-clinic (see requires_assessment)
        PENDING -> CANCELLED     reason
        ACCEPTED -> COMPLETED    SOAP note; one course session unless one is outstanding
        ACCEPTED -> CANCELLED    reason; outstanding session returned
        ACCEPTED -> PENDING      privileged; outstanding session returned, assessment cleared
        COMPLETED -> ACCEPTED    privileged; session kept, case flagged as reversed
    """
    target = CaseStatusChoices.parse(target_status)
    payload = payload or {}
    case_pk = getattr(case_id, 'pk', case_id)
    start_time = time.time()

    with trace_span('transition_case', attributes={
        'case_id': str(case_pk),
        'to_status': str(target),
    }):
        with transaction.atomic():
            case = Case.objects.select_for_update().get(pk=case_pk)
            current = CaseStatusChoices(case.status)

            try:
                result = _apply_transition(case, current, target, actor, payload, propagate)
            except (ValidationError, PermissionDenied) as e:
                metrics.case_transition_total.labels(
                    from_status=current, to_status=target, result='rejected'
                ).inc()
                log_case_transition(
                    case, current, target,
                    result='rejected',
                    error_type=e.__class__.__name__,
                )
                raise
            except Exception as e:
                metrics.exceptions_total.labels(
                    exception_type=e.__class__.__name__,
                    location='transition_case'
                ).inc()
                logger.error(
                    'Case transition failed',
                    exc_info=True,
                    extra={
                        'event': 'case_transition_failed',
                        'case_id': str(case.id),
                        'from_status': current,
                        'to_status': target,
                        'error_type': e.__class__.__name__,
                    }
                )
                raise

        duration = time.time() - start_time
        metrics.case_transition_duration_seconds.observe(duration)
        metrics.case_transition_total.labels(
            from_status=current, to_status=target, result='success'
        ).inc()
        log_case_transition(
            case, current, target,
            is_reversal=result.history_entry.is_reversal,
            duration_ms=int(duration * 1000),
        )
        return result


def _apply_transition(case, current, target, actor, payload, propagate) -> TransitionResult:
    if not case.can_transition_to(target):
        raise InvalidTransitionError(current, target)

    is_reversal = Case.is_reversal(current, target)
    if is_reversal and not is_privileged(actor):
        raise ForbiddenTransitionError(current, target)

    reason = str(payload.get('reason') or '').strip()
    if (current, target) in _REASON_REQUIRED and not reason:
        raise MissingReasonError(target)

    now = timezone.now()
    _TRANSITION_HANDLERS[(current, target)](case, actor, payload, reason, now)

    if target != CaseStatusChoices.ACCEPTED:
        case.is_reversed = False
    case.status = target
    case.save()

    history_entry = record_status_change(
        case,
        current,
        target,
        actor=actor,
        reason=reason,
        is_reversal=is_reversal,
    )

    if propagate:
        from .services_appointments import mirror_case_status
        mirror_case_status(case, actor, reason)

    return TransitionResult(case=case, new_status=target, history_entry=history_entry)
