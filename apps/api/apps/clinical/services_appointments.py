"""
Appointment bridge - keeps appointments and PN cases in step.

Propagation runs both ways and always through this module:
- appointment -> case: completing or cancelling an appointment drives its
  linked case through the case state machine (with ``propagate=False`` so
  the change is not mirrored back)
- case -> appointment: ``mirror_case_status`` is called by the state machine
  after every transition of a linked case

A case and its booking appointment point at each other (``case.appointment``
and ``appointment.case``). When the two links disagree the operation fails
with LinkageInconsistencyError; the pair is never repaired here.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from apps.core.observability import get_sanitized_logger, log_domain_event, metrics
from apps.core.observability.events import (
    log_appointment_booked,
    log_appointment_cancelled,
    log_linkage_inconsistency,
)
from apps.core.observability.tracing import trace_span
from apps.courses.models import CourseUsageEntry
from apps.courses.services import get_outstanding_use, return_session, use_session

from .exceptions import InvalidTransitionError, LinkageInconsistencyError, MissingReasonError
from .models import (
    Appointment,
    AppointmentStatusChoices,
    BookingTypeChoices,
    Case,
    CaseStatusChoices,
)
from .services import TransitionResult, _check_course_for_patient, create_case, transition_case

logger = get_sanitized_logger(__name__)

AUTO_CASE_DEFAULT_DIAGNOSIS = 'Pain relief'
AUTO_CASE_PURPOSE = 'Physiotherapy treatment from appointment booking'

ACCEPTED_FROM_APPOINTMENT = 'Accepted from appointment'
COMPLETED_FROM_APPOINTMENT = 'Completed from appointment'

# Statuses set through update_appointment_status; completion and
# cancellation have their own operations because they propagate.
SIMPLE_STATUS_UPDATES = (
    AppointmentStatusChoices.CONFIRMED,
    AppointmentStatusChoices.IN_PROGRESS,
    AppointmentStatusChoices.NO_SHOW,
)


@dataclass
class BookingResult:
    appointment: Appointment
    case: Optional[Case] = None
    conflicts: List[Appointment] = field(default_factory=list)


@dataclass
class AppointmentResult:
    appointment: Appointment
    case: Optional[Case] = None
    transitions: List[TransitionResult] = field(default_factory=list)
    usage_entry: Optional[CourseUsageEntry] = None


# ============================================================================
# Helpers
# ============================================================================

def _record(operation, result='success'):
    metrics.appointment_bridge_total.labels(operation=operation, result=result).inc()


def _lock_appointment(appointment_id) -> Appointment:
    return Appointment.objects.select_for_update().get(pk=getattr(appointment_id, 'pk', appointment_id))


def _check_linkage(appointment, case):
    """Raise LinkageInconsistencyError unless case.appointment points back."""
    if case.appointment_id != appointment.id or appointment.case_id != case.id:
        log_linkage_inconsistency(
            case.id,
            appointment.id,
            case_appointment_id=str(case.appointment_id) if case.appointment_id else None,
            appointment_case_id=str(appointment.case_id) if appointment.case_id else None,
        )
        _record('linkage_check', 'inconsistent')
        raise LinkageInconsistencyError(case.id, appointment.id)


def _linked_case(appointment) -> Optional[Case]:
    if not appointment.case_id:
        return None
    case = Case.objects.select_for_update().get(pk=appointment.case_id)
    _check_linkage(appointment, case)
    return case


def _require_appointment_transition(appointment, new_status):
    if not appointment.can_transition_to(new_status):
        raise InvalidTransitionError(
            appointment.status,
            new_status,
            message=f'Appointment cannot move from {appointment.status} to {new_status}'
        )


def find_appointment_conflicts(pt, appointment_date, start_time, end_time, exclude_id=None) -> List[Appointment]:
    """
    Active appointments of ``pt`` that overlap the given slot.

    Overlap occurs when start1 < end2 and start2 < end1 on the same date.
    Only SCHEDULED/CONFIRMED appointments occupy a slot. Advisory only:
    callers decide whether to go ahead.

    Returns:
        List of overlapping appointments (empty without a pt)
    """
    if pt is None:
        return []

    qs = Appointment.objects.filter(
        pt_id=getattr(pt, 'pk', pt),
        appointment_date=appointment_date,
        status__in=Appointment.active_statuses(),
        start_time__lt=end_time,
        end_time__gt=start_time,
    )
    if exclude_id is not None:
        qs = qs.exclude(pk=exclude_id)
    return list(qs.order_by('start_time'))


# ============================================================================
# Booking
# ============================================================================

def book_appointment(appointment_data: Dict[str, Any], created_by, auto_create_case: bool = False) -> BookingResult:
    """
    Book an appointment, optionally auto-creating its PN case.

    Args:
        appointment_data: Appointment field values (patient, clinic, pt,
            appointment_date, start_time, end_time, reason, course, ...).
            ``case`` links an existing case as the booking appointment.
        created_by: Acting user
        auto_create_case: Create a PENDING case for registered patients

    Returns:
        BookingResult(appointment, case, conflicts)

    Business Rules:
        1. Walk-ins (no patient) never get a case
        2. Auto-created cases treat at the appointment's clinic
           (source = target) and use the appointment's course
        3. Overlapping bookings are reported, not refused
        4. An existing case without a course adopts the appointment's course;
           a case tied to a different course refuses the booking
    """
    data = dict(appointment_data)
    status = AppointmentStatusChoices.parse(data.pop('status', AppointmentStatusChoices.SCHEDULED))
    if status not in Appointment.active_statuses():
        raise ValidationError({'status': 'New appointments must be SCHEDULED or CONFIRMED'})

    with trace_span('book_appointment', attributes={'auto_create_case': auto_create_case}):
        with transaction.atomic():
            appointment = Appointment(status=status, created_by=created_by, **data)
            if appointment.patient_id is None:
                appointment.booking_type = BookingTypeChoices.WALK_IN
            appointment.full_clean()
            if appointment.course_id:
                _check_course_for_patient(appointment.course, appointment.patient_id)

            conflicts = find_appointment_conflicts(
                appointment.pt_id,
                appointment.appointment_date,
                appointment.start_time,
                appointment.end_time,
            )
            appointment.save()

            case = None
            if appointment.case_id:
                case = _attach_existing_case(appointment)
            elif auto_create_case and appointment.patient_id:
                case = create_case(
                    patient=appointment.patient,
                    source_clinic=appointment.clinic,
                    target_clinic=appointment.clinic,
                    diagnosis=appointment.reason.strip() or AUTO_CASE_DEFAULT_DIAGNOSIS,
                    purpose=AUTO_CASE_PURPOSE,
                    created_by=created_by,
                    assigned_pt=appointment.pt,
                    course=appointment.course,
                    appointment=appointment,
                    notes=f'Auto-created from appointment on {appointment.appointment_date:%Y-%m-%d}',
                )
                appointment.case = case
                appointment.auto_created_pn = True
                appointment.save(update_fields=['case', 'auto_created_pn', 'updated_at'])
            elif auto_create_case:
                logger.info(
                    'Walk-in booking - no PN case created',
                    extra={'event': 'auto_case_skipped', 'appointment_id': str(appointment.id)}
                )

        if conflicts:
            metrics.appointment_conflicts_detected_total.inc(len(conflicts))
        _record('book')
        log_appointment_booked(appointment, case=case, conflicts_count=len(conflicts))

        return BookingResult(appointment=appointment, case=case, conflicts=conflicts)


def _attach_existing_case(appointment) -> Case:
    """Make ``appointment`` the booking appointment of an existing case."""
    case = Case.objects.select_for_update().get(pk=appointment.case_id)

    if case.patient_id != appointment.patient_id:
        raise ValidationError({'case': 'Case belongs to a different patient'})
    if case.status not in (CaseStatusChoices.PENDING, CaseStatusChoices.ACCEPTED):
        raise ValidationError({'case': f'Cannot book an appointment for a {case.status} case'})
    if case.appointment_id and case.appointment_id != appointment.id:
        current = Appointment.objects.filter(pk=case.appointment_id).values_list('status', flat=True).first()
        if current in Appointment.active_statuses() or current == AppointmentStatusChoices.IN_PROGRESS:
            raise ValidationError({'case': 'Case already has an open appointment'})

    update_fields = ['appointment', 'updated_at']
    if appointment.course_id and appointment.course_id != case.course_id:
        if case.course_id:
            raise ValidationError({'course': 'Appointment course differs from the course of its case'})
        # Completion consumes from the case's course, so the case adopts it
        outstanding = get_outstanding_use(case=case)
        if outstanding is not None and outstanding.course_id != appointment.course_id:
            raise ValidationError(
                {'course': 'Case has an unreturned session on another course; cancel or reverse it first'}
            )
        case.course_id = appointment.course_id
        update_fields.append('course')

    case.appointment = appointment
    case.save(update_fields=update_fields)
    return case


# ============================================================================
# Appointment -> case
# ============================================================================

def complete_appointment(appointment_id, actor, payload: Optional[Dict[str, Any]] = None) -> AppointmentResult:
    """
    Complete an appointment and drive its case to COMPLETED.

    A PENDING case is accepted then completed from the same payload
    (assessment fields + SOAP note); an ACCEPTED case is completed; an
    already COMPLETED case is left alone. Appointments with a course but no
    case consume one session scoped to the appointment.

    Raises:
        InvalidTransitionError: appointment cannot complete, or its case is
            CANCELLED
        LinkageInconsistencyError: case and appointment links disagree
        plus any error of the case transitions
    """
    payload = dict(payload or {})

    with trace_span('complete_appointment', attributes={'appointment_id': str(appointment_id)}):
        try:
            with transaction.atomic():
                appointment = _lock_appointment(appointment_id)
                _require_appointment_transition(appointment, AppointmentStatusChoices.COMPLETED)

                transitions = []
                usage_entry = None
                case = _linked_case(appointment)

                if case is not None:
                    if case.status == CaseStatusChoices.PENDING:
                        transitions.append(transition_case(
                            case.id, CaseStatusChoices.ACCEPTED, actor,
                            {**payload, 'reason': ACCEPTED_FROM_APPOINTMENT},
                            propagate=False,
                        ))
                        case = transitions[-1].case
                    if case.status == CaseStatusChoices.ACCEPTED:
                        transitions.append(transition_case(
                            case.id, CaseStatusChoices.COMPLETED, actor,
                            {**payload, 'reason': COMPLETED_FROM_APPOINTMENT},
                            propagate=False,
                        ))
                        case = transitions[-1].case
                    elif case.status != CaseStatusChoices.COMPLETED:
                        raise InvalidTransitionError(case.status, CaseStatusChoices.COMPLETED)
                elif appointment.course_id:
                    usage_entry = use_session(
                        appointment.course_id,
                        actor=actor,
                        appointment_id=appointment.id,
                        notes=f'Used for appointment on {appointment.appointment_date:%Y-%m-%d}',
                    )

                appointment.status = AppointmentStatusChoices.COMPLETED
                appointment.save(update_fields=['status', 'updated_at'])
        except Exception as e:
            _record('complete', 'failure')
            logger.warning(
                'Appointment completion failed',
                extra={
                    'event': 'appointment_complete_failed',
                    'appointment_id': str(appointment_id),
                    'error_type': e.__class__.__name__,
                }
            )
            raise

        _record('complete')
        log_domain_event(
            'appointment_completed',
            entity_type='Appointment',
            entity_id=str(appointment.id),
            entity_ids={
                'appointment_id': str(appointment.id),
                'case_id': str(case.id) if case else None,
            },
            case_transitions=len(transitions),
            course_session_used=usage_entry is not None,
        )
        return AppointmentResult(
            appointment=appointment,
            case=case,
            transitions=transitions,
            usage_entry=usage_entry,
        )


def cancel_appointment(appointment_id, actor, reason: str) -> AppointmentResult:
    """
    Cancel an appointment and its open case.

    The appointment is cancelled first; a PENDING or ACCEPTED linked case is
    then cancelled with reason ``Cancelled from appointment: <reason>``,
    which returns any session it consumed. Appointment-scoped course usage
    is returned as well. COMPLETED cases are left untouched.

    Raises:
        MissingReasonError: no reason given
        InvalidTransitionError: appointment already in a terminal status
        LinkageInconsistencyError: case and appointment links disagree
    """
    reason = (reason or '').strip()
    if not reason:
        raise MissingReasonError(AppointmentStatusChoices.CANCELLED)

    with trace_span('cancel_appointment', attributes={'appointment_id': str(appointment_id)}):
        try:
            with transaction.atomic():
                appointment = _lock_appointment(appointment_id)
                _require_appointment_transition(appointment, AppointmentStatusChoices.CANCELLED)

                appointment.status = AppointmentStatusChoices.CANCELLED
                appointment.cancellation_reason = reason
                appointment.cancelled_by = actor
                appointment.cancelled_at = timezone.now()
                appointment.save(update_fields=[
                    'status', 'cancellation_reason', 'cancelled_by', 'cancelled_at', 'updated_at'
                ])

                transitions = []
                usage_entry = None
                case = _linked_case(appointment)

                if case is not None:
                    if case.status in (CaseStatusChoices.PENDING, CaseStatusChoices.ACCEPTED):
                        transitions.append(transition_case(
                            case.id, CaseStatusChoices.CANCELLED, actor,
                            {'reason': f'Cancelled from appointment: {reason}'},
                            propagate=False,
                        ))
                        case = transitions[-1].case
                elif appointment.course_id:
                    usage_entry = return_session(
                        appointment.course_id,
                        actor=actor,
                        appointment_id=appointment.id,
                        notes='Returned: appointment cancelled',
                    )
        except Exception as e:
            _record('cancel', 'failure')
            logger.warning(
                'Appointment cancellation failed',
                extra={
                    'event': 'appointment_cancel_failed',
                    'appointment_id': str(appointment_id),
                    'error_type': e.__class__.__name__,
                }
            )
            raise

        _record('cancel')
        log_appointment_cancelled(appointment, origin='appointment')
        return AppointmentResult(
            appointment=appointment,
            case=case,
            transitions=transitions,
            usage_entry=usage_entry,
        )


@transaction.atomic
def update_appointment_status(appointment_id, new_status, actor) -> Appointment:
    """
    Confirm, start or mark an appointment as no-show.

    Raises:
        UnknownStatusError: new_status is not an appointment status
        ValidationError: COMPLETED/CANCELLED requested (use
            complete_appointment / cancel_appointment)
        InvalidTransitionError: transition not allowed
    """
    status = AppointmentStatusChoices.parse(new_status)
    if status not in SIMPLE_STATUS_UPDATES:
        raise ValidationError(
            {'status': f'{status} must be set through the complete or cancel operation'}
        )

    appointment = _lock_appointment(appointment_id)
    _require_appointment_transition(appointment, status)

    old_status = appointment.status
    appointment.status = status
    appointment.save(update_fields=['status', 'updated_at'])

    _record('status_update')
    log_domain_event(
        'appointment_status_updated',
        entity_type='Appointment',
        entity_id=str(appointment.id),
        entity_ids={
            'appointment_id': str(appointment.id),
            'actor_id': str(actor.id) if actor else None,
        },
        from_status=old_status,
        to_status=status,
    )
    return appointment


@transaction.atomic
def reschedule_appointment(appointment_id, appointment_date, start_time, end_time, actor, pt=None) -> BookingResult:
    """
    Move an open appointment to a new slot (and optionally another PT).

    Returns:
        BookingResult with the overlapping appointments of the new slot
    """
    appointment = _lock_appointment(appointment_id)
    if appointment.status not in Appointment.active_statuses():
        raise InvalidTransitionError(
            appointment.status,
            appointment.status,
            message=f'Cannot reschedule a {appointment.status} appointment'
        )

    appointment.appointment_date = appointment_date
    appointment.start_time = start_time
    appointment.end_time = end_time
    if pt is not None:
        appointment.pt = pt
    appointment.full_clean()

    conflicts = find_appointment_conflicts(
        appointment.pt_id,
        appointment.appointment_date,
        appointment.start_time,
        appointment.end_time,
        exclude_id=appointment.id,
    )
    appointment.save(update_fields=['appointment_date', 'start_time', 'end_time', 'pt', 'updated_at'])

    if conflicts:
        metrics.appointment_conflicts_detected_total.inc(len(conflicts))
    _record('reschedule')
    log_domain_event(
        'appointment_rescheduled',
        entity_type='Appointment',
        entity_id=str(appointment.id),
        entity_ids={
            'appointment_id': str(appointment.id),
            'actor_id': str(actor.id) if actor else None,
        },
        result='warning' if conflicts else 'success',
        conflicts_count=len(conflicts),
    )

    case = Case.objects.filter(pk=appointment.case_id).first() if appointment.case_id else None
    return BookingResult(appointment=appointment, case=case, conflicts=conflicts)


# ============================================================================
# Case -> appointment
# ============================================================================

def mirror_case_status(case, actor, reason: str = '') -> Optional[Appointment]:
    """
    Reflect a case's new status onto its booking appointment.

    - CANCELLED cancels a SCHEDULED/CONFIRMED appointment with reason
      ``Cancelled from PN case: <reason>``
    - COMPLETED completes a SCHEDULED/CONFIRMED/IN_PROGRESS appointment
    - other statuses leave the appointment alone

    Called by the case state machine inside its transaction.

    Returns:
        The appointment when one is linked, else None
    """
    if not case.appointment_id:
        return None

    appointment = _lock_appointment(case.appointment_id)
    _check_linkage(appointment, case)

    if case.status == CaseStatusChoices.CANCELLED:
        if appointment.status in Appointment.active_statuses():
            appointment.status = AppointmentStatusChoices.CANCELLED
            appointment.cancellation_reason = f'Cancelled from PN case: {reason}'
            appointment.cancelled_by = actor
            appointment.cancelled_at = timezone.now()
            appointment.save(update_fields=[
                'status', 'cancellation_reason', 'cancelled_by', 'cancelled_at', 'updated_at'
            ])
            _record('mirror_cancel')
            log_appointment_cancelled(appointment, origin='case')

    elif case.status == CaseStatusChoices.COMPLETED:
        if appointment.can_transition_to(AppointmentStatusChoices.COMPLETED):
            appointment.status = AppointmentStatusChoices.COMPLETED
            appointment.save(update_fields=['status', 'updated_at'])
            _record('mirror_complete')

    return appointment
