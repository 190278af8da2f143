"""
Course session ledger.

Every change to a course's session counters goes through this module and
appends exactly one CourseUsageEntry. Counter updates and ledger rows are
written in the same transaction, under a row lock on the course, so the
running sum of ``session_delta`` always equals ``used_sessions``.

Primitives (use_sessions / return_sessions / adjust_sessions) always act.
The idempotent helpers (use_session / return_session) decide whether to act
by scanning the ledger history, never from caller intent.
"""
from typing import Optional

from django.core.exceptions import ValidationError
from django.db import models, transaction

from apps.authz.permissions import is_privileged
from apps.clinical.exceptions import ForbiddenTransitionError
from apps.core.observability import get_sanitized_logger, log_domain_event, metrics
from apps.core.observability.events import (
    log_consistency_checkpoint,
    log_course_adjusted,
    log_course_session_returned,
    log_course_session_used,
)
from apps.core.observability.tracing import trace_span

from .models import (
    Course,
    CourseStatusChoices,
    CourseUsageActionChoices,
    CourseUsageEntry,
)

logger = get_sanitized_logger(__name__)

# Courses in these states accept no new usage
INACTIVE_STATUSES = (CourseStatusChoices.CANCELLED, CourseStatusChoices.EXPIRED)


# ============================================================================
# Errors
# ============================================================================

class InsufficientSessionsError(ValidationError):
    """Raised when a course has fewer remaining sessions than requested."""

    def __init__(self, remaining, requested):
        self.remaining = remaining
        self.requested = requested
        super().__init__(
            f'Insufficient sessions: {remaining} remaining, {requested} requested',
            code='insufficient_sessions'
        )


class OverReturnError(ValidationError):
    """Raised when returning more sessions than have been used."""

    def __init__(self, used, requested):
        self.used = used
        self.requested = requested
        super().__init__(
            f'Cannot return {requested} session(s): only {used} used',
            code='over_return'
        )


class CourseInactiveError(ValidationError):
    """Raised when consuming from a CANCELLED or EXPIRED course."""

    def __init__(self, status):
        self.status = status
        super().__init__(
            f'Course is {status} and cannot be used',
            code='course_inactive'
        )


# ============================================================================
# Helpers
# ============================================================================

def _pk(obj):
    """Accept a model instance or a primary key."""
    return getattr(obj, 'pk', obj)


def _lock_course(course) -> Course:
    """Re-read the course row under SELECT ... FOR UPDATE."""
    return Course.objects.select_for_update().get(pk=_pk(course))


def _sync_counters(target, source: Course):
    """Copy fresh counters back onto the caller's instance."""
    if isinstance(target, Course) and target is not source:
        target.used_sessions = source.used_sessions
        target.remaining_sessions = source.remaining_sessions
        target.status = source.status


def _append_entry(course, action_type, session_delta, created_by=None, **fields) -> CourseUsageEntry:
    entry = CourseUsageEntry(
        course=course,
        action_type=action_type,
        session_delta=session_delta,
        created_by=created_by,
        **fields
    )
    entry.save()
    return entry


def get_outstanding_use(course=None, case=None, appointment=None) -> Optional[CourseUsageEntry]:
    """
    Return the USE entry that has not been compensated by a RETURN.

    Args:
        course: Restrict to one course (instance or id); None searches all courses
        case: Case instance or id the usage was recorded for
        appointment: Appointment instance or id, for appointment-scoped usage
            (only consulted when no case is given)

    Returns:
        The most recent unreturned USE entry, or None
    """
    if case is None and appointment is None:
        raise ValueError('get_outstanding_use requires a case or an appointment')

    entries = CourseUsageEntry.objects.filter(
        action_type=CourseUsageActionChoices.USE,
        reversal__isnull=True,
    )
    if course is not None:
        entries = entries.filter(course_id=_pk(course))
    if case is not None:
        entries = entries.filter(case_id=_pk(case))
    else:
        entries = entries.filter(appointment_id=_pk(appointment), case__isnull=True)

    return entries.order_by('-created_at').first()


# ============================================================================
# Ledger primitives
# ============================================================================

@transaction.atomic
def use_sessions(
    course,
    amount: int = 1,
    case=None,
    appointment=None,
    bill_reference: str = '',
    notes: str = '',
    created_by=None
) -> CourseUsageEntry:
    """
    Deduct sessions from a course and append a USE entry.

    Args:
        course: Course instance or id
        amount: Sessions to deduct (> 0)
        case: Case the sessions are used for (optional)
        appointment: Appointment the sessions are used for (optional)
        bill_reference: External bill number (optional)
        notes: Free text stored on the ledger row
        created_by: Acting user

    Returns:
        The USE CourseUsageEntry

    Raises:
        CourseInactiveError: Course is CANCELLED or EXPIRED
        InsufficientSessionsError: remaining_sessions < amount

    Business Rules:
        1. Counters move by exactly ``amount``
        2. Course moves to COMPLETED when remaining reaches 0
    """
    if amount <= 0:
        raise ValueError('amount must be positive')

    with trace_span('course_use_sessions', attributes={
        'course_id': str(_pk(course)),
        'amount': amount,
    }):
        locked = _lock_course(course)

        if locked.status in INACTIVE_STATUSES:
            metrics.course_ledger_entries_total.labels(
                action_type=CourseUsageActionChoices.USE, result='rejected'
            ).inc()
            log_domain_event(
                'course_use_rejected',
                entity_type='Course',
                entity_id=str(locked.id),
                result='blocked',
                course_status=locked.status,
            )
            raise CourseInactiveError(locked.status)

        if locked.remaining_sessions < amount:
            metrics.course_ledger_entries_total.labels(
                action_type=CourseUsageActionChoices.USE, result='rejected'
            ).inc()
            log_domain_event(
                'course_use_rejected',
                entity_type='Course',
                entity_id=str(locked.id),
                result='blocked',
                remaining_sessions=locked.remaining_sessions,
                requested=amount,
            )
            raise InsufficientSessionsError(locked.remaining_sessions, amount)

        locked.used_sessions += amount
        locked.remaining_sessions -= amount
        if locked.remaining_sessions == 0:
            locked.status = CourseStatusChoices.COMPLETED
        locked.save(update_fields=['used_sessions', 'remaining_sessions', 'status', 'updated_at'])

        entry = _append_entry(
            locked,
            CourseUsageActionChoices.USE,
            amount,
            created_by=created_by,
            case_id=_pk(case),
            appointment_id=_pk(appointment),
            bill_reference=bill_reference,
            notes=notes,
        )

        metrics.course_ledger_entries_total.labels(
            action_type=CourseUsageActionChoices.USE, result='success'
        ).inc()
        log_course_session_used(entry)

        _sync_counters(course, locked)
        return entry


@transaction.atomic
def return_sessions(
    course,
    amount: Optional[int] = None,
    case=None,
    appointment=None,
    reversed_entry: Optional[CourseUsageEntry] = None,
    notes: str = '',
    created_by=None
) -> CourseUsageEntry:
    """
    Give sessions back to a course and append a RETURN entry.

    When ``reversed_entry`` is given the return compensates that USE: the
    amount, case and appointment default to the USE's values.

    Raises:
        OverReturnError: used_sessions would drop below 0
        ValidationError: reversed_entry is not a USE of this course, or is
            already returned

    Business Rules:
        A COMPLETED or EXPIRED course becomes ACTIVE again once it has
        remaining sessions.
    """
    if reversed_entry is not None:
        if reversed_entry.action_type != CourseUsageActionChoices.USE:
            raise ValidationError('Only USE entries can be returned')
        if reversed_entry.course_id != _pk(course):
            raise ValidationError('Reversed entry belongs to a different course')
        if CourseUsageEntry.objects.filter(reversed_entry=reversed_entry).exists():
            raise ValidationError('Usage entry has already been returned')
        if amount is None:
            amount = reversed_entry.session_delta
        if case is None:
            case = reversed_entry.case_id
        if appointment is None:
            appointment = reversed_entry.appointment_id

    if amount is None:
        amount = 1
    if amount <= 0:
        raise ValueError('amount must be positive')

    with trace_span('course_return_sessions', attributes={
        'course_id': str(_pk(course)),
        'amount': amount,
    }):
        locked = _lock_course(course)

        if locked.used_sessions - amount < 0:
            metrics.course_ledger_entries_total.labels(
                action_type=CourseUsageActionChoices.RETURN, result='rejected'
            ).inc()
            log_domain_event(
                'course_return_rejected',
                entity_type='Course',
                entity_id=str(locked.id),
                result='blocked',
                used_sessions=locked.used_sessions,
                requested=amount,
            )
            raise OverReturnError(locked.used_sessions, amount)

        locked.used_sessions -= amount
        locked.remaining_sessions += amount
        if locked.status in (CourseStatusChoices.COMPLETED, CourseStatusChoices.EXPIRED):
            locked.status = CourseStatusChoices.ACTIVE
        locked.save(update_fields=['used_sessions', 'remaining_sessions', 'status', 'updated_at'])

        entry = _append_entry(
            locked,
            CourseUsageActionChoices.RETURN,
            -amount,
            created_by=created_by,
            case_id=_pk(case),
            appointment_id=_pk(appointment),
            reversed_entry=reversed_entry,
            notes=notes,
        )

        metrics.course_ledger_entries_total.labels(
            action_type=CourseUsageActionChoices.RETURN, result='success'
        ).inc()
        log_course_session_returned(entry)

        _sync_counters(course, locked)
        return entry


@transaction.atomic
def adjust_sessions(course, signed_amount: int, reason: str, actor) -> CourseUsageEntry:
    """
    Manual correction of a course's used sessions (administrators only).

    ``signed_amount`` > 0 consumes sessions, < 0 gives them back.

    Raises:
        ForbiddenTransitionError: actor is not privileged
        ValidationError: missing reason or zero amount
        OverReturnError: used_sessions would become negative
        InsufficientSessionsError: remaining_sessions would become negative
    """
    if not is_privileged(actor):
        metrics.course_ledger_entries_total.labels(
            action_type=CourseUsageActionChoices.ADJUST, result='forbidden'
        ).inc()
        raise ForbiddenTransitionError(message='Only administrators may adjust course sessions')

    if not reason or not reason.strip():
        raise ValidationError({'reason': 'A reason is required for manual adjustments'})

    if not signed_amount:
        raise ValidationError({'signed_amount': 'Adjustment amount cannot be zero'})

    with trace_span('course_adjust_sessions', attributes={
        'course_id': str(_pk(course)),
        'amount': signed_amount,
    }):
        locked = _lock_course(course)

        if locked.used_sessions + signed_amount < 0:
            raise OverReturnError(locked.used_sessions, -signed_amount)
        if locked.remaining_sessions - signed_amount < 0:
            raise InsufficientSessionsError(locked.remaining_sessions, signed_amount)

        locked.used_sessions += signed_amount
        locked.remaining_sessions -= signed_amount
        if locked.remaining_sessions == 0 and locked.status == CourseStatusChoices.ACTIVE:
            locked.status = CourseStatusChoices.COMPLETED
        elif locked.remaining_sessions > 0 and locked.status == CourseStatusChoices.COMPLETED:
            locked.status = CourseStatusChoices.ACTIVE
        locked.save(update_fields=['used_sessions', 'remaining_sessions', 'status', 'updated_at'])

        entry = _append_entry(
            locked,
            CourseUsageActionChoices.ADJUST,
            signed_amount,
            created_by=actor,
            notes=reason.strip(),
        )

        metrics.course_ledger_entries_total.labels(
            action_type=CourseUsageActionChoices.ADJUST, result='success'
        ).inc()
        log_course_adjusted(entry, actor)

        _sync_counters(course, locked)
        return entry


# ============================================================================
# Idempotent helpers (used by the case state machine and appointment bridge)
# ============================================================================

@transaction.atomic
def use_session(course_id, case_id=None, actor=None, appointment_id=None, notes: str = '') -> CourseUsageEntry:
    """
    Consume one session for a case, unless one is already consumed.

    IDEMPOTENT: an outstanding (unreturned) USE for the case is returned as
    is. Without a case the usage is scoped to ``appointment_id``.

    Returns:
        The outstanding USE entry, existing or new
    """
    if case_id is None and appointment_id is None:
        raise ValueError('use_session requires a case or an appointment')

    course = _lock_course(course_id)
    existing = get_outstanding_use(course, case=case_id, appointment=appointment_id)
    if existing is not None:
        metrics.course_ledger_entries_total.labels(
            action_type=CourseUsageActionChoices.USE, result='noop'
        ).inc()
        logger.info(
            'Course session already used - idempotent',
            extra={
                'event': 'course_session_use_noop',
                'course_id': str(course.id),
                'entry_id': str(existing.id),
            }
        )
        return existing

    return use_sessions(
        course,
        1,
        case=case_id,
        appointment=appointment_id,
        notes=notes,
        created_by=actor,
    )


@transaction.atomic
def return_session(course_id, case_id=None, actor=None, appointment_id=None, notes: str = '') -> Optional[CourseUsageEntry]:
    """
    Return the outstanding USE for a case.

    IDEMPOTENT: when the case has no outstanding USE nothing is written and
    None is returned. Calling this twice changes the ledger at most once.

    Returns:
        The RETURN entry created, or None
    """
    if case_id is None and appointment_id is None:
        raise ValueError('return_session requires a case or an appointment')

    course = _lock_course(course_id)
    outstanding = get_outstanding_use(course, case=case_id, appointment=appointment_id)
    if outstanding is None:
        metrics.course_ledger_entries_total.labels(
            action_type=CourseUsageActionChoices.RETURN, result='noop'
        ).inc()
        logger.info(
            'No outstanding course usage to return - idempotent',
            extra={
                'event': 'course_session_return_noop',
                'course_id': str(course.id),
                'case_id': str(case_id) if case_id else None,
                'appointment_id': str(appointment_id) if appointment_id else None,
            }
        )
        return None

    return return_sessions(
        course,
        reversed_entry=outstanding,
        notes=notes,
        created_by=actor,
    )


# ============================================================================
# Consistency
# ============================================================================

def verify_course_ledger(course) -> bool:
    """
    Check a course's counters against its ledger.

    Checks:
        - total = used + remaining
        - used >= 0 and remaining >= 0
        - sum(session_delta) = used
        - at most one outstanding USE per case

    Returns:
        True when every check passed
    """
    course = Course.objects.get(pk=_pk(course))
    entries = CourseUsageEntry.objects.filter(course=course)

    delta_sum = entries.aggregate(total=models.Sum('session_delta'))['total'] or 0
    duplicated_cases = (
        entries.filter(
            action_type=CourseUsageActionChoices.USE,
            reversal__isnull=True,
            case__isnull=False,
        )
        .values('case')
        .annotate(outstanding=models.Count('id'))
        .filter(outstanding__gt=1)
        .count()
    )

    passed = log_consistency_checkpoint(
        'course_ledger_consistency',
        entity_ids={'course_id': str(course.id)},
        checks_passed={
            'sessions_balance': course.total_sessions == course.used_sessions + course.remaining_sessions,
            'counters_non_negative': course.used_sessions >= 0 and course.remaining_sessions >= 0,
            'ledger_matches_used': delta_sum == course.used_sessions,
            'single_outstanding_use_per_case': duplicated_cases == 0,
        },
        used_sessions=course.used_sessions,
        ledger_delta_sum=delta_sum,
    )
    if not passed:
        metrics.course_ledger_inconsistency_total.inc()
    return passed
