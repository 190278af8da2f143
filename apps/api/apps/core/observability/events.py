"""
Domain events logging helpers.

Provides structured event logging for case, course and appointment operations.
"""
from typing import Any, Dict, Optional

from .logging import get_sanitized_logger, sanitize_dict

logger = get_sanitized_logger(__name__)


def log_domain_event(
    event_name: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    entity_ids: Optional[Dict[str, str]] = None,
    result: str = 'success',
    **extra_fields: Any
):
    """
    Log a domain event with structured data.

    Args:
        event_name: Name of the event (e.g., 'case_transition', 'course_session_used')
        entity_type: Type of entity (e.g., 'Case', 'Course')
        entity_id: ID of primary entity
        entity_ids: Dictionary of related entity IDs
        result: Result of operation (success, failure, noop, ...)
        **extra_fields: Additional fields to log (will be sanitized)

    Example:
        log_domain_event(
            'course_session_used',
            entity_type='Course',
            entity_id=str(course.id),
            entity_ids={'course_id': str(course.id), 'case_id': str(case.id)},
            remaining_sessions=4,
        )
    """
    event_data = {
        'event': event_name,
        'result': result,
    }

    if entity_type:
        event_data['entity_type'] = entity_type

    if entity_id:
        event_data['entity_id'] = entity_id

    if entity_ids:
        event_data.update(entity_ids)

    event_data.update(sanitize_dict(extra_fields))

    if result in ['failure', 'error', 'inconsistent']:
        logger.error(f'Domain event: {event_name}', extra=event_data)
    elif result in ['warning', 'blocked', 'rejected']:
        logger.warning(f'Domain event: {event_name}', extra=event_data)
    else:
        logger.info(f'Domain event: {event_name}', extra=event_data)


def log_consistency_checkpoint(
    checkpoint_name: str,
    entity_ids: Dict[str, str],
    checks_passed: Dict[str, bool],
    **extra_fields: Any
):
    """
    Log a consistency checkpoint event.

    Used to verify data integrity at critical points.

    Args:
        checkpoint_name: Name of checkpoint (e.g., 'course_ledger_consistency')
        entity_ids: Dictionary of entity IDs involved
        checks_passed: Dictionary of check results {check_name: passed}
        **extra_fields: Additional context

    Returns:
        True when every check passed.
    """
    all_passed = all(checks_passed.values())

    event_data = {
        'event': 'consistency_checkpoint',
        'checkpoint': checkpoint_name,
        'status': 'passed' if all_passed else 'failed',
        'checks': checks_passed,
    }
    event_data.update(entity_ids)
    event_data.update(sanitize_dict(extra_fields))

    if all_passed:
        logger.info(f'Checkpoint passed: {checkpoint_name}', extra=event_data)
    else:
        logger.error(f'Checkpoint FAILED: {checkpoint_name}', extra=event_data)

    return all_passed


def log_case_transition(case, from_status, to_status, result='success', **extra):
    """Log case status transition event."""
    log_domain_event(
        'case_transition',
        entity_type='Case',
        entity_id=str(case.id),
        entity_ids={'case_id': str(case.id), 'pn_code': case.pn_code},
        result=result,
        from_status=from_status,
        to_status=to_status,
        **extra
    )


def log_course_session_used(entry):
    """Log a USE ledger entry."""
    log_domain_event(
        'course_session_used',
        entity_type='Course',
        entity_id=str(entry.course_id),
        entity_ids=_ledger_entity_ids(entry),
        session_delta=entry.session_delta,
    )


def log_course_session_returned(entry, result='success'):
    """Log a RETURN ledger entry, or a return that found nothing to compensate."""
    log_domain_event(
        'course_session_returned',
        entity_type='Course',
        entity_id=str(entry.course_id),
        entity_ids=_ledger_entity_ids(entry),
        result=result,
        session_delta=entry.session_delta,
    )


def log_course_adjusted(entry, actor):
    """Log a manual ADJUST ledger entry."""
    log_domain_event(
        'course_adjusted',
        entity_type='Course',
        entity_id=str(entry.course_id),
        entity_ids={
            'course_id': str(entry.course_id),
            'entry_id': str(entry.id),
            'actor_id': str(actor.id),
        },
        session_delta=entry.session_delta,
    )


def log_appointment_booked(appointment, case=None, conflicts_count=0):
    """Log appointment booking, with the auto-created case if any."""
    entity_ids = {'appointment_id': str(appointment.id)}
    if case is not None:
        entity_ids['case_id'] = str(case.id)
    log_domain_event(
        'appointment_booked',
        entity_type='Appointment',
        entity_id=str(appointment.id),
        entity_ids=entity_ids,
        result='warning' if conflicts_count else 'success',
        booking_type=appointment.booking_type,
        auto_created_pn=appointment.auto_created_pn,
        conflicts_count=conflicts_count,
    )


def log_appointment_cancelled(appointment, origin):
    """Log appointment cancellation (origin: 'appointment' or 'case')."""
    log_domain_event(
        'appointment_cancelled',
        entity_type='Appointment',
        entity_id=str(appointment.id),
        entity_ids={
            'appointment_id': str(appointment.id),
            'case_id': str(appointment.case_id) if appointment.case_id else None,
        },
        origin=origin,
    )


def log_linkage_inconsistency(case_id, appointment_id, **extra):
    """Log a case/appointment pair whose links disagree."""
    log_domain_event(
        'linkage_inconsistency',
        entity_type='Appointment',
        entity_id=str(appointment_id),
        entity_ids={
            'case_id': str(case_id) if case_id else None,
            'appointment_id': str(appointment_id),
        },
        result='inconsistent',
        **extra
    )


def _ledger_entity_ids(entry):
    entity_ids = {
        'course_id': str(entry.course_id),
        'entry_id': str(entry.id),
    }
    if entry.case_id:
        entity_ids['case_id'] = str(entry.case_id)
    if entry.appointment_id:
        entity_ids['appointment_id'] = str(entry.appointment_id)
    return entity_ids
