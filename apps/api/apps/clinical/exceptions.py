"""
Domain errors for PN cases and the appointment bridge.

Validation-type errors subclass django's ValidationError so they roll back the
enclosing atomic block and surface as HTTP 400. Authorization failures
subclass PermissionDenied (HTTP 403).
"""
from django.core.exceptions import PermissionDenied, ValidationError


class UnknownStatusError(ValidationError):
    """Raised when a status string is not a member of the status type."""

    def __init__(self, value):
        self.value = value
        super().__init__(f'Unknown status: {value!r}', code='unknown_status')


class InvalidTransitionError(ValidationError):
    """Raised when (current, requested) is not an edge of the transition table."""

    def __init__(self, current_status, requested_status, message=None):
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            message or f'Invalid transition from {current_status} to {requested_status}',
            code='invalid_transition'
        )


class IncompleteAssessmentError(ValidationError):
    """Raised when required clinical assessment fields are missing or invalid."""

    default_message = 'Clinical assessment is incomplete'

    def __init__(self, missing_fields, message=None):
        self.missing_fields = list(missing_fields)
        super().__init__(
            message or f"{self.default_message}: {', '.join(self.missing_fields)}",
            code='incomplete_assessment'
        )


class IncompleteSOAPError(IncompleteAssessmentError):
    """Raised when a SOAP note field is missing on case completion."""

    default_message = 'SOAP note is incomplete'


class MissingReasonError(ValidationError):
    """Raised when a cancellation or reversal is requested without a reason."""

    def __init__(self, requested_status):
        self.requested_status = requested_status
        super().__init__(
            f'A reason is required to move a case to {requested_status}',
            code='missing_reason'
        )


class ForbiddenTransitionError(PermissionDenied):
    """Raised when a non-privileged actor requests a privileged operation."""

    def __init__(self, current_status=None, requested_status=None, message=None):
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            message or f'Only administrators may move a case from {current_status} to {requested_status}'
        )


class LinkageInconsistencyError(Exception):
    """
    Raised when appointment.case and case.appointment disagree.

    The pair is never repaired automatically.
    """

    def __init__(self, case_id, appointment_id, message=None):
        self.case_id = case_id
        self.appointment_id = appointment_id
        super().__init__(
            message or f'Appointment {appointment_id} and case {case_id} are not linked to each other'
        )
