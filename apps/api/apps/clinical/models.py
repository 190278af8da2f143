"""
Clinical models: pn_cases, pn_soap_notes, pn_status_history, appointments

A Case (PN case) is a referral/treatment episode. Its status only changes
through ``apps.clinical.services.transition_case``, which keeps the linked
course ledger, appointment and status history consistent.
"""
import uuid

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.utils.translation import gettext_lazy as _

from apps.core.observability import get_sanitized_logger, metrics

from .exceptions import UnknownStatusError

logger = get_sanitized_logger(__name__)


# ============================================================================
# Enums
# ============================================================================

class CaseStatusChoices(models.TextChoices):
    """
    PN case status with state machine.

    Transitions:
    - PENDING -> ACCEPTED, CANCELLED
    - ACCEPTED -> COMPLETED, CANCELLED
    - ACCEPTED -> PENDING (privileged reversal)
    - COMPLETED -> ACCEPTED (privileged reversal)
    - CANCELLED -> (terminal)
    - IN_PROGRESS is stored for legacy rows only and has no transitions
    """
    PENDING = 'PENDING', _('Pending')
    ACCEPTED = 'ACCEPTED', _('Accepted')
    IN_PROGRESS = 'IN_PROGRESS', _('In Progress')
    COMPLETED = 'COMPLETED', _('Completed')
    CANCELLED = 'CANCELLED', _('Cancelled')

    @classmethod
    def parse(cls, value):
        """Return the member for ``value`` or raise UnknownStatusError."""
        try:
            return cls(value)
        except ValueError:
            raise UnknownStatusError(value) from None


class AppointmentStatusChoices(models.TextChoices):
    SCHEDULED = 'SCHEDULED', _('Scheduled')
    CONFIRMED = 'CONFIRMED', _('Confirmed')
    IN_PROGRESS = 'IN_PROGRESS', _('In Progress')
    COMPLETED = 'COMPLETED', _('Completed')
    CANCELLED = 'CANCELLED', _('Cancelled')
    NO_SHOW = 'NO_SHOW', _('No Show')

    @classmethod
    def parse(cls, value):
        """Return the member for ``value`` or raise UnknownStatusError."""
        try:
            return cls(value)
        except ValueError:
            raise UnknownStatusError(value) from None


class BookingTypeChoices(models.TextChoices):
    WALK_IN = 'WALK_IN', _('Walk-in')
    OLD_PATIENT = 'OLD_PATIENT', _('Registered Patient')


# ============================================================================
# PN Case
# ============================================================================

class Case(models.Model):
    """
    PN case: a referral from a source clinic to a target clinic for treatment.

    Business Rules:
    - status changes only through the case state machine
    - is_reversed may only be set while the case is re-opened in ACCEPTED
    - cases are never deleted; CANCELLED is terminal
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    pn_code = models.CharField(
        _('PN Code'),
        max_length=50,
        unique=True,
        help_text=_('Human-readable code, e.g. PN-20250101093000-0421')
    )

    patient = models.ForeignKey(
        'patients.Patient',
        on_delete=models.PROTECT,
        related_name='cases',
        verbose_name=_('Patient')
    )
    diagnosis = models.TextField(_('Diagnosis'))
    purpose = models.TextField(_('Purpose'))

    status = models.CharField(
        _('Status'),
        max_length=20,
        choices=CaseStatusChoices.choices,
        default=CaseStatusChoices.PENDING
    )

    source_clinic = models.ForeignKey(
        'core.Clinic',
        on_delete=models.PROTECT,
        related_name='referred_cases',
        verbose_name=_('Source Clinic')
    )
    target_clinic = models.ForeignKey(
        'core.Clinic',
        on_delete=models.PROTECT,
        related_name='received_cases',
        verbose_name=_('Target Clinic')
    )
    referring_doctor = models.CharField(_('Referring Doctor'), max_length=200, blank=True, default='')
    assigned_pt = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='assigned_cases',
        verbose_name=_('Assigned PT')
    )
    course = models.ForeignKey(
        'courses.Course',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='cases',
        verbose_name=_('Course')
    )
    appointment = models.ForeignKey(
        'Appointment',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
        verbose_name=_('Booking Appointment'),
        help_text=_('Appointment this case was created from or is linked to')
    )
    notes = models.TextField(_('Notes'), blank=True, default='')

    # Clinical assessment (captured on PENDING -> ACCEPTED)
    pt_diagnosis = models.TextField(_('PT Diagnosis'), blank=True, default='')
    pt_chief_complaint = models.TextField(_('Chief Complaint'), blank=True, default='')
    pt_present_history = models.TextField(_('Present History'), blank=True, default='')
    pt_pain_score = models.PositiveSmallIntegerField(
        _('Pain Score'),
        null=True,
        blank=True,
        validators=[MinValueValidator(0), MaxValueValidator(10)]
    )
    assessed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
        verbose_name=_('Assessed By')
    )
    assessed_at = models.DateTimeField(_('Assessed At'), null=True, blank=True)

    # Lifecycle timestamps
    accepted_at = models.DateTimeField(_('Accepted At'), null=True, blank=True)
    completed_at = models.DateTimeField(_('Completed At'), null=True, blank=True)
    cancelled_at = models.DateTimeField(_('Cancelled At'), null=True, blank=True)
    cancellation_reason = models.TextField(_('Cancellation Reason'), blank=True, default='')

    # Reversal
    is_reversed = models.BooleanField(_('Reversed'), default=False)
    last_reversal_reason = models.TextField(_('Last Reversal Reason'), blank=True, default='')
    last_reversed_at = models.DateTimeField(_('Last Reversed At'), null=True, blank=True)

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
        verbose_name=_('Created By')
    )
    created_at = models.DateTimeField(_('Created At'), auto_now_add=True)
    updated_at = models.DateTimeField(_('Updated At'), auto_now=True)

    class Meta:
        db_table = 'pn_cases'
        ordering = ['-created_at']
        verbose_name = _('PN Case')
        verbose_name_plural = _('PN Cases')
        constraints = [
            models.CheckConstraint(
                condition=models.Q(pt_pain_score__isnull=True) | models.Q(pt_pain_score__lte=10),
                name='case_pain_score_range'
            ),
            models.CheckConstraint(
                condition=models.Q(is_reversed=False) | models.Q(status='ACCEPTED'),
                name='case_reversed_only_while_accepted'
            ),
        ]
        indexes = [
            models.Index(fields=['status'], name='idx_case_status'),
            models.Index(fields=['patient', '-created_at'], name='idx_case_patient'),
            models.Index(fields=['target_clinic', 'status'], name='idx_case_target_clinic'),
            models.Index(fields=['appointment'], name='idx_case_appointment'),
        ]

    # BUSINESS RULE: Allowed status transitions
    _ALLOWED_TRANSITIONS = {
        CaseStatusChoices.PENDING: [CaseStatusChoices.ACCEPTED, CaseStatusChoices.CANCELLED],
        CaseStatusChoices.ACCEPTED: [
            CaseStatusChoices.COMPLETED,
            CaseStatusChoices.CANCELLED,
            CaseStatusChoices.PENDING,
        ],
        CaseStatusChoices.COMPLETED: [CaseStatusChoices.ACCEPTED],
        CaseStatusChoices.IN_PROGRESS: [],
        CaseStatusChoices.CANCELLED: [],  # Terminal
    }

    # BUSINESS RULE: Reversals only privileged actors may request
    _PRIVILEGED_TRANSITIONS = {
        (CaseStatusChoices.ACCEPTED, CaseStatusChoices.PENDING),
        (CaseStatusChoices.COMPLETED, CaseStatusChoices.ACCEPTED),
    }

    def __str__(self):
        return f"{self.pn_code} ({self.status})"

    @classmethod
    def get_valid_transitions(cls):
        """Returns dict: {current_status: [allowed_next_statuses]}"""
        return cls._ALLOWED_TRANSITIONS

    def can_transition_to(self, new_status):
        return new_status in self._ALLOWED_TRANSITIONS.get(self.status, [])

    @classmethod
    def is_reversal(cls, from_status, to_status):
        return (from_status, to_status) in cls._PRIVILEGED_TRANSITIONS

    def clean(self):
        """
        Validate case business rules.

        1. The course must belong to the case's patient
        2. The reversal flag only exists on ACCEPTED cases
        """
        super().clean()

        errors = {}
        if self.course_id and self.patient_id and self.course.patient_id != self.patient_id:
            errors['course'] = 'Course belongs to a different patient'
        if self.is_reversed and self.status != CaseStatusChoices.ACCEPTED:
            errors['is_reversed'] = 'Only accepted cases can carry the reversal flag'
        if errors:
            raise ValidationError(errors)

    def save(self, *args, **kwargs):
        """Override save to enforce full_clean() validation."""
        if not kwargs.pop('skip_validation', False):
            self.full_clean()
        super().save(*args, **kwargs)


class SOAPNote(models.Model):
    """
    SOAP note written when a case is completed.

    Notes are never edited: a reversal followed by re-completion adds a new note.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    case = models.ForeignKey(
        Case,
        on_delete=models.PROTECT,
        related_name='soap_notes',
        verbose_name=_('PN Case')
    )
    subjective = models.TextField(_('Subjective'))
    objective = models.TextField(_('Objective'))
    assessment = models.TextField(_('Assessment'))
    plan = models.TextField(_('Plan'))
    notes = models.TextField(_('Notes'), blank=True, default='')
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
        verbose_name=_('Created By')
    )
    created_at = models.DateTimeField(_('Created At'), auto_now_add=True)

    class Meta:
        db_table = 'pn_soap_notes'
        ordering = ['-created_at']
        verbose_name = _('SOAP Note')
        verbose_name_plural = _('SOAP Notes')

    def __str__(self):
        return f"SOAP {self.case_id} @ {self.created_at:%Y-%m-%d %H:%M}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError('SOAP notes are immutable')
        super().save(*args, **kwargs)


class CaseStatusHistory(models.Model):
    """
    Append-only audit trail of case status changes.

    One row per status mutation, including automatic propagation from
    appointments. Reversal rows carry ``is_reversal``.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    case = models.ForeignKey(
        Case,
        on_delete=models.PROTECT,
        related_name='status_history',
        verbose_name=_('PN Case')
    )
    old_status = models.CharField(_('Old Status'), max_length=20, choices=CaseStatusChoices.choices)
    new_status = models.CharField(_('New Status'), max_length=20, choices=CaseStatusChoices.choices)
    changed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
        verbose_name=_('Changed By'),
        help_text=_('Null for system actions')
    )
    change_reason = models.TextField(_('Reason'), blank=True, default='')
    is_reversal = models.BooleanField(_('Reversal'), default=False)
    created_at = models.DateTimeField(_('Created At'), auto_now_add=True)

    class Meta:
        db_table = 'pn_status_history'
        ordering = ['created_at']
        verbose_name = _('Case Status History')
        verbose_name_plural = _('Case Status History')
        indexes = [
            models.Index(fields=['case', 'created_at'], name='idx_status_history_case'),
        ]

    def __str__(self):
        return f"{self.case_id}: {self.old_status} -> {self.new_status}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError('Status history entries are immutable')
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError('Status history entries cannot be deleted')


# ============================================================================
# Appointment
# ============================================================================

class Appointment(models.Model):
    """
    Calendar slot for a patient (or walk-in) with a physiotherapist.

    Business Rules:
    - end_time must be after start_time
    - registered bookings need a patient, walk-ins need a name
    - the course, if any, belongs to the booked patient
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    patient = models.ForeignKey(
        'patients.Patient',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='appointments',
        verbose_name=_('Patient')
    )
    walk_in_name = models.CharField(_('Walk-in Name'), max_length=200, blank=True, default='')
    walk_in_phone = models.CharField(_('Walk-in Phone'), max_length=50, blank=True, default='')
    walk_in_email = models.EmailField(_('Walk-in Email'), blank=True, default='')
    booking_type = models.CharField(
        _('Booking Type'),
        max_length=20,
        choices=BookingTypeChoices.choices,
        default=BookingTypeChoices.OLD_PATIENT
    )

    clinic = models.ForeignKey(
        'core.Clinic',
        on_delete=models.PROTECT,
        related_name='appointments',
        verbose_name=_('Clinic')
    )
    pt = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='pt_appointments',
        verbose_name=_('Physiotherapist')
    )

    appointment_date = models.DateField(_('Date'))
    start_time = models.TimeField(_('Start Time'))
    end_time = models.TimeField(_('End Time'))

    status = models.CharField(
        _('Status'),
        max_length=20,
        choices=AppointmentStatusChoices.choices,
        default=AppointmentStatusChoices.SCHEDULED
    )
    appointment_type = models.CharField(_('Appointment Type'), max_length=100, blank=True, default='')
    reason = models.TextField(_('Reason'), blank=True, default='')
    notes = models.TextField(_('Notes'), blank=True, default='')

    case = models.ForeignKey(
        Case,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='appointments',
        verbose_name=_('PN Case')
    )
    course = models.ForeignKey(
        'courses.Course',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='appointments',
        verbose_name=_('Course')
    )
    auto_created_pn = models.BooleanField(_('PN Auto-created'), default=False)

    cancellation_reason = models.TextField(_('Cancellation Reason'), blank=True, default='')
    cancelled_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
        verbose_name=_('Cancelled By')
    )
    cancelled_at = models.DateTimeField(_('Cancelled At'), null=True, blank=True)

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
        verbose_name=_('Created By')
    )
    created_at = models.DateTimeField(_('Created At'), auto_now_add=True)
    updated_at = models.DateTimeField(_('Updated At'), auto_now=True)

    class Meta:
        db_table = 'appointments'
        ordering = ['appointment_date', 'start_time']
        verbose_name = _('Appointment')
        verbose_name_plural = _('Appointments')
        indexes = [
            models.Index(fields=['pt', 'appointment_date'], name='idx_appointment_pt_date'),
            models.Index(fields=['clinic', 'appointment_date'], name='idx_appointment_clinic_date'),
            models.Index(fields=['status'], name='idx_appointment_status'),
            models.Index(fields=['case'], name='idx_appointment_case'),
        ]

    # BUSINESS RULE: Allowed status transitions
    _ALLOWED_TRANSITIONS = {
        AppointmentStatusChoices.SCHEDULED: [
            AppointmentStatusChoices.CONFIRMED,
            AppointmentStatusChoices.IN_PROGRESS,
            AppointmentStatusChoices.COMPLETED,
            AppointmentStatusChoices.CANCELLED,
            AppointmentStatusChoices.NO_SHOW,
        ],
        AppointmentStatusChoices.CONFIRMED: [
            AppointmentStatusChoices.IN_PROGRESS,
            AppointmentStatusChoices.COMPLETED,
            AppointmentStatusChoices.CANCELLED,
            AppointmentStatusChoices.NO_SHOW,
        ],
        AppointmentStatusChoices.IN_PROGRESS: [
            AppointmentStatusChoices.COMPLETED,
            AppointmentStatusChoices.CANCELLED,
        ],
        AppointmentStatusChoices.COMPLETED: [],  # Terminal state
        AppointmentStatusChoices.CANCELLED: [],  # Terminal state
        AppointmentStatusChoices.NO_SHOW: [],    # Terminal state
    }

    # BUSINESS RULE: Statuses that occupy the physiotherapist's slot
    _ACTIVE_STATUSES = [AppointmentStatusChoices.SCHEDULED, AppointmentStatusChoices.CONFIRMED]

    def __str__(self):
        who = self.patient or self.walk_in_name or 'walk-in'
        return f"Appointment {self.appointment_date} {self.start_time:%H:%M} - {who}"

    @property
    def is_walk_in(self):
        return self.patient_id is None

    def can_transition_to(self, new_status):
        return new_status in self._ALLOWED_TRANSITIONS.get(self.status, [])

    def clean(self):
        """
        Model-level validation for business rules.

        1. end_time after start_time
        2. registered bookings need a patient, walk-ins need a name
        3. the course belongs to the booked patient
        """
        super().clean()

        errors = {}

        if self.start_time and self.end_time and self.end_time <= self.start_time:
            errors['end_time'] = 'End time must be after start time'

        if self.booking_type == BookingTypeChoices.OLD_PATIENT and not self.patient_id:
            errors['patient'] = 'A registered booking requires a patient'

        if self.booking_type == BookingTypeChoices.WALK_IN and not self.patient_id and not self.walk_in_name:
            errors['walk_in_name'] = 'Walk-in bookings require a name'

        if self.course_id:
            if not self.patient_id:
                errors['course'] = 'Walk-in appointments cannot use a course'
            elif self.course.patient_id != self.patient_id:
                errors['course'] = 'Course belongs to a different patient'

        if errors:
            raise ValidationError(errors)

    @classmethod
    def active_statuses(cls):
        return list(cls._ACTIVE_STATUSES)


# ============================================================================
# Audit Helper Functions
# ============================================================================

def record_status_change(case, old_status, new_status, actor=None, reason='', is_reversal=False):
    """
    Append a CaseStatusHistory row.

    Args:
        case: Case whose status changed
        old_status: Status before the change
        new_status: Status after the change
        actor: User instance or None for system actions
        reason: User-supplied or system reason
        is_reversal: True for privileged reversals

    Returns:
        CaseStatusHistory instance
    """
    entry = CaseStatusHistory.objects.create(
        case=case,
        old_status=old_status,
        new_status=new_status,
        changed_by=actor if actor is not None and actor.is_authenticated else None,
        change_reason=reason or '',
        is_reversal=is_reversal,
    )

    metrics.case_status_history_created_total.labels(
        is_reversal=str(is_reversal).lower()
    ).inc()
    logger.info(
        'Case status history recorded',
        extra={
            'event': 'case_status_history_created',
            'case_id': str(case.id),
            'history_id': str(entry.id),
            'old_status': old_status,
            'new_status': new_status,
            'is_reversal': is_reversal,
        }
    )

    return entry
