"""
Course models: courses, course_usage_history

A course is a pre-paid package of physiotherapy sessions. Its counters
(used/remaining) only move through the ledger services in
``apps.courses.services``, each movement appending one immutable
``CourseUsageEntry``.
"""
import uuid

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _


class CourseStatusChoices(models.TextChoices):
    """
    Course status.

    - ACTIVE: sessions may be used
    - COMPLETED: no sessions remaining (reactivated by a return)
    - EXPIRED: past validity, set by staff
    - CANCELLED: terminal, no further use
    """
    ACTIVE = 'ACTIVE', _('Active')
    COMPLETED = 'COMPLETED', _('Completed')
    EXPIRED = 'EXPIRED', _('Expired')
    CANCELLED = 'CANCELLED', _('Cancelled')


class CourseUsageActionChoices(models.TextChoices):
    """
    Ledger entry types. ``session_delta`` is the change in used sessions.

    - USE: delta > 0
    - RETURN: delta < 0, compensates one USE (``reversed_entry``)
    - ADJUST: manual correction, either sign
    """
    USE = 'USE', _('Use')
    RETURN = 'RETURN', _('Return')
    ADJUST = 'ADJUST', _('Adjust')


class Course(models.Model):
    """
    Pre-paid session package purchased by a patient.

    Business Rules:
    - remaining_sessions = total_sessions - used_sessions
    - used_sessions >= 0 and remaining_sessions >= 0
    - course reaches COMPLETED when remaining hits 0
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    course_code = models.CharField(_('Course Code'), max_length=50, unique=True)
    course_name = models.CharField(_('Course Name'), max_length=200)
    course_description = models.TextField(_('Description'), blank=True, default='')

    patient = models.ForeignKey(
        'patients.Patient',
        on_delete=models.PROTECT,
        related_name='courses',
        verbose_name=_('Patient')
    )
    clinic = models.ForeignKey(
        'core.Clinic',
        on_delete=models.PROTECT,
        related_name='courses',
        verbose_name=_('Clinic'),
        help_text=_('Clinic where the course was purchased')
    )

    total_sessions = models.PositiveIntegerField(_('Total Sessions'))
    used_sessions = models.IntegerField(_('Used Sessions'), default=0)
    remaining_sessions = models.IntegerField(_('Remaining Sessions'))

    course_price = models.DecimalField(_('Course Price'), max_digits=10, decimal_places=2, default=0)
    price_per_session = models.DecimalField(
        _('Price per Session'),
        max_digits=10,
        decimal_places=2,
        default=0
    )
    purchase_date = models.DateField(_('Purchase Date'), default=timezone.localdate)
    expiry_date = models.DateField(_('Expiry Date'), null=True, blank=True)

    status = models.CharField(
        _('Status'),
        max_length=20,
        choices=CourseStatusChoices.choices,
        default=CourseStatusChoices.ACTIVE
    )
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
    updated_at = models.DateTimeField(_('Updated At'), auto_now=True)

    class Meta:
        db_table = 'courses'
        ordering = ['-purchase_date', '-created_at']
        verbose_name = _('Course')
        verbose_name_plural = _('Courses')
        constraints = [
            models.CheckConstraint(
                condition=models.Q(used_sessions__gte=0),
                name='course_used_sessions_non_negative'
            ),
            models.CheckConstraint(
                condition=models.Q(remaining_sessions__gte=0),
                name='course_remaining_sessions_non_negative'
            ),
            models.CheckConstraint(
                condition=models.Q(
                    remaining_sessions=models.F('total_sessions') - models.F('used_sessions')
                ),
                name='course_sessions_balance'
            ),
        ]
        indexes = [
            models.Index(fields=['patient', 'status'], name='idx_course_patient_status'),
            models.Index(fields=['clinic'], name='idx_course_clinic'),
        ]

    def __str__(self):
        return f"{self.course_code} - {self.course_name} ({self.remaining_sessions}/{self.total_sessions})"

    @property
    def is_usable(self):
        """Sessions can be consumed from this course right now."""
        return self.status == CourseStatusChoices.ACTIVE and self.remaining_sessions > 0

    def clean(self):
        """Validate session counters."""
        super().clean()

        errors = {}
        if self.used_sessions is not None and self.used_sessions < 0:
            errors['used_sessions'] = 'Used sessions cannot be negative'
        if self.remaining_sessions is not None and self.remaining_sessions < 0:
            errors['remaining_sessions'] = 'Remaining sessions cannot be negative'
        if (
            self.total_sessions is not None
            and self.remaining_sessions is not None
            and self.total_sessions != self.used_sessions + self.remaining_sessions
        ):
            errors['remaining_sessions'] = (
                f'Sessions out of balance: total {self.total_sessions} != '
                f'used {self.used_sessions} + remaining {self.remaining_sessions}'
            )
        if errors:
            raise ValidationError(errors)

    def save(self, *args, **kwargs):
        """
        Override save to enforce full_clean() validation.

        remaining_sessions defaults to total - used on creation.
        """
        if self.remaining_sessions is None and self.total_sessions is not None:
            self.remaining_sessions = self.total_sessions - (self.used_sessions or 0)
        if not kwargs.pop('skip_validation', False):
            self.full_clean()
        super().save(*args, **kwargs)


class CourseUsageEntry(models.Model):
    """
    Immutable ledger row for a course session movement.

    Business Rules:
    - session_delta != 0, positive for USE, negative for RETURN
    - a RETURN points at the USE it compensates; each USE is returned at most once
    - rows are never updated or deleted
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    course = models.ForeignKey(
        Course,
        on_delete=models.PROTECT,
        related_name='usage_entries',
        verbose_name=_('Course')
    )
    case = models.ForeignKey(
        'clinical.Case',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='course_usage_entries',
        verbose_name=_('PN Case')
    )
    appointment = models.ForeignKey(
        'clinical.Appointment',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='course_usage_entries',
        verbose_name=_('Appointment'),
        help_text=_('Set for appointment-scoped usage (course-linked appointment without a case)')
    )
    bill_reference = models.CharField(_('Bill Reference'), max_length=100, blank=True, default='')

    action_type = models.CharField(
        _('Action Type'),
        max_length=10,
        choices=CourseUsageActionChoices.choices
    )
    session_delta = models.IntegerField(
        _('Session Delta'),
        help_text=_('Change in used sessions: positive for USE, negative for RETURN')
    )
    reversed_entry = models.OneToOneField(
        'self',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='reversal',
        verbose_name=_('Reversed Entry'),
        help_text=_('For RETURN entries: the USE entry being compensated')
    )

    usage_date = models.DateField(_('Usage Date'), default=timezone.localdate)
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
        db_table = 'course_usage_history'
        ordering = ['created_at']
        verbose_name = _('Course Usage Entry')
        verbose_name_plural = _('Course Usage History')
        constraints = [
            models.CheckConstraint(
                condition=~models.Q(session_delta=0),
                name='course_usage_delta_non_zero'
            ),
            models.CheckConstraint(
                condition=(
                    ~models.Q(action_type='USE') | models.Q(session_delta__gt=0)
                ),
                name='course_usage_use_positive'
            ),
            models.CheckConstraint(
                condition=(
                    ~models.Q(action_type='RETURN') | models.Q(session_delta__lt=0)
                ),
                name='course_usage_return_negative'
            ),
        ]
        indexes = [
            models.Index(fields=['course', 'created_at'], name='idx_usage_course'),
            models.Index(fields=['case'], name='idx_usage_case'),
            models.Index(fields=['appointment'], name='idx_usage_appointment'),
            models.Index(fields=['usage_date'], name='idx_usage_date'),
        ]

    def __str__(self):
        return f"{self.get_action_type_display()} {self.session_delta:+d} on {self.course_id}"

    def clean(self):
        """Validate ledger entry rules."""
        super().clean()

        if self.session_delta == 0:
            raise ValidationError({'session_delta': 'Session delta cannot be zero'})

        if self.action_type == CourseUsageActionChoices.USE and self.session_delta < 0:
            raise ValidationError({'session_delta': 'USE entries must have a positive delta'})

        if self.action_type == CourseUsageActionChoices.RETURN:
            if self.session_delta > 0:
                raise ValidationError({'session_delta': 'RETURN entries must have a negative delta'})
            if self.reversed_entry_id and self.reversed_entry.action_type != CourseUsageActionChoices.USE:
                raise ValidationError({'reversed_entry': 'Only USE entries can be returned'})

        if self.action_type != CourseUsageActionChoices.RETURN and self.reversed_entry_id:
            raise ValidationError({'reversed_entry': 'Only RETURN entries reference a reversed entry'})

    def save(self, *args, **kwargs):
        """Append-only: existing rows can never be saved again."""
        if not self._state.adding:
            raise ValidationError('Course usage entries are immutable')
        if not kwargs.pop('skip_validation', False):
            self.full_clean()
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError('Course usage entries cannot be deleted')
