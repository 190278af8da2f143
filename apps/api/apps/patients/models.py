"""
Patient models - patient registry referenced by cases, courses and appointments.
"""
import uuid

from django.db import models
from django.utils.translation import gettext_lazy as _


class Patient(models.Model):
    """
    Registered patient, identified by hospital number (HN).

    Walk-in appointments have no patient row.
    """
    GENDER_CHOICES = [
        ('M', _('Male')),
        ('F', _('Female')),
        ('O', _('Other')),
        ('U', _('Prefer not to say')),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    hn = models.CharField(_('Hospital Number'), max_length=50, unique=True)

    # Demographics
    first_name = models.CharField(_('First Name'), max_length=100)
    last_name = models.CharField(_('Last Name'), max_length=100)
    date_of_birth = models.DateField(_('Date of Birth'), null=True, blank=True)
    gender = models.CharField(_('Gender'), max_length=1, choices=GENDER_CHOICES, default='U')

    # Contact
    phone = models.CharField(_('Phone'), max_length=20, blank=True)
    email = models.EmailField(_('Email'), blank=True)

    clinic = models.ForeignKey(
        'core.Clinic',
        on_delete=models.PROTECT,
        related_name='patients',
        verbose_name=_('Registered at'),
    )

    # Metadata
    created_at = models.DateTimeField(_('Created At'), auto_now_add=True)
    updated_at = models.DateTimeField(_('Updated At'), auto_now=True)
    is_active = models.BooleanField(_('Active'), default=True)

    class Meta:
        db_table = 'patients'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['last_name', 'first_name'], name='idx_patient_name'),
            models.Index(fields=['phone'], name='idx_patient_phone'),
        ]
        verbose_name = _('Patient')
        verbose_name_plural = _('Patients')

    def __str__(self):
        return f"{self.hn} {self.last_name}, {self.first_name}"

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"
