"""
Core models: clinic
"""
import uuid

from django.db import models
from django.utils.translation import gettext_lazy as _


class Clinic(models.Model):
    """
    A physiotherapy clinic (branch).

    Clinics are addressed by their short ``code`` (e.g. CL001). The code of
    the clinic that skips PT assessment on case acceptance is configured with
    ``settings.NO_ASSESSMENT_CLINIC_CODE``.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(
        _('Code'),
        max_length=20,
        unique=True,
        help_text=_('Short clinic code, e.g. CL001')
    )
    name = models.CharField(_('Name'), max_length=255)
    address = models.CharField(_('Address'), max_length=500, blank=True, default='')
    phone = models.CharField(_('Phone'), max_length=30, blank=True, default='')
    is_active = models.BooleanField(_('Active'), default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'clinic'
        verbose_name = _('Clinic')
        verbose_name_plural = _('Clinics')
        ordering = ['code']
        indexes = [
            models.Index(fields=['is_active'], name='idx_clinic_active'),
        ]

    def __str__(self):
        return f"{self.code} - {self.name}"
