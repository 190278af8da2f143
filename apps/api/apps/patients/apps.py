"""Patients app configuration."""
from django.apps import AppConfig


class PatientsConfig(AppConfig):
    """Patient registry."""
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.patients'
    verbose_name = 'Patients'
