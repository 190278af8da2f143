"""Clinical app configuration."""
from django.apps import AppConfig


class ClinicalConfig(AppConfig):
    """PN cases, appointments, status history."""
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.clinical'
    verbose_name = 'Clinical'
