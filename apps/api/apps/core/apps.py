"""Core app configuration."""
from django.apps import AppConfig


class CoreConfig(AppConfig):
    """Clinics and the observability toolkit."""
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.core'
    verbose_name = 'Core'
