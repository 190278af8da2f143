"""Courses app configuration."""
from django.apps import AppConfig


class CoursesConfig(AppConfig):
    """Pre-paid session packages and their usage ledger."""
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.courses'
    verbose_name = 'Courses'
