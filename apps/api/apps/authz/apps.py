"""Authz app configuration."""
from django.apps import AppConfig


class AuthzConfig(AppConfig):
    """Users, roles and role-based permissions."""
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.authz'
    verbose_name = 'Authorization'
