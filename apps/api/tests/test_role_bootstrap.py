"""
Tests for reference data bootstrap: roles (migration) and clinics (seed command).
"""
import importlib

import pytest
from django.apps import apps as django_apps

from apps.authz.models import Role, RoleChoices, UserRole
from apps.authz.permissions import get_role_names, is_privileged

bootstrap = importlib.import_module('apps.authz.migrations.0002_bootstrap_roles')


@pytest.mark.django_db
class TestRoleBootstrap:
    """The fixed roles are created by migrations."""

    def test_roles_exist_after_migrations(self):
        names = set(Role.objects.values_list('name', flat=True))

        assert {RoleChoices.ADMIN, RoleChoices.CLINIC, RoleChoices.PT} <= names

    def test_bootstrap_is_idempotent(self):
        bootstrap.create_roles(django_apps, None)
        bootstrap.create_roles(django_apps, None)

        for name in bootstrap.ROLE_NAMES:
            assert Role.objects.filter(name=name).count() == 1

    def test_reverse_keeps_roles_in_use(self, clinic_user):
        bootstrap.remove_unused_roles(django_apps, None)

        assert Role.objects.filter(name=RoleChoices.CLINIC).exists()
        assert not Role.objects.filter(name=RoleChoices.PT).exists()


@pytest.mark.django_db
class TestRoleResolution:

    def test_role_names(self, pt_user):
        assert get_role_names(pt_user) == {RoleChoices.PT}

    def test_admin_role_is_privileged(self, admin_user, clinic_user, pt_user):
        assert is_privileged(admin_user)
        assert not is_privileged(clinic_user)
        assert not is_privileged(pt_user)

    def test_superuser_is_privileged_without_role(self, django_user_model):
        user = django_user_model.objects.create_superuser(email='root@test.com', password='testpass123')

        assert not UserRole.objects.filter(user=user).exists()
        assert is_privileged(user)

    def test_nobody_is_privileged(self):
        assert not is_privileged(None)


@pytest.mark.django_db
class TestSeedClinics:

    def test_creates_default_clinics_once(self):
        from django.core.management import call_command

        from apps.core.models import Clinic

        call_command('seed_clinics')
        call_command('seed_clinics')

        assert set(Clinic.objects.values_list('code', flat=True)) >= {'CL001', 'CL002', 'CL003'}
        assert Clinic.objects.filter(code='CL001').count() == 1
