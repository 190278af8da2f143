"""
Management command to ensure the default clinics exist.

Usage:
    python manage.py seed_clinics

Idempotent: existing clinics are left untouched.
"""
from django.core.management.base import BaseCommand

from apps.core.models import Clinic

DEFAULT_CLINICS = [
    ('CL001', 'Main Clinic'),
    ('CL002', 'Branch Clinic 2'),
    ('CL003', 'Branch Clinic 3'),
]


class Command(BaseCommand):
    help = 'Create the default clinics (CL001-CL003) if they do not exist'

    def handle(self, *args, **options):
        for code, name in DEFAULT_CLINICS:
            clinic, created = Clinic.objects.get_or_create(code=code, defaults={'name': name})
            if created:
                self.stdout.write(self.style.SUCCESS(f'  ✓ Created clinic: {clinic}'))
            else:
                self.stdout.write(f'  - Clinic exists: {clinic}')
