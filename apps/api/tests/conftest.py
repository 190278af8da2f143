"""
Global test fixtures for pytest.

Provides reusable fixtures for the PhysioSync API:
- Clinics CL001-CL003
- Users by role (admin, clinic staff, physiotherapist) and API clients
- Model instances (Patient, Course, Case, Appointment)
"""
from datetime import date, time

import pytest
from rest_framework.test import APIClient

from apps.authz.models import Role, RoleChoices, User, UserRole
from apps.clinical.services import create_case
from apps.core.models import Clinic
from apps.courses.models import Course
from apps.patients.models import Patient


def make_user(email, role_name, clinic=None, **extra):
    user = User.objects.create_user(
        email=email,
        password='testpass123',
        clinic=clinic,
        **extra
    )
    role, _ = Role.objects.get_or_create(name=role_name)
    UserRole.objects.create(user=user, role=role)
    return user


def make_client(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client


# ============================================================================
# Clinics
# ============================================================================

@pytest.fixture
def clinic_main(db):
    """CL001 - the clinic that accepts cases without assessment."""
    return Clinic.objects.get_or_create(code='CL001', defaults={'name': 'Main Clinic'})[0]


@pytest.fixture
def clinic_branch2(db):
    return Clinic.objects.get_or_create(code='CL002', defaults={'name': 'Branch Clinic 2'})[0]


@pytest.fixture
def clinic_branch3(db):
    return Clinic.objects.get_or_create(code='CL003', defaults={'name': 'Branch Clinic 3'})[0]


# ============================================================================
# Users
# ============================================================================

@pytest.fixture
def admin_user(db):
    """Privileged user (ADMIN role)."""
    return make_user('admin@test.com', RoleChoices.ADMIN, first_name='Ada', last_name='Admin')


@pytest.fixture
def clinic_user(db, clinic_main):
    """Front-desk staff (CLINIC role). Not privileged."""
    return make_user('frontdesk@test.com', RoleChoices.CLINIC, clinic=clinic_main)


@pytest.fixture
def pt_user(db, clinic_main):
    """Physiotherapist (PT role). Not privileged."""
    return make_user(
        'pt@test.com',
        RoleChoices.PT,
        clinic=clinic_main,
        first_name='Pat',
        last_name='Therapist',
        license_number='PT-0001',
    )


@pytest.fixture
def other_pt_user(db, clinic_main):
    return make_user('pt2@test.com', RoleChoices.PT, clinic=clinic_main)


# ============================================================================
# API Clients
# ============================================================================

@pytest.fixture
def api_client():
    """Unauthenticated DRF API client."""
    return APIClient()


@pytest.fixture
def admin_client(admin_user):
    return make_client(admin_user)


@pytest.fixture
def clinic_client(clinic_user):
    return make_client(clinic_user)


@pytest.fixture
def pt_client(pt_user):
    return make_client(pt_user)


# ============================================================================
# Domain objects
# ============================================================================

@pytest.fixture
def patient(db, clinic_main):
    return Patient.objects.create(
        hn='HN000001',
        first_name='Somchai',
        last_name='Jaidee',
        phone='0812345678',
        clinic=clinic_main,
    )


@pytest.fixture
def other_patient(db, clinic_main):
    return Patient.objects.create(
        hn='HN000002',
        first_name='Malee',
        last_name='Sukjai',
        clinic=clinic_main,
    )


@pytest.fixture
def course(db, patient, clinic_main, admin_user):
    """Five-session course owned by ``patient``."""
    return Course.objects.create(
        course_code='CRS-0001',
        course_name='Back pain package',
        patient=patient,
        clinic=clinic_main,
        total_sessions=5,
        course_price='5000.00',
        price_per_session='1000.00',
        created_by=admin_user,
    )


@pytest.fixture
def case(db, patient, clinic_main, clinic_branch2, course, admin_user):
    """PENDING case referred CL001 -> CL002 (assessment required) with the course."""
    return create_case(
        patient=patient,
        source_clinic=clinic_main,
        target_clinic=clinic_branch2,
        diagnosis='Low back pain',
        purpose='Physiotherapy',
        created_by=admin_user,
        course=course,
    )


@pytest.fixture
def same_clinic_case(db, patient, clinic_main, course, admin_user):
    """PENDING case treated at its own clinic (no assessment needed)."""
    return create_case(
        patient=patient,
        source_clinic=clinic_main,
        target_clinic=clinic_main,
        diagnosis='Neck pain',
        purpose='Physiotherapy',
        created_by=admin_user,
        course=course,
    )


@pytest.fixture
def assessment_payload():
    return {
        'pt_diagnosis': 'Lumbar strain',
        'pt_chief_complaint': 'Pain when bending',
        'pt_present_history': 'Two weeks after lifting',
        'pt_pain_score': 6,
    }


@pytest.fixture
def soap_payload():
    return {
        'subjective': 'Pain reduced',
        'objective': 'ROM improved',
        'assessment': 'Responding to treatment',
        'plan': 'Continue twice weekly',
    }


@pytest.fixture
def appointment_data(patient, clinic_main, pt_user):
    """Booking data for a registered patient (pass to book_appointment)."""
    return {
        'patient': patient,
        'clinic': clinic_main,
        'pt': pt_user,
        'appointment_date': date(2026, 3, 2),
        'start_time': time(9, 0),
        'end_time': time(10, 0),
        'reason': 'Knee pain',
    }
