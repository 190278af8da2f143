"""
Clinical serializers for PN cases and appointments.

Write serializers only shape and type-check request data; business rules
live in the case state machine and the appointment bridge.
"""
from rest_framework import serializers

from apps.authz.models import User
from apps.core.models import Clinic
from apps.courses.models import Course
from apps.patients.models import Patient
from apps.clinical.models import (
    Appointment,
    AppointmentStatusChoices,
    Case,
    CaseStatusHistory,
    SOAPNote,
)


# ============================================================================
# Case
# ============================================================================

class SOAPNoteSerializer(serializers.ModelSerializer):
    """Read-only SOAP note"""
    class Meta:
        model = SOAPNote
        fields = ['id', 'subjective', 'objective', 'assessment', 'plan', 'notes', 'created_by', 'created_at']
        read_only_fields = fields


class CaseStatusHistorySerializer(serializers.ModelSerializer):
    """Read-only status history entry"""
    changed_by_name = serializers.SerializerMethodField()

    class Meta:
        model = CaseStatusHistory
        fields = [
            'id',
            'old_status',
            'new_status',
            'changed_by',
            'changed_by_name',
            'change_reason',
            'is_reversal',
            'created_at',
        ]
        read_only_fields = fields

    def get_changed_by_name(self, obj):
        if obj.changed_by is None:
            return 'System'
        return obj.changed_by.full_name


class CaseListSerializer(serializers.ModelSerializer):
    """Lightweight serializer for case list view"""
    patient_name = serializers.CharField(source='patient.full_name', read_only=True)
    target_clinic_code = serializers.CharField(source='target_clinic.code', read_only=True)

    class Meta:
        model = Case
        fields = [
            'id',
            'pn_code',
            'patient',
            'patient_name',
            'status',
            'target_clinic',
            'target_clinic_code',
            'assigned_pt',
            'course',
            'is_reversed',
            'created_at',
        ]
        read_only_fields = fields


class CaseDetailSerializer(serializers.ModelSerializer):
    """Full read-only case with SOAP notes and allowed next statuses"""
    soap_notes = SOAPNoteSerializer(many=True, read_only=True)
    valid_transitions = serializers.SerializerMethodField()

    class Meta:
        model = Case
        fields = [
            'id',
            'pn_code',
            'patient',
            'diagnosis',
            'purpose',
            'status',
            'source_clinic',
            'target_clinic',
            'referring_doctor',
            'assigned_pt',
            'course',
            'appointment',
            'notes',
            'pt_diagnosis',
            'pt_chief_complaint',
            'pt_present_history',
            'pt_pain_score',
            'assessed_by',
            'assessed_at',
            'accepted_at',
            'completed_at',
            'cancelled_at',
            'cancellation_reason',
            'is_reversed',
            'last_reversal_reason',
            'last_reversed_at',
            'soap_notes',
            'valid_transitions',
            'created_by',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields

    def get_valid_transitions(self, obj):
        return list(Case.get_valid_transitions().get(obj.status, []))


class CaseCreateSerializer(serializers.Serializer):
    """Manual referral: creates a PENDING case"""
    patient = serializers.PrimaryKeyRelatedField(queryset=Patient.objects.filter(is_active=True))
    source_clinic = serializers.PrimaryKeyRelatedField(queryset=Clinic.objects.filter(is_active=True))
    target_clinic = serializers.PrimaryKeyRelatedField(queryset=Clinic.objects.filter(is_active=True))
    diagnosis = serializers.CharField()
    purpose = serializers.CharField()
    referring_doctor = serializers.CharField(required=False, allow_blank=True, default='')
    assigned_pt = serializers.PrimaryKeyRelatedField(
        queryset=User.objects.filter(is_active=True), required=False, allow_null=True, default=None
    )
    course = serializers.PrimaryKeyRelatedField(
        queryset=Course.objects.all(), required=False, allow_null=True, default=None
    )
    notes = serializers.CharField(required=False, allow_blank=True, default='')


class ClinicalPayloadSerializer(serializers.Serializer):
    """
    Assessment and SOAP fields shared by case transitions and appointment
    completion. Completeness is checked by the state machine, so every field
    is optional here.
    """
    reason = serializers.CharField(required=False, allow_blank=True)
    pt_diagnosis = serializers.CharField(required=False, allow_blank=True)
    pt_chief_complaint = serializers.CharField(required=False, allow_blank=True)
    pt_present_history = serializers.CharField(required=False, allow_blank=True)
    # Range is validated with the rest of the assessment
    pt_pain_score = serializers.IntegerField(required=False, allow_null=True)
    subjective = serializers.CharField(required=False, allow_blank=True)
    objective = serializers.CharField(required=False, allow_blank=True)
    assessment = serializers.CharField(required=False, allow_blank=True)
    plan = serializers.CharField(required=False, allow_blank=True)
    notes = serializers.CharField(required=False, allow_blank=True)


class CaseTransitionSerializer(ClinicalPayloadSerializer):
    """
    POST /cases/{id}/transition/

    ``status`` stays a plain string: unknown values are rejected by the
    state machine with UnknownStatusError.
    """
    status = serializers.CharField()


class LinkCourseSerializer(serializers.Serializer):
    course_id = serializers.UUIDField()


# ============================================================================
# Appointment
# ============================================================================

class AppointmentListSerializer(serializers.ModelSerializer):
    """Lightweight serializer for appointment list view"""
    patient_name = serializers.SerializerMethodField()

    class Meta:
        model = Appointment
        fields = [
            'id',
            'patient',
            'patient_name',
            'booking_type',
            'clinic',
            'pt',
            'appointment_date',
            'start_time',
            'end_time',
            'status',
            'case',
            'course',
        ]
        read_only_fields = fields

    def get_patient_name(self, obj):
        if obj.patient_id:
            return obj.patient.full_name
        return obj.walk_in_name


class AppointmentDetailSerializer(serializers.ModelSerializer):
    """Full read-only appointment"""
    class Meta:
        model = Appointment
        fields = [
            'id',
            'patient',
            'walk_in_name',
            'walk_in_phone',
            'walk_in_email',
            'booking_type',
            'clinic',
            'pt',
            'appointment_date',
            'start_time',
            'end_time',
            'status',
            'appointment_type',
            'reason',
            'notes',
            'case',
            'course',
            'auto_created_pn',
            'cancellation_reason',
            'cancelled_by',
            'cancelled_at',
            'created_by',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields


class AppointmentBookingSerializer(serializers.ModelSerializer):
    """
    POST /appointments/

    BUSINESS RULE: Status changes go through the complete/cancel/status
    endpoints. Only SCHEDULED or CONFIRMED can be set at booking.
    """
    auto_create_case = serializers.BooleanField(required=False, default=False, write_only=True)
    status = serializers.ChoiceField(
        choices=[AppointmentStatusChoices.SCHEDULED, AppointmentStatusChoices.CONFIRMED],
        required=False,
        default=AppointmentStatusChoices.SCHEDULED,
    )

    class Meta:
        model = Appointment
        fields = [
            'patient',
            'walk_in_name',
            'walk_in_phone',
            'walk_in_email',
            'booking_type',
            'clinic',
            'pt',
            'appointment_date',
            'start_time',
            'end_time',
            'status',
            'appointment_type',
            'reason',
            'notes',
            'case',
            'course',
            'auto_create_case',
        ]

    def validate(self, attrs):
        start_time = attrs.get('start_time')
        end_time = attrs.get('end_time')
        if start_time and end_time and end_time <= start_time:
            raise serializers.ValidationError({'end_time': 'End time must be after start time'})
        return attrs


class AppointmentCompleteSerializer(ClinicalPayloadSerializer):
    """POST /appointments/{id}/complete/"""


class AppointmentCancelSerializer(serializers.Serializer):
    reason = serializers.CharField()


class AppointmentStatusSerializer(serializers.Serializer):
    status = serializers.CharField()


class AppointmentRescheduleSerializer(serializers.Serializer):
    appointment_date = serializers.DateField()
    start_time = serializers.TimeField()
    end_time = serializers.TimeField()
    pt = serializers.PrimaryKeyRelatedField(
        queryset=User.objects.filter(is_active=True), required=False, allow_null=True, default=None
    )

    def validate(self, attrs):
        if attrs['end_time'] <= attrs['start_time']:
            raise serializers.ValidationError({'end_time': 'End time must be after start time'})
        return attrs


class ConflictCheckSerializer(AppointmentRescheduleSerializer):
    """POST /appointments/check-conflicts/"""
    pt = serializers.PrimaryKeyRelatedField(queryset=User.objects.filter(is_active=True))
    exclude_id = serializers.UUIDField(required=False, allow_null=True, default=None)
