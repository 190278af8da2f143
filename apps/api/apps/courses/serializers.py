"""
Course serializers - packages and their usage ledger (read-only).
"""
from rest_framework import serializers

from apps.courses.models import Course, CourseUsageEntry


class CourseSerializer(serializers.ModelSerializer):
    """Course with live counters"""
    patient_name = serializers.CharField(source='patient.full_name', read_only=True)
    clinic_code = serializers.CharField(source='clinic.code', read_only=True)
    is_usable = serializers.BooleanField(read_only=True)

    class Meta:
        model = Course
        fields = [
            'id',
            'course_code',
            'course_name',
            'course_description',
            'patient',
            'patient_name',
            'clinic',
            'clinic_code',
            'total_sessions',
            'used_sessions',
            'remaining_sessions',
            'course_price',
            'price_per_session',
            'purchase_date',
            'expiry_date',
            'status',
            'is_usable',
            'notes',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields


class CourseUsageEntrySerializer(serializers.ModelSerializer):
    """Ledger row"""
    pn_code = serializers.CharField(source='case.pn_code', read_only=True, default=None)
    reversed_by = serializers.SerializerMethodField()

    class Meta:
        model = CourseUsageEntry
        fields = [
            'id',
            'action_type',
            'session_delta',
            'case',
            'pn_code',
            'appointment',
            'bill_reference',
            'reversed_entry',
            'reversed_by',
            'usage_date',
            'notes',
            'created_by',
            'created_at',
        ]
        read_only_fields = fields

    def get_reversed_by(self, obj):
        reversal = getattr(obj, 'reversal', None)
        return str(reversal.id) if reversal else None


class CourseAdjustSerializer(serializers.Serializer):
    """
    POST /courses/{id}/adjust/

    ``signed_amount`` > 0 consumes sessions, < 0 gives them back.
    """
    signed_amount = serializers.IntegerField()
    reason = serializers.CharField()

    def validate_signed_amount(self, value):
        if value == 0:
            raise serializers.ValidationError('Adjustment amount cannot be zero')
        return value
