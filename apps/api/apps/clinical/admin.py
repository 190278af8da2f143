from django.contrib import admin

from .models import Appointment, Case, CaseStatusHistory, SOAPNote


class SOAPNoteInline(admin.TabularInline):
    model = SOAPNote
    extra = 0
    can_delete = False
    readonly_fields = ['subjective', 'objective', 'assessment', 'plan', 'notes', 'created_by', 'created_at']

    def has_add_permission(self, request, obj=None):
        return False


class CaseStatusHistoryInline(admin.TabularInline):
    model = CaseStatusHistory
    extra = 0
    can_delete = False
    readonly_fields = ['old_status', 'new_status', 'changed_by', 'change_reason', 'is_reversal', 'created_at']

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Case)
class CaseAdmin(admin.ModelAdmin):
    """Read-mostly: status changes go through the case state machine."""
    list_display = ['pn_code', 'patient', 'status', 'source_clinic', 'target_clinic', 'is_reversed', 'created_at']
    list_filter = ['status', 'target_clinic', 'is_reversed']
    search_fields = ['pn_code', 'patient__hn', 'patient__first_name', 'patient__last_name']
    readonly_fields = [
        'id', 'pn_code', 'status', 'accepted_at', 'completed_at', 'cancelled_at',
        'is_reversed', 'last_reversal_reason', 'last_reversed_at', 'created_at', 'updated_at',
    ]
    raw_id_fields = ['patient', 'course', 'appointment', 'assigned_pt', 'assessed_by', 'created_by']
    inlines = [SOAPNoteInline, CaseStatusHistoryInline]


@admin.register(Appointment)
class AppointmentAdmin(admin.ModelAdmin):
    list_display = ['appointment_date', 'start_time', 'end_time', 'patient', 'walk_in_name', 'pt', 'clinic', 'status']
    list_filter = ['status', 'booking_type', 'clinic', 'appointment_date']
    search_fields = ['patient__hn', 'patient__first_name', 'patient__last_name', 'walk_in_name']
    readonly_fields = ['id', 'status', 'auto_created_pn', 'cancelled_by', 'cancelled_at', 'created_at', 'updated_at']
    raw_id_fields = ['patient', 'pt', 'case', 'course', 'created_by']


@admin.register(CaseStatusHistory)
class CaseStatusHistoryAdmin(admin.ModelAdmin):
    list_display = ['case', 'old_status', 'new_status', 'changed_by', 'is_reversal', 'created_at']
    list_filter = ['new_status', 'is_reversal']
    search_fields = ['case__pn_code']

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
