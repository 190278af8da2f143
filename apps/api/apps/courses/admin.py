from django.contrib import admin

from .models import Course, CourseUsageEntry


class CourseUsageEntryInline(admin.TabularInline):
    model = CourseUsageEntry
    extra = 0
    can_delete = False
    fields = ['action_type', 'session_delta', 'case', 'appointment', 'reversed_entry', 'notes', 'created_by', 'created_at']
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Course)
class CourseAdmin(admin.ModelAdmin):
    """Counters are read-only here; they move through the ledger services."""
    list_display = ['course_code', 'course_name', 'patient', 'clinic', 'used_sessions', 'remaining_sessions', 'total_sessions', 'status']
    list_filter = ['status', 'clinic']
    search_fields = ['course_code', 'course_name', 'patient__hn', 'patient__last_name']
    readonly_fields = ['id', 'used_sessions', 'remaining_sessions', 'created_at', 'updated_at']
    raw_id_fields = ['patient', 'created_by']
    inlines = [CourseUsageEntryInline]

    def get_readonly_fields(self, request, obj=None):
        # total_sessions is fixed once sessions may have moved
        if obj is not None:
            return self.readonly_fields + ['total_sessions']
        return self.readonly_fields


@admin.register(CourseUsageEntry)
class CourseUsageEntryAdmin(admin.ModelAdmin):
    list_display = ['course', 'action_type', 'session_delta', 'case', 'usage_date', 'created_by', 'created_at']
    list_filter = ['action_type', 'usage_date']
    search_fields = ['course__course_code', 'case__pn_code', 'bill_reference']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
