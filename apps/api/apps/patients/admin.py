from django.contrib import admin

from .models import Patient


@admin.register(Patient)
class PatientAdmin(admin.ModelAdmin):
    list_display = ['hn', 'last_name', 'first_name', 'clinic', 'phone', 'is_active', 'created_at']
    list_filter = ['is_active', 'gender', 'clinic']
    search_fields = ['hn', 'first_name', 'last_name', 'phone']
    readonly_fields = ['id', 'created_at', 'updated_at']
    fieldsets = [
        ('Personal Information', {
            'fields': ['hn', 'first_name', 'last_name', 'date_of_birth', 'gender']
        }),
        ('Contact', {
            'fields': ['phone', 'email', 'clinic']
        }),
        ('Metadata', {
            'fields': ['id', 'is_active', 'created_at', 'updated_at']
        }),
    ]
