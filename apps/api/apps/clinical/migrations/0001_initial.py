import uuid

import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('core', '0001_initial'),
        ('patients', '0001_initial'),
        ('courses', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Appointment',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('walk_in_name', models.CharField(blank=True, default='', max_length=200, verbose_name='Walk-in Name')),
                ('walk_in_phone', models.CharField(blank=True, default='', max_length=50, verbose_name='Walk-in Phone')),
                ('walk_in_email', models.EmailField(blank=True, default='', max_length=254, verbose_name='Walk-in Email')),
                ('booking_type', models.CharField(choices=[('WALK_IN', 'Walk-in'), ('OLD_PATIENT', 'Registered Patient')], default='OLD_PATIENT', max_length=20, verbose_name='Booking Type')),
                ('appointment_date', models.DateField(verbose_name='Date')),
                ('start_time', models.TimeField(verbose_name='Start Time')),
                ('end_time', models.TimeField(verbose_name='End Time')),
                ('status', models.CharField(choices=[('SCHEDULED', 'Scheduled'), ('CONFIRMED', 'Confirmed'), ('IN_PROGRESS', 'In Progress'), ('COMPLETED', 'Completed'), ('CANCELLED', 'Cancelled'), ('NO_SHOW', 'No Show')], default='SCHEDULED', max_length=20, verbose_name='Status')),
                ('appointment_type', models.CharField(blank=True, default='', max_length=100, verbose_name='Appointment Type')),
                ('reason', models.TextField(blank=True, default='', verbose_name='Reason')),
                ('notes', models.TextField(blank=True, default='', verbose_name='Notes')),
                ('auto_created_pn', models.BooleanField(default=False, verbose_name='PN Auto-created')),
                ('cancellation_reason', models.TextField(blank=True, default='', verbose_name='Cancellation Reason')),
                ('cancelled_at', models.DateTimeField(blank=True, null=True, verbose_name='Cancelled At')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='Created At')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='Updated At')),
                ('cancelled_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL, verbose_name='Cancelled By')),
                ('clinic', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='appointments', to='core.clinic', verbose_name='Clinic')),
                ('course', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='appointments', to='courses.course', verbose_name='Course')),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL, verbose_name='Created By')),
                ('patient', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='appointments', to='patients.patient', verbose_name='Patient')),
                ('pt', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='pt_appointments', to=settings.AUTH_USER_MODEL, verbose_name='Physiotherapist')),
            ],
            options={
                'verbose_name': 'Appointment',
                'verbose_name_plural': 'Appointments',
                'db_table': 'appointments',
                'ordering': ['appointment_date', 'start_time'],
            },
        ),
        migrations.CreateModel(
            name='Case',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('pn_code', models.CharField(help_text='Human-readable code, e.g. PN-20250101093000-0421', max_length=50, unique=True, verbose_name='PN Code')),
                ('diagnosis', models.TextField(verbose_name='Diagnosis')),
                ('purpose', models.TextField(verbose_name='Purpose')),
                ('status', models.CharField(choices=[('PENDING', 'Pending'), ('ACCEPTED', 'Accepted'), ('IN_PROGRESS', 'In Progress'), ('COMPLETED', 'Completed'), ('CANCELLED', 'Cancelled')], default='PENDING', max_length=20, verbose_name='Status')),
                ('referring_doctor', models.CharField(blank=True, default='', max_length=200, verbose_name='Referring Doctor')),
                ('notes', models.TextField(blank=True, default='', verbose_name='Notes')),
                ('pt_diagnosis', models.TextField(blank=True, default='', verbose_name='PT Diagnosis')),
                ('pt_chief_complaint', models.TextField(blank=True, default='', verbose_name='Chief Complaint')),
                ('pt_present_history', models.TextField(blank=True, default='', verbose_name='Present History')),
                ('pt_pain_score', models.PositiveSmallIntegerField(blank=True, null=True, validators=[django.core.validators.MinValueValidator(0), django.core.validators.MaxValueValidator(10)], verbose_name='Pain Score')),
                ('assessed_at', models.DateTimeField(blank=True, null=True, verbose_name='Assessed At')),
                ('accepted_at', models.DateTimeField(blank=True, null=True, verbose_name='Accepted At')),
                ('completed_at', models.DateTimeField(blank=True, null=True, verbose_name='Completed At')),
                ('cancelled_at', models.DateTimeField(blank=True, null=True, verbose_name='Cancelled At')),
                ('cancellation_reason', models.TextField(blank=True, default='', verbose_name='Cancellation Reason')),
                ('is_reversed', models.BooleanField(default=False, verbose_name='Reversed')),
                ('last_reversal_reason', models.TextField(blank=True, default='', verbose_name='Last Reversal Reason')),
                ('last_reversed_at', models.DateTimeField(blank=True, null=True, verbose_name='Last Reversed At')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='Created At')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='Updated At')),
                ('appointment', models.ForeignKey(blank=True, help_text='Appointment this case was created from or is linked to', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='clinical.appointment', verbose_name='Booking Appointment')),
                ('assessed_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL, verbose_name='Assessed By')),
                ('assigned_pt', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='assigned_cases', to=settings.AUTH_USER_MODEL, verbose_name='Assigned PT')),
                ('course', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='cases', to='courses.course', verbose_name='Course')),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL, verbose_name='Created By')),
                ('patient', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='cases', to='patients.patient', verbose_name='Patient')),
                ('source_clinic', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='referred_cases', to='core.clinic', verbose_name='Source Clinic')),
                ('target_clinic', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='received_cases', to='core.clinic', verbose_name='Target Clinic')),
            ],
            options={
                'verbose_name': 'PN Case',
                'verbose_name_plural': 'PN Cases',
                'db_table': 'pn_cases',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['status'], name='idx_case_status'),
                    models.Index(fields=['patient', '-created_at'], name='idx_case_patient'),
                    models.Index(fields=['target_clinic', 'status'], name='idx_case_target_clinic'),
                    models.Index(fields=['appointment'], name='idx_case_appointment'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('pt_pain_score__isnull', True), ('pt_pain_score__lte', 10), _connector='OR'), name='case_pain_score_range'),
                    models.CheckConstraint(condition=models.Q(('is_reversed', False), ('status', 'ACCEPTED'), _connector='OR'), name='case_reversed_only_while_accepted'),
                ],
            },
        ),
        migrations.AddField(
            model_name='appointment',
            name='case',
            field=models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='appointments', to='clinical.case', verbose_name='PN Case'),
        ),
        migrations.AddIndex(
            model_name='appointment',
            index=models.Index(fields=['pt', 'appointment_date'], name='idx_appointment_pt_date'),
        ),
        migrations.AddIndex(
            model_name='appointment',
            index=models.Index(fields=['clinic', 'appointment_date'], name='idx_appointment_clinic_date'),
        ),
        migrations.AddIndex(
            model_name='appointment',
            index=models.Index(fields=['status'], name='idx_appointment_status'),
        ),
        migrations.AddIndex(
            model_name='appointment',
            index=models.Index(fields=['case'], name='idx_appointment_case'),
        ),
        migrations.CreateModel(
            name='SOAPNote',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('subjective', models.TextField(verbose_name='Subjective')),
                ('objective', models.TextField(verbose_name='Objective')),
                ('assessment', models.TextField(verbose_name='Assessment')),
                ('plan', models.TextField(verbose_name='Plan')),
                ('notes', models.TextField(blank=True, default='', verbose_name='Notes')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='Created At')),
                ('case', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='soap_notes', to='clinical.case', verbose_name='PN Case')),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL, verbose_name='Created By')),
            ],
            options={
                'verbose_name': 'SOAP Note',
                'verbose_name_plural': 'SOAP Notes',
                'db_table': 'pn_soap_notes',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='CaseStatusHistory',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('old_status', models.CharField(choices=[('PENDING', 'Pending'), ('ACCEPTED', 'Accepted'), ('IN_PROGRESS', 'In Progress'), ('COMPLETED', 'Completed'), ('CANCELLED', 'Cancelled')], max_length=20, verbose_name='Old Status')),
                ('new_status', models.CharField(choices=[('PENDING', 'Pending'), ('ACCEPTED', 'Accepted'), ('IN_PROGRESS', 'In Progress'), ('COMPLETED', 'Completed'), ('CANCELLED', 'Cancelled')], max_length=20, verbose_name='New Status')),
                ('change_reason', models.TextField(blank=True, default='', verbose_name='Reason')),
                ('is_reversal', models.BooleanField(default=False, verbose_name='Reversal')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='Created At')),
                ('case', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='status_history', to='clinical.case', verbose_name='PN Case')),
                ('changed_by', models.ForeignKey(blank=True, help_text='Null for system actions', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL, verbose_name='Changed By')),
            ],
            options={
                'verbose_name': 'Case Status History',
                'verbose_name_plural': 'Case Status History',
                'db_table': 'pn_status_history',
                'ordering': ['created_at'],
                'indexes': [models.Index(fields=['case', 'created_at'], name='idx_status_history_case')],
            },
        ),
    ]
