import uuid

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('core', '0001_initial'),
        ('patients', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Course',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('course_code', models.CharField(max_length=50, unique=True, verbose_name='Course Code')),
                ('course_name', models.CharField(max_length=200, verbose_name='Course Name')),
                ('course_description', models.TextField(blank=True, default='', verbose_name='Description')),
                ('total_sessions', models.PositiveIntegerField(verbose_name='Total Sessions')),
                ('used_sessions', models.IntegerField(default=0, verbose_name='Used Sessions')),
                ('remaining_sessions', models.IntegerField(verbose_name='Remaining Sessions')),
                ('course_price', models.DecimalField(decimal_places=2, default=0, max_digits=10, verbose_name='Course Price')),
                ('price_per_session', models.DecimalField(decimal_places=2, default=0, max_digits=10, verbose_name='Price per Session')),
                ('purchase_date', models.DateField(default=django.utils.timezone.localdate, verbose_name='Purchase Date')),
                ('expiry_date', models.DateField(blank=True, null=True, verbose_name='Expiry Date')),
                ('status', models.CharField(choices=[('ACTIVE', 'Active'), ('COMPLETED', 'Completed'), ('EXPIRED', 'Expired'), ('CANCELLED', 'Cancelled')], default='ACTIVE', max_length=20, verbose_name='Status')),
                ('notes', models.TextField(blank=True, default='', verbose_name='Notes')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='Created At')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='Updated At')),
                ('clinic', models.ForeignKey(help_text='Clinic where the course was purchased', on_delete=django.db.models.deletion.PROTECT, related_name='courses', to='core.clinic', verbose_name='Clinic')),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL, verbose_name='Created By')),
                ('patient', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='courses', to='patients.patient', verbose_name='Patient')),
            ],
            options={
                'verbose_name': 'Course',
                'verbose_name_plural': 'Courses',
                'db_table': 'courses',
                'ordering': ['-purchase_date', '-created_at'],
                'indexes': [
                    models.Index(fields=['patient', 'status'], name='idx_course_patient_status'),
                    models.Index(fields=['clinic'], name='idx_course_clinic'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('used_sessions__gte', 0)), name='course_used_sessions_non_negative'),
                    models.CheckConstraint(condition=models.Q(('remaining_sessions__gte', 0)), name='course_remaining_sessions_non_negative'),
                    models.CheckConstraint(condition=models.Q(('remaining_sessions', models.F('total_sessions') - models.F('used_sessions'))), name='course_sessions_balance'),
                ],
            },
        ),
    ]
