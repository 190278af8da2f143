import uuid

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('clinical', '0001_initial'),
        ('courses', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='CourseUsageEntry',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('bill_reference', models.CharField(blank=True, default='', max_length=100, verbose_name='Bill Reference')),
                ('action_type', models.CharField(choices=[('USE', 'Use'), ('RETURN', 'Return'), ('ADJUST', 'Adjust')], max_length=10, verbose_name='Action Type')),
                ('session_delta', models.IntegerField(help_text='Change in used sessions: positive for USE, negative for RETURN', verbose_name='Session Delta')),
                ('usage_date', models.DateField(default=django.utils.timezone.localdate, verbose_name='Usage Date')),
                ('notes', models.TextField(blank=True, default='', verbose_name='Notes')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='Created At')),
                ('appointment', models.ForeignKey(blank=True, help_text='Set for appointment-scoped usage (course-linked appointment without a case)', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='course_usage_entries', to='clinical.appointment', verbose_name='Appointment')),
                ('case', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='course_usage_entries', to='clinical.case', verbose_name='PN Case')),
                ('course', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='usage_entries', to='courses.course', verbose_name='Course')),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL, verbose_name='Created By')),
                ('reversed_entry', models.OneToOneField(blank=True, help_text='For RETURN entries: the USE entry being compensated', null=True, on_delete=django.db.models.deletion.PROTECT, related_name='reversal', to='courses.courseusageentry', verbose_name='Reversed Entry')),
            ],
            options={
                'verbose_name': 'Course Usage Entry',
                'verbose_name_plural': 'Course Usage History',
                'db_table': 'course_usage_history',
                'ordering': ['created_at'],
                'indexes': [
                    models.Index(fields=['course', 'created_at'], name='idx_usage_course'),
                    models.Index(fields=['case'], name='idx_usage_case'),
                    models.Index(fields=['appointment'], name='idx_usage_appointment'),
                    models.Index(fields=['usage_date'], name='idx_usage_date'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('session_delta', 0), _negated=True), name='course_usage_delta_non_zero'),
                    models.CheckConstraint(condition=models.Q(models.Q(('action_type', 'USE'), _negated=True), ('session_delta__gt', 0), _connector='OR'), name='course_usage_use_positive'),
                    models.CheckConstraint(condition=models.Q(models.Q(('action_type', 'RETURN'), _negated=True), ('session_delta__lt', 0), _connector='OR'), name='course_usage_return_negative'),
                ],
            },
        ),
    ]
