from django.db import migrations

ROLE_NAMES = ['admin', 'clinic', 'pt']


def create_roles(apps, schema_editor):
    """Create the fixed roles. Idempotent."""
    Role = apps.get_model('authz', 'Role')
    for name in ROLE_NAMES:
        Role.objects.get_or_create(name=name)


def remove_unused_roles(apps, schema_editor):
    """Delete the fixed roles that no user holds."""
    Role = apps.get_model('authz', 'Role')
    Role.objects.filter(name__in=ROLE_NAMES, user_roles__isnull=True).delete()


class Migration(migrations.Migration):

    dependencies = [
        ('authz', '0001_initial'),
    ]

    operations = [
        migrations.RunPython(create_roles, remove_unused_roles),
    ]
