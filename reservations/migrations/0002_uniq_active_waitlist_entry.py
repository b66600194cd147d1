from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ('reservations', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.AddConstraint(
            model_name='waitlistentry',
            constraint=models.UniqueConstraint(
                condition=models.Q(status='Active'),
                fields=('patient', 'doctor', 'preferred_date'),
                name='uniq_active_waitlist_entry',
            ),
        ),
    ]
