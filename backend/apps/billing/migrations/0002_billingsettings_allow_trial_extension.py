from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("billing", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="billingsettings",
            name="allow_trial_extension",
            field=models.BooleanField(default=True),
        ),
    ]
