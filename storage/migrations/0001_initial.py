from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="KeyValueEntry",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True, primary_key=True, serialize=False, verbose_name="ID"
                    ),
                ),
                ("key", models.TextField(unique=True)),
                ("value", models.TextField(blank=True, default="")),
                ("version", models.BigIntegerField(db_index=True)),
            ],
            options={
                "ordering": ["key"],
            },
        ),
    ]
