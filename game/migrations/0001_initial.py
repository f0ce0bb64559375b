import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models

import game.models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Hunt",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("title", models.CharField(max_length=255, verbose_name="Title")),
                ("description", models.TextField(blank=True, verbose_name="Description")),
                ("start_clue", models.TextField(blank=True, help_text="Hint leading to the first treasure", verbose_name="Starting clue")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name="Treasure",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("ordinal", models.PositiveIntegerField(default=1, verbose_name="Ordinal")),
                ("name", models.CharField(blank=True, help_text="Ex: The old fountain", max_length=100, verbose_name="Label")),
                ("scan_token", models.CharField(default=game.models.generate_scan_token, editable=False, max_length=255, unique=True)),
                ("qr_code", models.ImageField(blank=True, null=True, upload_to="qr_codes/")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("hunt", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="treasures", to="game.hunt")),
            ],
            options={
                "ordering": ["ordinal"],
            },
        ),
        migrations.AddConstraint(
            model_name="treasure",
            constraint=models.UniqueConstraint(fields=("hunt", "ordinal"), name="uq_treasure_hunt_ordinal"),
        ),
        migrations.CreateModel(
            name="Clue",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("text", models.CharField(max_length=200, verbose_name="Clue")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("treasure", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="clue", to="game.treasure")),
            ],
        ),
        migrations.CreateModel(
            name="GameSession",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("player_name", models.CharField(max_length=50, verbose_name="Player")),
                ("status", models.CharField(choices=[("active", "Active"), ("completed", "Completed"), ("abandoned", "Abandoned")], default="active", max_length=20)),
                ("current_ordinal", models.PositiveIntegerField(default=1, help_text="Ordinal of the next treasure to find")),
                ("total_treasures", models.PositiveIntegerField(help_text="Hunt size when the session started")),
                ("started_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("total_time_seconds", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("hunt", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="sessions", to="game.hunt")),
            ],
        ),
        migrations.AddIndex(
            model_name="gamesession",
            index=models.Index(fields=["hunt", "status"], name="game_session_hunt_status_idx"),
        ),
        migrations.CreateModel(
            name="Discovery",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("treasure_ordinal", models.PositiveIntegerField()),
                ("discovered_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("time_taken_seconds", models.PositiveIntegerField(help_text="Since the previous discovery", verbose_name="Time taken (s)")),
                ("session", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="discoveries", to="game.gamesession")),
                ("treasure", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="discoveries", to="game.treasure")),
            ],
            options={
                "ordering": ["discovered_at", "id"],
                "verbose_name_plural": "discoveries",
            },
        ),
        migrations.AddConstraint(
            model_name="discovery",
            constraint=models.UniqueConstraint(fields=("session", "treasure"), name="uq_discovery_session_treasure"),
        ),
    ]
