import uuid
from io import BytesIO

import qrcode
from django.conf import settings
from django.core.files.base import ContentFile
from django.db import models
from django.utils import timezone

from .state import GameStatus


def generate_scan_token():
    prefix = getattr(settings, "GAME_SCAN_TOKEN_PREFIX", "treasure-")
    return f"{prefix}{uuid.uuid4()}"


class Hunt(models.Model):
    """A treasure hunt: an ordered trail of treasures."""
    title = models.CharField("Title", max_length=255)
    description = models.TextField("Description", blank=True)
    start_clue = models.TextField("Starting clue", blank=True, help_text="Hint leading to the first treasure")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.title


class Treasure(models.Model):
    """One stop of a hunt, identified by the token printed in its QR code."""
    hunt = models.ForeignKey(Hunt, on_delete=models.CASCADE, related_name='treasures')
    ordinal = models.PositiveIntegerField("Ordinal", default=1)
    name = models.CharField("Label", max_length=100, blank=True, help_text="Ex: The old fountain")
    scan_token = models.CharField(max_length=255, unique=True, default=generate_scan_token, editable=False)
    qr_code = models.ImageField(upload_to='qr_codes/', blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['ordinal']
        constraints = [
            models.UniqueConstraint(fields=['hunt', 'ordinal'], name='uq_treasure_hunt_ordinal'),
        ]

    def __str__(self):
        label = self.name or self.scan_token
        return f"#{self.ordinal} {label} ({self.hunt.title})"

    def save(self, *args, **kwargs):
        if not self.qr_code:
            image = qrcode.make(self.scan_token)
            buffer = BytesIO()
            image.save(buffer, format='PNG')
            self.qr_code.save(f"{self.scan_token}.png", ContentFile(buffer.getvalue()), save=False)
        super().save(*args, **kwargs)


class Clue(models.Model):
    """Text revealed when the treasure is found."""
    treasure = models.OneToOneField(Treasure, on_delete=models.CASCADE, related_name='clue')
    text = models.CharField("Clue", max_length=200)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.text


class GameSession(models.Model):
    """One player's attempt at a hunt."""
    hunt = models.ForeignKey(Hunt, on_delete=models.CASCADE, related_name='sessions')
    player_name = models.CharField("Player", max_length=50)
    status = models.CharField(max_length=20, choices=GameStatus.choices, default=GameStatus.ACTIVE)
    current_ordinal = models.PositiveIntegerField(default=1, help_text="Ordinal of the next treasure to find")
    total_treasures = models.PositiveIntegerField(help_text="Hunt size when the session started")
    started_at = models.DateTimeField(default=timezone.now)
    completed_at = models.DateTimeField(null=True, blank=True)
    total_time_seconds = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=['hunt', 'status'], name='game_session_hunt_status_idx')]

    def __str__(self):
        return f"{self.player_name} - {self.hunt.title} ({self.status})"


class Discovery(models.Model):
    """A treasure found during a session, with the time it took."""
    session = models.ForeignKey(GameSession, on_delete=models.CASCADE, related_name='discoveries')
    treasure = models.ForeignKey(Treasure, on_delete=models.CASCADE, related_name='discoveries')
    treasure_ordinal = models.PositiveIntegerField()
    discovered_at = models.DateTimeField(default=timezone.now)
    time_taken_seconds = models.PositiveIntegerField("Time taken (s)", help_text="Since the previous discovery")

    class Meta:
        ordering = ['discovered_at', 'id']
        verbose_name_plural = 'discoveries'
        constraints = [
            models.UniqueConstraint(fields=['session', 'treasure'], name='uq_discovery_session_treasure'),
        ]
