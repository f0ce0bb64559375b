"""Read-only snapshots of the catalog and of game sessions.

The services only ever see these frozen dataclasses; stores build them from
whatever they persist to. Derived values (progress, current clue) are plain
functions computed on read.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple

from django.db import models


class GameStatus(models.TextChoices):
    ACTIVE = "active", "Active"
    COMPLETED = "completed", "Completed"
    ABANDONED = "abandoned", "Abandoned"


@dataclass(frozen=True)
class TreasureInfo:
    id: int
    hunt_id: int
    ordinal: int
    scan_token: str
    clue_text: str = ""
    name: str = ""


@dataclass(frozen=True)
class HuntInfo:
    id: int
    title: str
    start_clue: str = ""
    treasures: Tuple[TreasureInfo, ...] = ()


@dataclass(frozen=True)
class DiscoveryInfo:
    id: int
    treasure_id: int
    treasure_ordinal: int
    discovered_at: datetime
    time_taken_seconds: int
    treasure: Optional[TreasureInfo] = None


@dataclass(frozen=True)
class SessionState:
    id: int
    hunt_id: int
    player_name: str
    status: str
    current_ordinal: int
    total_treasures: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    total_time_seconds: int = 0
    start_clue: str = ""
    discoveries: Tuple[DiscoveryInfo, ...] = field(default_factory=tuple)


def elapsed_seconds(since: datetime, now: datetime) -> int:
    """Whole seconds between two instants, floored and never negative."""
    return max(0, int((now - since).total_seconds()))


def is_active(session: SessionState) -> bool:
    return session.status == GameStatus.ACTIVE


def latest_discovery(session: SessionState) -> Optional[DiscoveryInfo]:
    if not session.discoveries:
        return None
    return max(session.discoveries, key=lambda d: (d.discovered_at, d.id))


def has_discovered(session: SessionState, treasure_id: int) -> bool:
    return any(d.treasure_id == treasure_id for d in session.discoveries)


def progress(session: SessionState) -> float:
    # current_ordinal stays on the last treasure once completed
    if session.status == GameStatus.COMPLETED:
        return 1.0
    if session.total_treasures <= 0:
        return 0.0
    return (session.current_ordinal - 1) / session.total_treasures


def progress_percentage(session: SessionState) -> int:
    return int(progress(session) * 100 + 0.5)


def current_clue(session: SessionState) -> str:
    """Hint the player should be following right now."""
    last = latest_discovery(session)
    if last is None or last.treasure is None:
        return session.start_clue
    return last.treasure.clue_text
