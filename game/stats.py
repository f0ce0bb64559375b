from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from .stores import SessionStore


@dataclass(frozen=True)
class HuntStatistics:
    total_sessions: int = 0
    completed_sessions: int = 0
    average_completion_time: int = 0
    completion_rate: float = 0.0

    def as_dict(self):
        return {
            "totalSessions": self.total_sessions,
            "completedSessions": self.completed_sessions,
            "averageCompletionTime": self.average_completion_time,
            "completionRate": self.completion_rate,
        }


def _round_half_up(value: Decimal, places: str) -> Decimal:
    return value.quantize(Decimal(places), rounding=ROUND_HALF_UP)


def summarize(total_sessions: int, completion_times: Iterable[int]) -> HuntStatistics:
    """Fold raw session counts into the hunt-wide metrics (zeros when empty)."""
    times = list(completion_times)
    completed = len(times)
    average = 0
    if completed:
        average = int(_round_half_up(Decimal(sum(times)) / completed, "1"))
    rate = 0.0
    if total_sessions:
        rate = float(_round_half_up(Decimal(completed) * 100 / total_sessions, "0.01"))
    return HuntStatistics(
        total_sessions=total_sessions,
        completed_sessions=completed,
        average_completion_time=average,
        completion_rate=rate,
    )


def hunt_stats(store: SessionStore, hunt_id: int) -> HuntStatistics:
    total = store.count_sessions(hunt_id)
    if not total:
        return HuntStatistics()
    return summarize(total, store.completion_times(hunt_id))
