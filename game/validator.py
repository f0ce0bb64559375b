import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .state import SessionState, TreasureInfo, elapsed_seconds, has_discovered, latest_discovery
from .stores import TreasureCatalog

logger = logging.getLogger(__name__)

INVALID_CODE = "invalid_code"
ALREADY_FOUND = "already_found"
OUT_OF_SEQUENCE = "out_of_sequence"


@dataclass(frozen=True)
class ScanDecision:
    success: bool
    reason: Optional[str] = None
    expected_ordinal: Optional[int] = None
    scanned_ordinal: Optional[int] = None
    treasure: Optional[TreasureInfo] = None
    is_complete: bool = False
    time_taken_seconds: int = 0

    @property
    def clue(self) -> Optional[str]:
        return self.treasure.clue_text if self.treasure else None


def reject(reason: str, expected_ordinal: Optional[int] = None, scanned_ordinal: Optional[int] = None) -> ScanDecision:
    return ScanDecision(
        success=False, reason=reason, expected_ordinal=expected_ordinal, scanned_ordinal=scanned_ordinal,
    )


def time_since_last_find(session: SessionState, now: datetime) -> int:
    last = latest_discovery(session)
    since = last.discovered_at if last else session.started_at
    return elapsed_seconds(since, now)


class ScanValidator:
    """Classifies a scanned token against an active session.

    Never writes anything: the lifecycle manager applies the decision. The
    caller has already checked that the session is active.
    """

    def __init__(self, catalog: TreasureCatalog):
        self.catalog = catalog

    def validate(self, session: SessionState, token: str, now: datetime) -> ScanDecision:
        treasure = self.catalog.find_treasure(session.hunt_id, token)
        if treasure is None:
            return reject(INVALID_CODE)

        if treasure.ordinal < session.current_ordinal:
            return reject(ALREADY_FOUND)
        if treasure.ordinal > session.current_ordinal:
            return reject(OUT_OF_SEQUENCE, expected_ordinal=session.current_ordinal, scanned_ordinal=treasure.ordinal)

        if has_discovered(session, treasure.id):
            logger.warning(
                "Session %s already holds a discovery for treasure %s at its current ordinal %s",
                session.id, treasure.id, session.current_ordinal,
            )
            return reject(ALREADY_FOUND)

        return ScanDecision(
            success=True,
            treasure=treasure,
            is_complete=treasure.ordinal == session.total_treasures,
            time_taken_seconds=time_since_last_find(session, now),
        )
