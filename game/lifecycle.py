import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from django.conf import settings
from django.utils import timezone

from .errors import DuplicateDiscovery, InvalidRequest, NotFound
from .state import SessionState, TreasureInfo, elapsed_seconds, is_active
from .stores import SessionStore, TreasureCatalog
from .validator import ALREADY_FOUND, INVALID_CODE, OUT_OF_SEQUENCE, ScanDecision, ScanValidator, reject

logger = logging.getLogger(__name__)

COMPLETION_MESSAGE = "🏆 Congratulations! You have completed the treasure hunt!"
NEXT_TREASURE_HINT = "Look for the next treasure!"


@dataclass(frozen=True)
class ScanResult:
    success: bool
    message: str
    reason: Optional[str] = None
    expected_ordinal: Optional[int] = None
    treasure: Optional[TreasureInfo] = None
    clue: Optional[str] = None
    is_game_complete: Optional[bool] = None

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "message": self.message}
        if not self.success:
            data["reason"] = self.reason
            if self.expected_ordinal is not None:
                data["expectedOrdinal"] = self.expected_ordinal
            return data
        data["treasure"] = {
            "id": self.treasure.id,
            "ordinal": self.treasure.ordinal,
            "name": self.treasure.name,
        }
        data["clue"] = self.clue
        data["isGameComplete"] = self.is_game_complete
        return data


def rejection_message(decision: ScanDecision) -> str:
    if decision.reason == INVALID_CODE:
        return "Invalid QR code or treasure not found for this hunt"
    if decision.reason == ALREADY_FOUND:
        return "You have already found this treasure! Look for the next one."
    if decision.reason == OUT_OF_SEQUENCE:
        return (
            f"This is treasure #{decision.scanned_ordinal}, "
            f"but you need to find treasure #{decision.expected_ordinal} first!"
        )
    return "Scan rejected"


def _clean_player_name(player_name) -> str:
    max_length = getattr(settings, "GAME_PLAYER_NAME_MAX_LENGTH", 50)
    if not isinstance(player_name, str) or not player_name.strip():
        raise InvalidRequest("Player name must not be empty")
    cleaned = player_name.strip()
    if len(cleaned) > max_length:
        raise InvalidRequest(f"Player name must be at most {max_length} characters")
    return cleaned


class GameSessionManager:
    """Owns every state transition of a game session.

    active -> completed (last treasure found), active -> abandoned. Both end
    states are terminal. Each mutation runs in one store transaction with the
    session row re-read under lock.
    """

    def __init__(self, catalog: TreasureCatalog, store: SessionStore, validator: Optional[ScanValidator] = None):
        self.catalog = catalog
        self.store = store
        self.validator = validator or ScanValidator(catalog)

    def start(self, hunt_id: int, player_name: str) -> SessionState:
        player_name = _clean_player_name(player_name)
        hunt = self.catalog.get_hunt(hunt_id)
        if hunt is None:
            raise NotFound(f"Hunt with ID {hunt_id} not found")
        if not hunt.treasures:
            raise InvalidRequest("Hunt must have at least one treasure to start")

        ordinals = sorted(t.ordinal for t in hunt.treasures)
        if ordinals != list(range(1, len(ordinals) + 1)):
            logger.error("Hunt %s has non contiguous ordinals %s", hunt_id, ordinals)
            raise InvalidRequest("Hunt treasures must be numbered 1..N without gaps")

        session = self.store.create_session(
            hunt_id=hunt.id,
            player_name=player_name,
            total_treasures=len(hunt.treasures),
            started_at=timezone.now(),
        )
        logger.info("Session %s started on hunt %s by %r", session.id, hunt.id, player_name)
        return session

    def get_session(self, session_id: int, for_update: bool = False) -> SessionState:
        session = self.store.get_session(session_id, for_update=for_update)
        if session is None:
            raise NotFound(f"Game session with ID {session_id} not found")
        return session

    def scan(self, session_id: int, token: str) -> ScanResult:
        if not isinstance(token, str) or not token.strip():
            raise InvalidRequest("Scanned code must not be empty")
        token = token.strip()

        with self.store.atomic():
            session = self.get_session(session_id, for_update=True)
            if not is_active(session):
                raise InvalidRequest("Game session is not active")

            now = timezone.now()
            decision = self.validator.validate(session, token, now)
            if not decision.success:
                return ScanResult(
                    success=False,
                    message=rejection_message(decision),
                    reason=decision.reason,
                    expected_ordinal=decision.expected_ordinal,
                )

            treasure = decision.treasure
            try:
                self.store.add_discovery(session.id, treasure, now, decision.time_taken_seconds)
            except DuplicateDiscovery:
                logger.warning("Lost race on session %s for treasure %s", session.id, treasure.id)
                lost = reject(ALREADY_FOUND)
                return ScanResult(success=False, message=rejection_message(lost), reason=lost.reason)

            if decision.is_complete:
                total = elapsed_seconds(session.started_at, now)
                self.store.complete_session(session.id, completed_at=now, total_time_seconds=total)
                logger.info("Session %s completed hunt %s in %ss", session.id, session.hunt_id, total)
            else:
                self.store.advance_session(session.id, session.current_ordinal + 1)

        if decision.is_complete:
            message = COMPLETION_MESSAGE
        else:
            message = f"🏴‍☠️ Treasure found! {decision.clue or NEXT_TREASURE_HINT}"
        return ScanResult(
            success=True,
            message=message,
            treasure=treasure,
            clue=decision.clue,
            is_game_complete=decision.is_complete,
        )

    def abandon(self, session_id: int) -> None:
        with self.store.atomic():
            session = self.get_session(session_id, for_update=True)
            if not is_active(session):
                raise InvalidRequest("Game session is not active")
            self.store.abandon_session(session.id)
        logger.info("Session %s abandoned", session_id)

    def delete(self, session_id: int) -> None:
        if not self.store.delete_session(session_id):
            raise NotFound(f"Game session with ID {session_id} not found")
        logger.info("Session %s deleted", session_id)
