"""Catalog and session persistence behind small capability contracts.

The services are written against ``TreasureCatalog`` and ``SessionStore``;
the ORM classes below are the production implementations.
"""
import logging
from datetime import datetime
from typing import ContextManager, List, Optional, Protocol

from django.db import IntegrityError, transaction

from .errors import DuplicateDiscovery
from .models import Clue, Discovery, GameSession, Hunt, Treasure
from .state import DiscoveryInfo, GameStatus, HuntInfo, SessionState, TreasureInfo

logger = logging.getLogger(__name__)


class TreasureCatalog(Protocol):
    def get_hunt(self, hunt_id: int) -> Optional[HuntInfo]:
        ...

    def find_treasure(self, hunt_id: int, token: str) -> Optional[TreasureInfo]:
        ...


class SessionStore(Protocol):
    def atomic(self) -> ContextManager:
        ...

    def create_session(self, hunt_id: int, player_name: str, total_treasures: int, started_at: datetime) -> SessionState:
        ...

    def get_session(self, session_id: int, for_update: bool = False) -> Optional[SessionState]:
        ...

    def add_discovery(
        self,
        session_id: int,
        treasure: TreasureInfo,
        discovered_at: datetime,
        time_taken_seconds: int,
    ) -> DiscoveryInfo:
        ...

    def advance_session(self, session_id: int, next_ordinal: int) -> None:
        ...

    def complete_session(self, session_id: int, completed_at: datetime, total_time_seconds: int) -> None:
        ...

    def abandon_session(self, session_id: int) -> None:
        ...

    def delete_session(self, session_id: int) -> bool:
        ...

    def count_sessions(self, hunt_id: int) -> int:
        ...

    def completion_times(self, hunt_id: int) -> List[int]:
        ...


def _clue_text(treasure: Treasure) -> str:
    try:
        return treasure.clue.text
    except Clue.DoesNotExist:
        return ""


def treasure_info(treasure: Treasure) -> TreasureInfo:
    return TreasureInfo(
        id=treasure.id,
        hunt_id=treasure.hunt_id,
        ordinal=treasure.ordinal,
        scan_token=treasure.scan_token,
        clue_text=_clue_text(treasure),
        name=treasure.name,
    )


def discovery_info(discovery: Discovery) -> DiscoveryInfo:
    return DiscoveryInfo(
        id=discovery.id,
        treasure_id=discovery.treasure_id,
        treasure_ordinal=discovery.treasure_ordinal,
        discovered_at=discovery.discovered_at,
        time_taken_seconds=discovery.time_taken_seconds,
        treasure=treasure_info(discovery.treasure),
    )


class OrmTreasureCatalog:
    def get_hunt(self, hunt_id):
        hunt = Hunt.objects.filter(pk=hunt_id).first()
        if hunt is None:
            return None
        treasures = hunt.treasures.select_related('clue').order_by('ordinal')
        return HuntInfo(
            id=hunt.id,
            title=hunt.title,
            start_clue=hunt.start_clue,
            treasures=tuple(treasure_info(t) for t in treasures),
        )

    def find_treasure(self, hunt_id, token):
        treasure = (
            Treasure.objects.select_related('clue')
            .filter(hunt_id=hunt_id, scan_token=token)
            .first()
        )
        return treasure_info(treasure) if treasure else None


class OrmSessionStore:
    def atomic(self):
        return transaction.atomic()

    def _snapshot(self, session: GameSession) -> SessionState:
        discoveries = (
            session.discoveries.select_related('treasure__clue')
            .order_by('discovered_at', 'id')
        )
        return SessionState(
            id=session.id,
            hunt_id=session.hunt_id,
            player_name=session.player_name,
            status=session.status,
            current_ordinal=session.current_ordinal,
            total_treasures=session.total_treasures,
            started_at=session.started_at,
            completed_at=session.completed_at,
            total_time_seconds=session.total_time_seconds,
            start_clue=session.hunt.start_clue,
            discoveries=tuple(discovery_info(d) for d in discoveries),
        )

    def create_session(self, hunt_id, player_name, total_treasures, started_at):
        session = GameSession.objects.create(
            hunt_id=hunt_id,
            player_name=player_name,
            total_treasures=total_treasures,
            current_ordinal=1,
            status=GameStatus.ACTIVE,
            started_at=started_at,
        )
        return self._snapshot(session)

    def get_session(self, session_id, for_update=False):
        queryset = GameSession.objects.all()
        if for_update:
            # no select_related here: only the session row gets locked
            queryset = queryset.select_for_update()
        session = queryset.filter(pk=session_id).first()
        if session is None:
            return None
        return self._snapshot(session)

    def add_discovery(self, session_id, treasure, discovered_at, time_taken_seconds):
        try:
            with transaction.atomic():
                discovery = Discovery.objects.create(
                    session_id=session_id,
                    treasure_id=treasure.id,
                    treasure_ordinal=treasure.ordinal,
                    discovered_at=discovered_at,
                    time_taken_seconds=time_taken_seconds,
                )
        except IntegrityError as exc:
            raise DuplicateDiscovery(f"treasure {treasure.id} already recorded for session {session_id}") from exc
        return DiscoveryInfo(
            id=discovery.id,
            treasure_id=treasure.id,
            treasure_ordinal=treasure.ordinal,
            discovered_at=discovered_at,
            time_taken_seconds=time_taken_seconds,
            treasure=treasure,
        )

    def advance_session(self, session_id, next_ordinal):
        GameSession.objects.filter(pk=session_id).update(current_ordinal=next_ordinal)

    def complete_session(self, session_id, completed_at, total_time_seconds):
        GameSession.objects.filter(pk=session_id).update(
            status=GameStatus.COMPLETED,
            completed_at=completed_at,
            total_time_seconds=total_time_seconds,
        )

    def abandon_session(self, session_id):
        GameSession.objects.filter(pk=session_id).update(status=GameStatus.ABANDONED)

    def delete_session(self, session_id):
        with transaction.atomic():
            if not GameSession.objects.filter(pk=session_id).exists():
                return False
            removed, _ = Discovery.objects.filter(session_id=session_id).delete()
            GameSession.objects.filter(pk=session_id).delete()
        logger.debug("Deleted session %s with %d discoveries", session_id, removed)
        return True

    def count_sessions(self, hunt_id):
        return GameSession.objects.filter(hunt_id=hunt_id).count()

    def completion_times(self, hunt_id):
        return list(
            GameSession.objects.filter(hunt_id=hunt_id, status=GameStatus.COMPLETED)
            .values_list('total_time_seconds', flat=True)
        )
