import datetime
import json
import threading
from contextlib import nullcontext
from dataclasses import replace
from tempfile import TemporaryDirectory
from unittest.mock import patch

from django.contrib.auth.models import User
from django.core.management import CommandError, call_command
from django.db import connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from openpyxl import Workbook

from .errors import DuplicateDiscovery, InvalidRequest, NotFound
from .lifecycle import COMPLETION_MESSAGE, GameSessionManager
from .models import Clue, Discovery, GameSession, Hunt, Treasure
from .state import (
    DiscoveryInfo,
    GameStatus,
    HuntInfo,
    SessionState,
    TreasureInfo,
    current_clue,
    elapsed_seconds,
    progress_percentage,
)
from .stats import summarize
from .stores import OrmSessionStore, OrmTreasureCatalog
from .validator import ALREADY_FOUND, INVALID_CODE, OUT_OF_SEQUENCE, ScanValidator

BASE_TIME = timezone.make_aware(datetime.datetime(2025, 1, 1, 12, 0, 0))


def at(seconds):
    return BASE_TIME + datetime.timedelta(seconds=seconds)


class FakeCatalog:
    def __init__(self):
        self.hunts = {}

    def add_hunt(self, hunt_id, tokens, start_clue="Start at the dock", ordinals=None):
        ordinals = ordinals or range(1, len(tokens) + 1)
        treasures = tuple(
            TreasureInfo(
                id=hunt_id * 100 + ordinal,
                hunt_id=hunt_id,
                ordinal=ordinal,
                scan_token=token,
                clue_text=f"clue {ordinal}",
            )
            for ordinal, token in zip(ordinals, tokens)
        )
        self.hunts[hunt_id] = HuntInfo(id=hunt_id, title=f"Hunt {hunt_id}", start_clue=start_clue, treasures=treasures)
        return self.hunts[hunt_id]

    def get_hunt(self, hunt_id):
        return self.hunts.get(hunt_id)

    def find_treasure(self, hunt_id, token):
        hunt = self.hunts.get(hunt_id)
        if hunt is None:
            return None
        return next((t for t in hunt.treasures if t.scan_token == token), None)


class FakeStore:
    """In-memory SessionStore."""

    def __init__(self, catalog):
        self.catalog = catalog
        self.sessions = {}
        self.discoveries = {}

    def atomic(self):
        return nullcontext()

    def create_session(self, hunt_id, player_name, total_treasures, started_at):
        session_id = len(self.sessions) + 1
        self.sessions[session_id] = SessionState(
            id=session_id,
            hunt_id=hunt_id,
            player_name=player_name,
            status=GameStatus.ACTIVE,
            current_ordinal=1,
            total_treasures=total_treasures,
            started_at=started_at,
            start_clue=self.catalog.get_hunt(hunt_id).start_clue,
        )
        self.discoveries[session_id] = []
        return self.sessions[session_id]

    def get_session(self, session_id, for_update=False):
        session = self.sessions.get(session_id)
        if session is None:
            return None
        return replace(session, discoveries=tuple(self.discoveries[session_id]))

    def add_discovery(self, session_id, treasure, discovered_at, time_taken_seconds):
        found = self.discoveries[session_id]
        if any(d.treasure_id == treasure.id for d in found):
            raise DuplicateDiscovery(treasure.id)
        discovery = DiscoveryInfo(
            id=sum(len(v) for v in self.discoveries.values()) + 1,
            treasure_id=treasure.id,
            treasure_ordinal=treasure.ordinal,
            discovered_at=discovered_at,
            time_taken_seconds=time_taken_seconds,
            treasure=treasure,
        )
        found.append(discovery)
        return discovery

    def _update(self, session_id, **fields):
        self.sessions[session_id] = replace(self.sessions[session_id], **fields)

    def advance_session(self, session_id, next_ordinal):
        self._update(session_id, current_ordinal=next_ordinal)

    def complete_session(self, session_id, completed_at, total_time_seconds):
        self._update(session_id, status=GameStatus.COMPLETED, completed_at=completed_at, total_time_seconds=total_time_seconds)

    def abandon_session(self, session_id):
        self._update(session_id, status=GameStatus.ABANDONED)

    def delete_session(self, session_id):
        if session_id not in self.sessions:
            return False
        del self.discoveries[session_id]
        del self.sessions[session_id]
        return True

    def count_sessions(self, hunt_id):
        return sum(1 for s in self.sessions.values() if s.hunt_id == hunt_id)

    def completion_times(self, hunt_id):
        return [
            s.total_time_seconds for s in self.sessions.values()
            if s.hunt_id == hunt_id and s.status == GameStatus.COMPLETED
        ]


class StaleReadStore(FakeStore):
    """Replays a snapshot read before a concurrent scan committed."""

    stale = None

    def get_session(self, session_id, for_update=False):
        if self.stale is not None:
            return self.stale
        return super().get_session(session_id, for_update)


class ScanValidatorTests(SimpleTestCase):
    def setUp(self):
        self.catalog = FakeCatalog()
        self.catalog.add_hunt(1, ["T1", "T2", "T3"])
        self.catalog.add_hunt(2, ["OTHER"])
        self.validator = ScanValidator(self.catalog)
        self.session = SessionState(
            id=1, hunt_id=1, player_name="Ada", status=GameStatus.ACTIVE,
            current_ordinal=2, total_treasures=3, started_at=BASE_TIME,
        )

    def test_unknown_token_is_invalid_code(self):
        decision = self.validator.validate(self.session, "NOPE", at(10))
        self.assertFalse(decision.success)
        self.assertEqual(decision.reason, INVALID_CODE)

    def test_token_from_another_hunt_is_invalid_code(self):
        decision = self.validator.validate(self.session, "OTHER", at(10))
        self.assertEqual(decision.reason, INVALID_CODE)

    def test_earlier_treasure_is_already_found(self):
        decision = self.validator.validate(self.session, "T1", at(10))
        self.assertEqual(decision.reason, ALREADY_FOUND)
        self.assertIsNone(decision.expected_ordinal)

    def test_later_treasure_is_out_of_sequence(self):
        decision = self.validator.validate(self.session, "T3", at(10))
        self.assertEqual(decision.reason, OUT_OF_SEQUENCE)
        self.assertEqual(decision.expected_ordinal, 2)
        self.assertEqual(decision.scanned_ordinal, 3)

    def test_existing_discovery_at_current_ordinal_is_already_found(self):
        treasure = self.catalog.find_treasure(1, "T2")
        session = replace(self.session, discoveries=(
            DiscoveryInfo(id=9, treasure_id=treasure.id, treasure_ordinal=2, discovered_at=at(5), time_taken_seconds=5),
        ))
        with self.assertLogs("game.validator", level="WARNING"):
            decision = self.validator.validate(session, "T2", at(10))
        self.assertEqual(decision.reason, ALREADY_FOUND)

    def test_match_measures_time_since_start_without_discoveries(self):
        decision = self.validator.validate(self.session, "T2", at(42.9))
        self.assertTrue(decision.success)
        self.assertEqual(decision.time_taken_seconds, 42)
        self.assertEqual(decision.clue, "clue 2")
        self.assertFalse(decision.is_complete)

    def test_match_measures_time_since_latest_discovery(self):
        session = replace(self.session, discoveries=(
            DiscoveryInfo(id=1, treasure_id=101, treasure_ordinal=1, discovered_at=at(30), time_taken_seconds=30),
        ))
        decision = self.validator.validate(session, "T2", at(100))
        self.assertEqual(decision.time_taken_seconds, 70)

    def test_clock_skew_never_gives_negative_time(self):
        decision = self.validator.validate(self.session, "T2", at(-20))
        self.assertEqual(decision.time_taken_seconds, 0)

    def test_last_ordinal_completes(self):
        session = replace(self.session, current_ordinal=3)
        decision = self.validator.validate(session, "T3", at(10))
        self.assertTrue(decision.success)
        self.assertTrue(decision.is_complete)


class GameSessionManagerTests(SimpleTestCase):
    def setUp(self):
        self.catalog = FakeCatalog()
        self.catalog.add_hunt(1, ["T1", "T2"])
        self.catalog.add_hunt(2, [])
        self.store = FakeStore(self.catalog)
        self.manager = GameSessionManager(self.catalog, self.store)

    def _scan(self, session_id, token, seconds):
        with patch("game.lifecycle.timezone.now", return_value=at(seconds)):
            return self.manager.scan(session_id, token)

    def _start(self, hunt_id=1, name="Ada"):
        with patch("game.lifecycle.timezone.now", return_value=BASE_TIME):
            return self.manager.start(hunt_id, name)

    def test_start_creates_active_session_at_first_ordinal(self):
        session = self._start()
        self.assertEqual(session.current_ordinal, 1)
        self.assertEqual(session.total_treasures, 2)
        self.assertEqual(session.status, GameStatus.ACTIVE)
        self.assertEqual(session.started_at, BASE_TIME)

    def test_start_unknown_hunt(self):
        with self.assertRaises(NotFound):
            self.manager.start(99, "Ada")

    def test_start_empty_hunt_creates_nothing(self):
        with self.assertRaises(InvalidRequest):
            self.manager.start(2, "Ada")
        self.assertEqual(self.store.sessions, {})

    def test_start_rejects_bad_player_names(self):
        for name in ["", "   ", None, "x" * 51]:
            with self.subTest(name=name), self.assertRaises(InvalidRequest):
                self.manager.start(1, name)
        self.assertEqual(self._start(name="y" * 50).player_name, "y" * 50)

    def test_start_rejects_gaps_in_ordinals(self):
        self.catalog.add_hunt(3, ["A", "B"], ordinals=[1, 3])
        with self.assertLogs("game.lifecycle", level="ERROR"), self.assertRaises(InvalidRequest):
            self.manager.start(3, "Ada")

    def test_pirate_cove_walkthrough(self):
        session = self._start()

        result = self._scan(session.id, "T2", 10)
        self.assertEqual(result.reason, OUT_OF_SEQUENCE)
        self.assertEqual(result.expected_ordinal, 1)
        self.assertEqual(result.as_dict()["expectedOrdinal"], 1)
        self.assertEqual(result.message, "This is treasure #2, but you need to find treasure #1 first!")

        result = self._scan(session.id, "T1", 60)
        self.assertTrue(result.success)
        self.assertFalse(result.is_game_complete)
        self.assertEqual(result.clue, "clue 1")
        self.assertEqual(self.manager.get_session(session.id).current_ordinal, 2)

        result = self._scan(session.id, "T1", 70)
        self.assertEqual(result.reason, ALREADY_FOUND)

        result = self._scan(session.id, "T2", 150)
        self.assertTrue(result.success)
        self.assertTrue(result.is_game_complete)
        self.assertEqual(result.message, COMPLETION_MESSAGE)

        final = self.manager.get_session(session.id)
        self.assertEqual(final.status, GameStatus.COMPLETED)
        self.assertEqual(final.completed_at, at(150))
        self.assertEqual(final.total_time_seconds, 150)
        self.assertEqual(final.current_ordinal, 2)
        self.assertEqual([d.time_taken_seconds for d in final.discoveries], [60, 90])

    def test_ordinal_moves_by_one_per_success_and_stays_bounded(self):
        self.catalog.add_hunt(5, ["A", "B", "C", "D"])
        session = self._start(hunt_id=5)
        seen = [1]
        for second, token in enumerate(["B", "A", "A", "Z", "C", "D", "B", "C", "D"], start=1):
            if self.manager.get_session(session.id).status != GameStatus.ACTIVE:
                break
            self._scan(session.id, token, second)
            seen.append(self.manager.get_session(session.id).current_ordinal)
        self.assertEqual(seen, sorted(seen))
        self.assertTrue(all(b - a in (0, 1) for a, b in zip(seen, seen[1:])))
        self.assertTrue(max(seen) <= 4 + 1)
        self.assertEqual(self.manager.get_session(session.id).status, GameStatus.COMPLETED)

    def test_scan_on_finished_session_is_invalid_request(self):
        session = self._start()
        self._scan(session.id, "T1", 1)
        self._scan(session.id, "T2", 2)
        with self.assertRaises(InvalidRequest):
            self._scan(session.id, "T2", 3)

    def test_scan_requires_a_token(self):
        session = self._start()
        with self.assertRaises(InvalidRequest):
            self.manager.scan(session.id, "  ")

    def test_scan_unknown_session(self):
        with self.assertRaises(NotFound):
            self.manager.scan(404, "T1")

    def test_concurrent_duplicate_scan_yields_one_success(self):
        store = StaleReadStore(self.catalog)
        manager = GameSessionManager(self.catalog, store)
        with patch("game.lifecycle.timezone.now", return_value=BASE_TIME):
            session = manager.start(1, "Ada")
        before_first_scan = store.get_session(session.id)

        with patch("game.lifecycle.timezone.now", return_value=at(5)):
            first = manager.scan(session.id, "T1")
            store.stale = before_first_scan
            with self.assertLogs("game.lifecycle", level="WARNING"):
                second = manager.scan(session.id, "T1")
        store.stale = None

        self.assertTrue(first.success)
        self.assertFalse(second.success)
        self.assertEqual(second.reason, ALREADY_FOUND)
        self.assertEqual(len(store.discoveries[session.id]), 1)
        self.assertEqual(store.get_session(session.id).current_ordinal, 2)

    def test_abandon_is_terminal(self):
        session = self._start()
        self.manager.abandon(session.id)
        self.assertEqual(self.manager.get_session(session.id).status, GameStatus.ABANDONED)
        with self.assertRaises(InvalidRequest):
            self.manager.abandon(session.id)
        with self.assertRaises(InvalidRequest):
            self._scan(session.id, "T1", 1)

    def test_abandon_completed_session_fails(self):
        session = self._start()
        self._scan(session.id, "T1", 1)
        self._scan(session.id, "T2", 2)
        with self.assertRaises(InvalidRequest):
            self.manager.abandon(session.id)

    def test_abandon_unknown_session(self):
        with self.assertRaises(NotFound):
            self.manager.abandon(12)

    def test_delete_session(self):
        session = self._start()
        self.manager.delete(session.id)
        with self.assertRaises(NotFound):
            self.manager.get_session(session.id)
        with self.assertRaises(NotFound):
            self.manager.delete(session.id)


class SessionViewHelpersTests(SimpleTestCase):
    def test_progress_and_current_clue_are_derived(self):
        treasure = TreasureInfo(id=1, hunt_id=1, ordinal=1, scan_token="T1", clue_text="Under the bridge")
        session = SessionState(
            id=1, hunt_id=1, player_name="Ada", status=GameStatus.ACTIVE,
            current_ordinal=1, total_treasures=4, started_at=BASE_TIME, start_clue="Go to the dock",
        )
        self.assertEqual(progress_percentage(session), 0)
        self.assertEqual(current_clue(session), "Go to the dock")

        found = replace(session, current_ordinal=2, discoveries=(
            DiscoveryInfo(id=1, treasure_id=1, treasure_ordinal=1, discovered_at=at(3), time_taken_seconds=3, treasure=treasure),
        ))
        self.assertEqual(progress_percentage(found), 25)
        self.assertEqual(current_clue(found), "Under the bridge")
        self.assertEqual(progress_percentage(replace(found, status=GameStatus.COMPLETED)), 100)

    def test_elapsed_seconds_floors(self):
        self.assertEqual(elapsed_seconds(BASE_TIME, at(59.99)), 59)
        self.assertEqual(elapsed_seconds(at(10), BASE_TIME), 0)


class StatisticsTests(SimpleTestCase):
    def test_empty_hunt_is_all_zeros(self):
        stats = summarize(0, [])
        self.assertEqual(stats.as_dict(), {
            "totalSessions": 0,
            "completedSessions": 0,
            "averageCompletionTime": 0,
            "completionRate": 0,
        })

    def test_ten_sessions_six_completed(self):
        stats = summarize(10, [100, 110, 120, 130, 140, 150])
        self.assertEqual(stats.completed_sessions, 6)
        self.assertEqual(stats.average_completion_time, 125)
        self.assertEqual(stats.completion_rate, 60.0)

    def test_rounding(self):
        self.assertEqual(summarize(3, [1, 2]).average_completion_time, 2)
        self.assertEqual(summarize(3, [1, 2]).completion_rate, 66.67)
        self.assertEqual(summarize(3, [7]).completion_rate, 33.33)

    def test_sessions_without_completion(self):
        stats = summarize(4, [])
        self.assertEqual(stats.average_completion_time, 0)
        self.assertEqual(stats.completion_rate, 0.0)


class GameApiTests(TestCase):
    def setUp(self):
        # Generated QR images go to a throwaway media root.
        self.media_tmp = TemporaryDirectory()
        self.addCleanup(self.media_tmp.cleanup)
        self.override_media = override_settings(MEDIA_ROOT=self.media_tmp.name)
        self.override_media.enable()
        self.addCleanup(self.override_media.disable)

        self.hunt = Hunt.objects.create(title="Pirate Cove", start_clue="Begin at the lighthouse")
        self.t1 = Treasure.objects.create(hunt=self.hunt, ordinal=1, name="Skull rock", scan_token="T1")
        self.t2 = Treasure.objects.create(hunt=self.hunt, ordinal=2, name="Old wreck", scan_token="T2")
        Clue.objects.create(treasure=self.t1, text="Search the wreck")
        Clue.objects.create(treasure=self.t2, text="X marks the spot")

    def _post(self, url, payload=None):
        return self.client.post(url, json.dumps(payload or {}), content_type="application/json")

    def _start(self, name="Ada"):
        with patch("game.lifecycle.timezone.now", return_value=BASE_TIME):
            response = self._post(reverse("game:start_game", args=[self.hunt.id]), {"playerName": name})
        self.assertEqual(response.status_code, 201)
        return response.json()

    def _scan(self, session_id, token, seconds):
        with patch("game.lifecycle.timezone.now", return_value=at(seconds)):
            return self._post(reverse("game:scan_code", args=[session_id]), {"qrCodeData": token})

    def test_start_game(self):
        data = self._start()
        self.assertEqual(data["status"], "active")
        self.assertEqual(data["currentTreasureOrdinal"], 1)
        self.assertEqual(data["totalTreasures"], 2)
        self.assertEqual(data["currentClue"], "Begin at the lighthouse")
        self.assertEqual(data["progressPercentage"], 0)
        self.assertTrue(GameSession.objects.filter(pk=data["id"], player_name="Ada").exists())

    def test_start_game_errors(self):
        empty = Hunt.objects.create(title="Empty")
        response = self._post(reverse("game:start_game", args=[empty.id]), {"playerName": "Ada"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "invalid_request")

        response = self._post(reverse("game:start_game", args=[9999]), {"playerName": "Ada"})
        self.assertEqual(response.status_code, 404)

        response = self._post(reverse("game:start_game", args=[self.hunt.id]), {"playerName": ""})
        self.assertEqual(response.status_code, 400)
        self.assertFalse(GameSession.objects.exists())

    def test_start_game_requires_post(self):
        response = self.client.get(reverse("game:start_game", args=[self.hunt.id]))
        self.assertEqual(response.status_code, 405)

    def test_pirate_cove_over_http(self):
        session_id = self._start()["id"]

        data = self._scan(session_id, "T2", 5).json()
        self.assertEqual(data["success"], False)
        self.assertEqual(data["reason"], "out_of_sequence")
        self.assertEqual(data["expectedOrdinal"], 1)

        data = self._scan(session_id, "T1", 90).json()
        self.assertTrue(data["success"])
        self.assertFalse(data["isGameComplete"])
        self.assertEqual(data["clue"], "Search the wreck")
        self.assertEqual(data["treasure"]["ordinal"], 1)
        self.assertEqual(GameSession.objects.get(pk=session_id).current_ordinal, 2)

        data = self._scan(session_id, "T1", 100).json()
        self.assertEqual(data["reason"], "already_found")

        data = self._scan(session_id, "T2", 150).json()
        self.assertTrue(data["success"])
        self.assertTrue(data["isGameComplete"])

        session = GameSession.objects.get(pk=session_id)
        self.assertEqual(session.status, GameStatus.COMPLETED)
        self.assertEqual(session.completed_at, at(150))
        self.assertEqual(session.total_time_seconds, 150)
        self.assertEqual(
            list(session.discoveries.values_list("treasure_ordinal", "time_taken_seconds")),
            [(1, 90), (2, 60)],
        )

        response = self._scan(session_id, "T2", 160)
        self.assertEqual(response.status_code, 400)

        detail = self.client.get(reverse("game:session_detail", args=[session_id])).json()
        self.assertEqual(detail["status"], "completed")
        self.assertEqual(detail["progressPercentage"], 100)
        self.assertEqual(detail["currentClue"], "X marks the spot")
        self.assertEqual(detail["discoveries"][0]["treasure"]["clue"]["text"], "Search the wreck")

    def test_token_from_other_hunt_is_invalid_code(self):
        other = Hunt.objects.create(title="Other")
        Treasure.objects.create(hunt=other, ordinal=1, scan_token="ELSEWHERE")
        session_id = self._start()["id"]
        data = self._scan(session_id, "ELSEWHERE", 5).json()
        self.assertEqual(data["reason"], "invalid_code")

    def test_existing_discovery_is_reported_as_already_found(self):
        session_id = self._start()["id"]
        Discovery.objects.create(session_id=session_id, treasure=self.t1, treasure_ordinal=1, time_taken_seconds=3)

        with self.assertLogs("game.validator", level="WARNING"):
            data = self._scan(session_id, "T1", 10).json()

        self.assertEqual(data["reason"], "already_found")
        self.assertEqual(Discovery.objects.filter(session_id=session_id).count(), 1)
        self.assertEqual(GameSession.objects.get(pk=session_id).current_ordinal, 1)

    def test_discovery_unique_backstop(self):
        session_id = self._start()["id"]
        store = OrmSessionStore()
        treasure = OrmTreasureCatalog().find_treasure(self.hunt.id, "T1")
        store.add_discovery(session_id, treasure, at(1), 1)
        with self.assertRaises(DuplicateDiscovery):
            store.add_discovery(session_id, treasure, at(2), 2)
        self.assertEqual(Discovery.objects.filter(session_id=session_id).count(), 1)

    def test_scan_requires_code(self):
        session_id = self._start()["id"]
        response = self._post(reverse("game:scan_code", args=[session_id]), {})
        self.assertEqual(response.status_code, 400)

    def test_get_unknown_session(self):
        response = self.client.get(reverse("game:session_detail", args=[424242]))
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"], "not_found")

    def test_abandon(self):
        session_id = self._start()["id"]
        response = self._post(reverse("game:abandon_game", args=[session_id]))
        self.assertEqual(response.status_code, 204)
        self.assertEqual(GameSession.objects.get(pk=session_id).status, GameStatus.ABANDONED)

        response = self._post(reverse("game:abandon_game", args=[session_id]))
        self.assertEqual(response.status_code, 400)
        response = self._scan(session_id, "T1", 5)
        self.assertEqual(response.status_code, 400)

        response = self._post(reverse("game:abandon_game", args=[31337]))
        self.assertEqual(response.status_code, 404)

    def test_delete_session_removes_discoveries(self):
        session_id = self._start()["id"]
        self._scan(session_id, "T1", 5)
        response = self.client.delete(reverse("game:session_detail", args=[session_id]))
        self.assertEqual(response.status_code, 204)
        self.assertFalse(GameSession.objects.filter(pk=session_id).exists())
        self.assertFalse(Discovery.objects.filter(session_id=session_id).exists())
        self.assertTrue(Treasure.objects.filter(pk=self.t1.pk).exists())

    def test_stats_empty(self):
        response = self.client.get(reverse("game:game_stats", args=[self.hunt.id]))
        self.assertEqual(response.json(), {
            "totalSessions": 0,
            "completedSessions": 0,
            "averageCompletionTime": 0,
            "completionRate": 0,
        })

    def test_stats_ten_sessions(self):
        for seconds in [100, 110, 120, 130, 140, 150]:
            GameSession.objects.create(
                hunt=self.hunt, player_name="done", total_treasures=2,
                status=GameStatus.COMPLETED, total_time_seconds=seconds,
            )
        for status in [GameStatus.ACTIVE, GameStatus.ACTIVE, GameStatus.ABANDONED, GameStatus.ABANDONED]:
            GameSession.objects.create(hunt=self.hunt, player_name="other", total_treasures=2, status=status)

        data = self.client.get(reverse("game:game_stats", args=[self.hunt.id])).json()
        self.assertEqual(data["totalSessions"], 10)
        self.assertEqual(data["completedSessions"], 6)
        self.assertEqual(data["averageCompletionTime"], 125)
        self.assertEqual(data["completionRate"], 60.0)


class PausingValidator(ScanValidator):
    """Holds each scan right after validation so two requests can overlap."""

    def __init__(self, catalog, barrier):
        super().__init__(catalog)
        self.barrier = barrier

    def validate(self, session, token, now):
        decision = super().validate(session, token, now)
        try:
            self.barrier.wait(timeout=1)
        except threading.BrokenBarrierError:
            # the other scan is queued on the write lock
            pass
        return decision


class ConcurrentScanTests(TransactionTestCase):
    def setUp(self):
        self.media_tmp = TemporaryDirectory()
        self.addCleanup(self.media_tmp.cleanup)
        self.override_media = override_settings(MEDIA_ROOT=self.media_tmp.name)
        self.override_media.enable()
        self.addCleanup(self.override_media.disable)

        self.hunt = Hunt.objects.create(title="Pirate Cove")
        Treasure.objects.create(hunt=self.hunt, ordinal=1, scan_token="T1")
        Treasure.objects.create(hunt=self.hunt, ordinal=2, scan_token="T2")
        self.session = GameSessionManager(OrmTreasureCatalog(), OrmSessionStore()).start(self.hunt.id, "Ada")

    def test_duplicate_scans_in_parallel_record_one_discovery(self):
        barrier = threading.Barrier(2)
        results = []
        errors = []

        def scan_once():
            catalog = OrmTreasureCatalog()
            manager = GameSessionManager(catalog, OrmSessionStore(), PausingValidator(catalog, barrier))
            try:
                results.append(manager.scan(self.session.id, "T1"))
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=scan_once) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(errors, [])
        self.assertEqual(sorted(r.success for r in results), [False, True])
        self.assertEqual([r.reason for r in results if not r.success], [ALREADY_FOUND])
        self.assertEqual(Discovery.objects.filter(session_id=self.session.id).count(), 1)
        self.assertEqual(GameSession.objects.get(pk=self.session.id).current_ordinal, 2)


class CatalogToolingTests(TestCase):
    def setUp(self):
        self.media_tmp = TemporaryDirectory()
        self.addCleanup(self.media_tmp.cleanup)
        self.override_media = override_settings(MEDIA_ROOT=self.media_tmp.name)
        self.override_media.enable()
        self.addCleanup(self.override_media.disable)
        self.hunt = Hunt.objects.create(title="Test Hunt", start_clue="Start here")

    def test_qr_code_encodes_scan_token(self):
        capture = {}

        class DummyQR:
            def save(self, buffer, format='PNG'):
                buffer.write(b'dummy')

        def fake_make(data):
            capture['data'] = data
            return DummyQR()

        with patch("game.models.qrcode.make", side_effect=fake_make):
            treasure = Treasure.objects.create(hunt=self.hunt, ordinal=1)

        self.assertTrue(treasure.scan_token.startswith("treasure-"))
        self.assertEqual(capture.get("data"), treasure.scan_token)
        self.assertTrue(treasure.qr_code.name)

    def test_scan_tokens_are_unique(self):
        first = Treasure.objects.create(hunt=self.hunt, ordinal=1)
        second = Treasure.objects.create(hunt=self.hunt, ordinal=2)
        self.assertNotEqual(first.scan_token, second.scan_token)

    def test_qr_pdf_for_staff(self):
        Treasure.objects.create(hunt=self.hunt, ordinal=1, name="Fountain")
        Treasure.objects.create(hunt=self.hunt, ordinal=2)
        User.objects.create_user(username="captain", password="pass12345", is_staff=True)
        self.client.login(username="captain", password="pass12345")

        response = self.client.get(reverse("game:hunt_pdf", args=[self.hunt.id]))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "application/pdf")
        self.assertTrue(response.content.startswith(b"%PDF"))

    def test_qr_pdf_hidden_from_players(self):
        User.objects.create_user(username="deckhand", password="pass12345")
        self.client.login(username="deckhand", password="pass12345")
        response = self.client.get(reverse("game:hunt_pdf", args=[self.hunt.id]))
        self.assertEqual(response.status_code, 302)

    def _write_workbook(self, tmp, rows):
        path = f"{tmp}/hunt.xlsx"
        wb = Workbook()
        ws = wb.active
        for row in rows:
            ws.append(row)
        wb.save(path)
        return path

    def test_import_hunt_from_xlsx(self):
        with TemporaryDirectory() as tmp:
            path = self._write_workbook(tmp, [
                ["Import Hunt", "Description import", "First clue"],
                [1, "Spot A", "Go to B"],
                [2, "Spot B", "Go to C"],
            ])
            call_command("import_hunt_xlsx", path)

        hunt = Hunt.objects.get(title="Import Hunt")
        self.assertEqual(hunt.start_clue, "First clue")
        treasures = list(hunt.treasures.order_by("ordinal"))
        self.assertEqual(len(treasures), 2)
        self.assertEqual(treasures[0].name, "Spot A")
        self.assertEqual(treasures[1].clue.text, "Go to C")

        session = GameSessionManager(OrmTreasureCatalog(), OrmSessionStore()).start(hunt.id, "Ada")
        self.assertEqual(session.total_treasures, 2)

    def test_import_rejects_gaps(self):
        with TemporaryDirectory() as tmp:
            path = self._write_workbook(tmp, [
                ["Gappy Hunt", "", "First clue"],
                [1, "Spot A", "Go to B"],
                [3, "Spot C", "Go to D"],
            ])
            with self.assertRaises(CommandError):
                call_command("import_hunt_xlsx", path)

        self.assertFalse(Hunt.objects.filter(title="Gappy Hunt").exists())
