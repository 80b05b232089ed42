"""
Encounter Sync Tests

Telemetry-driven lifecycle: section boundaries, connection changes,
player updates, checkpoint throttling and init/shutdown.

Handlers run inline (synchronous=True) unless a test is specifically
about the worker threads.

Run with: python -m pytest tests/test_encounter_sync.py -v
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import random
import pytest
from datetime import timedelta

from config import Config
from persistence import Store, EncounterRepository, NotFoundError, StoreIOError
from engine import EncounterSync, LiveTelemetry, TaskSupervisor, CheckpointThrottle
from tests.helpers import FakeClock, make_player, make_stats

SECTION_TIMEOUT = timedelta(seconds=15)


@pytest.fixture
def cfg(tmp_path):
    return Config(
        DATA_DIR=str(tmp_path / "data"),
        LOG_DIR=str(tmp_path / "logs"),
        MIN_SAVE_INTERVAL_SECONDS=3.0,
        SYNC_WORKERS=2,
    )


@pytest.fixture
def telemetry():
    return LiveTelemetry(section_timeout=SECTION_TIMEOUT)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "ledger.db")


@pytest.fixture
def sync(telemetry, cfg, clock, db_path):
    sync = EncounterSync(telemetry, cfg, synchronous=True, clock=clock)
    sync.initialize(db_path)
    yield sync
    sync.shutdown()


@pytest.fixture
def repo(sync):
    return EncounterRepository(sync.store)


class TestCheckpointThrottle:

    def test_first_call_passes(self, clock):
        throttle = CheckpointThrottle(3.0, clock)
        assert throttle.try_acquire() is True

    def test_calls_inside_window_are_dropped(self, clock):
        throttle = CheckpointThrottle(3.0, clock)
        assert throttle.try_acquire() is True
        clock.advance(1.0)
        assert throttle.try_acquire() is False
        clock.advance(1.9)
        assert throttle.try_acquire() is False
        clock.advance(0.1)
        assert throttle.try_acquire() is True

    def test_mark_restarts_window(self, clock):
        throttle = CheckpointThrottle(3.0, clock)
        throttle.mark()
        assert throttle.try_acquire() is False
        throttle.reset()
        assert throttle.try_acquire() is True


class TestSupervisor:

    def test_inline_failure_is_logged_not_raised(self):
        supervisor = TaskSupervisor(synchronous=True)

        def boom():
            raise RuntimeError("handler exploded")

        supervisor.submit('boom', boom)
        assert supervisor.failures == 1

    def test_threaded_tasks_complete_before_shutdown_returns(self):
        supervisor = TaskSupervisor(max_workers=2)
        done = []

        for i in range(5):
            supervisor.submit('append', done.append, i)
        supervisor.shutdown(wait=True)

        assert sorted(done) == [0, 1, 2, 3, 4]
        assert supervisor.submit('late', done.append, 99) is None
        assert 99 not in done

    def test_threaded_failure_is_counted(self):
        supervisor = TaskSupervisor(max_workers=1)

        def boom():
            raise ValueError("bad")

        future = supervisor.submit('boom', boom)
        supervisor.shutdown(wait=True)
        assert future.exception() is not None
        assert supervisor.failures == 1


class TestLifecycle:

    def test_initialize_is_idempotent(self, sync, telemetry, db_path):
        store = sync.store
        assert sync.initialize(db_path) is True
        assert sync.store is store
        assert telemetry.subscriber_count() == 3

    def test_shutdown_unsubscribes_and_disables(self, telemetry, cfg, clock, db_path):
        sync = EncounterSync(telemetry, cfg, synchronous=True, clock=clock)
        sync.initialize(db_path)
        sync.shutdown()

        assert telemetry.subscriber_count() == 0
        assert sync.is_initialized is False
        assert sync.start_encounter() is None
        assert sync.end_encounter(0) is False
        assert sync.save_current_encounter() is False
        assert sync.list_recent_encounters() == []
        assert sync.load_encounter("anything") is None
        assert sync.get_cached_player(1) is None
        assert sync.cleanup_old_encounters() == 0

        # Events after shutdown reach nobody
        telemetry.publish_connection_state(True)
        sync.shutdown()

    def test_reinitialize_after_shutdown(self, telemetry, cfg, clock, db_path):
        sync = EncounterSync(telemetry, cfg, synchronous=True, clock=clock)
        sync.initialize(db_path)
        first = sync.start_encounter()
        sync.shutdown()

        sync.initialize(db_path)
        try:
            # Crash recovery closed the encounter left open at shutdown
            assert sync.service.is_active is False
            assert sync.load_encounter(first).is_active is False
            assert telemetry.subscriber_count() == 3
        finally:
            sync.shutdown()

    def test_initialize_failure_surfaces(self, telemetry, cfg, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        sync = EncounterSync(telemetry, cfg, synchronous=True)

        with pytest.raises(StoreIOError):
            sync.initialize(str(blocker / "ledger.db"))
        assert sync.is_initialized is False
        assert telemetry.subscriber_count() == 0


class TestSectionBoundary:

    def test_section_boundary_rolls_encounter(self, sync, telemetry, repo):
        telemetry.publish_connection_state(True)
        first = sync.service.active_encounter_id

        telemetry.publish_section_boundary()

        second = sync.service.active_encounter_id
        assert second is not None and second != first
        old = repo.load_encounter(first)
        assert old.is_active is False
        assert old.duration_ms == 15000
        assert [e.encounter_id for e in repo.get_active_encounters()] == [second]

    def test_section_boundary_without_encounter_starts_one(self, sync, telemetry, repo):
        telemetry.publish_section_boundary()
        assert sync.service.is_active
        assert repo.count_encounters() == 1

    def test_section_boundary_saves_final_stats(self, sync, telemetry, repo):
        telemetry.publish_section_boundary()
        first = sync.service.active_encounter_id
        telemetry.publish_player_info(make_player(1, "Alpha"))
        telemetry.record_stats(make_stats(1, damage=4242))

        telemetry.publish_section_boundary()

        record = repo.load_encounter(first).get_player(1)
        assert record.total_attack_damage == 4242
        assert record.name == "Alpha"


class TestConnectionState:

    def test_connect_starts_encounter(self, sync, telemetry, repo):
        telemetry.publish_connection_state(True)
        telemetry.publish_connection_state(True)
        assert sync.service.is_active
        assert repo.count_encounters() == 1

    def test_disconnect_without_encounter_is_quiet(self, sync, telemetry, repo):
        telemetry.publish_connection_state(False)
        assert repo.count_encounters() == 0
        assert repo.count_players() == 0
        assert sync.service.is_active is False

    def test_disconnect_forces_final_save_and_zero_duration(self, sync, telemetry, repo, clock):
        telemetry.publish_connection_state(True)
        encounter_id = sync.service.active_encounter_id
        telemetry.record_stats(make_stats(5, damage=100))
        telemetry.publish_player_info(make_player(5, "Quitter"))  # checkpoint #1

        # Inside the throttle window; disconnect must still persist these numbers
        clock.advance(0.5)
        telemetry.record_stats(make_stats(5, damage=777))
        telemetry.publish_connection_state(False)

        data = repo.load_encounter(encounter_id)
        assert data.is_active is False
        assert data.duration_ms == 0
        assert data.get_player(5).total_attack_damage == 777


class TestPlayerInfo:

    def test_player_info_updates_cache_without_encounter(self, sync, telemetry, repo):
        telemetry.publish_player_info(make_player(42, "A"))
        telemetry.publish_player_info(make_player(42, "B"))

        assert repo.count_players() == 1
        assert sync.get_cached_player(42).name == "B"
        assert repo.count_player_stats() == 0

    def test_player_info_triggers_throttled_checkpoint(self, sync, telemetry, repo, clock):
        sync.start_encounter()
        encounter_id = sync.service.active_encounter_id

        telemetry.record_stats(make_stats(1, damage=10))
        telemetry.publish_player_info(make_player(1))
        assert repo.load_encounter(encounter_id).get_player(1).total_attack_damage == 10

        # Dropped: inside the window
        clock.advance(1.0)
        telemetry.record_stats(make_stats(1, damage=20))
        telemetry.publish_player_info(make_player(1))
        assert repo.load_encounter(encounter_id).get_player(1).total_attack_damage == 10

        # Window elapsed: saved
        clock.advance(2.5)
        telemetry.publish_player_info(make_player(1))
        assert repo.load_encounter(encounter_id).get_player(1).total_attack_damage == 20

    def test_invalid_player_still_runs_checkpoint(self, sync, telemetry, repo):
        encounter_id = sync.start_encounter()
        telemetry.record_stats(make_stats(4, damage=321))

        # Bypass LiveTelemetry's own validation to hit the handler directly
        sync.on_player_info_updated(make_player(-1))

        assert sync.status()['handler_failures'] == 0
        assert repo.get_player(-1) is None
        assert repo.load_encounter(encounter_id).get_player(4).total_attack_damage == 321

    def test_status_reports_active_since(self, sync):
        assert sync.status()['active_since'] is None
        sync.start_encounter()
        assert sync.status()['active_since'] is not None


class TestThrottling:

    def test_burst_of_saves_executes_once(self, sync, telemetry, clock, monkeypatch):
        sync.start_encounter()
        telemetry.record_stats(make_stats(1))
        calls = []
        real_save = sync.service.save_stats

        def counting_save(players, stats):
            calls.append(1)
            return real_save(players, stats)

        monkeypatch.setattr(sync.service, 'save_stats', counting_save)

        executed = []
        for _ in range(25):
            executed.append(sync.save_current_encounter())
            clock.advance(0.1)

        assert executed.count(True) == 1
        assert len(calls) == 1

    def test_forced_save_bypasses_throttle(self, sync, telemetry, clock):
        sync.start_encounter()
        telemetry.record_stats(make_stats(1))
        assert sync.save_current_encounter() is True
        assert sync.save_current_encounter() is False
        assert sync.save_current_encounter(force=True) is True

    def test_save_without_encounter_is_noop(self, sync):
        assert sync.save_current_encounter() is False


class TestManualOverrides:

    def test_manual_start_end(self, sync, repo):
        encounter_id = sync.start_encounter()
        assert sync.start_encounter() == encounter_id
        assert sync.end_encounter(12345) is True
        assert sync.end_encounter(12345) is False
        assert repo.load_encounter(encounter_id).duration_ms == 12345

    def test_history_and_cleanup(self, sync):
        for _ in range(5):
            sync.start_encounter()
            sync.end_encounter(1000)

        recent = sync.list_recent_encounters(3)
        assert len(recent) == 3
        assert sync.cleanup_old_encounters(2) == 3
        assert len(sync.list_recent_encounters()) == 2

    def test_load_missing_encounter_surfaces(self, sync):
        with pytest.raises(NotFoundError):
            sync.load_encounter("missing")

    def test_listener_receives_lifecycle_events(self, sync, telemetry):
        events = []
        sync.add_listener(lambda name, payload: events.append(name))

        telemetry.publish_connection_state(True)
        telemetry.publish_section_boundary()
        telemetry.publish_connection_state(False)

        assert events == ['encounter_started', 'encounter_ended', 'encounter_started', 'encounter_ended']

    def test_failing_listener_does_not_break_lifecycle(self, sync, telemetry):
        def broken(name, payload):
            raise RuntimeError("ui gone")

        sync.add_listener(broken)
        telemetry.publish_connection_state(True)
        assert sync.service.is_active


class TestInvariants:

    def test_random_event_sequences_keep_one_active_encounter(self, sync, telemetry, repo, clock):
        rng = random.Random(1234)
        events = ['section', 'connect', 'disconnect', 'player', 'start', 'end', 'save']

        for _ in range(200):
            event = rng.choice(events)
            if event == 'section':
                telemetry.publish_section_boundary()
            elif event == 'connect':
                telemetry.publish_connection_state(True)
            elif event == 'disconnect':
                telemetry.publish_connection_state(False)
            elif event == 'player':
                uid = rng.randint(1, 5)
                telemetry.record_stats(make_stats(uid, damage=rng.randint(0, 10000)))
                telemetry.publish_player_info(make_player(uid))
            elif event == 'start':
                sync.start_encounter()
            elif event == 'end':
                sync.end_encounter(rng.randint(0, 60000))
            else:
                sync.save_current_encounter()
            clock.advance(rng.uniform(0, 2))

            active = repo.get_active_encounters()
            assert len(active) <= 1
            if sync.service.is_active:
                assert [e.encounter_id for e in active] == [sync.service.active_encounter_id]
            else:
                assert active == []

        # One stats row per (player, encounter)
        for summary in repo.list_recent_encounters(1000):
            assert summary.player_count <= 5

    def test_threaded_handlers_keep_one_active_encounter(self, telemetry, cfg, db_path):
        sync = EncounterSync(telemetry, cfg)
        sync.initialize(db_path)
        try:
            for i in range(30):
                telemetry.publish_connection_state(True)
                telemetry.publish_section_boundary()
                telemetry.publish_player_info(make_player(i % 4 + 1))
        finally:
            sync.shutdown()

        # Reopen without crash recovery to see what the workers left behind
        store = Store.initialize(db_path, recover=False)
        try:
            assert len(EncounterRepository(store).get_active_encounters()) <= 1
        finally:
            store.close()
