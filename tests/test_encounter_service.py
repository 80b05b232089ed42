"""
Encounter Service Tests

State machine behaviour: start/end idempotence, checkpoint writes, and
error containment when the store misbehaves.

Run with: python -m pytest tests/test_encounter_service.py -v
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import threading
import pytest

from persistence import Store, EncounterRepository, StoreIOError, ValidationError, NotFoundError
from persistence.models import Encounter
from engine.encounter_service import EncounterService, EncounterState, generate_encounter_id
from tests.helpers import make_player, make_stats, players_by_uid, stats_by_uid, SteppingUtcClock


@pytest.fixture
def store(tmp_path):
    store = Store.initialize(str(tmp_path / "ledger.db"))
    yield store
    store.close()


@pytest.fixture
def repo(store):
    return EncounterRepository(store)


@pytest.fixture
def service(repo):
    return EncounterService(repo, clock=SteppingUtcClock())


def _fail(*args, **kwargs):
    raise StoreIOError("disk unplugged")


class TestEncounterIds:

    def test_ids_are_unique_and_time_ordered_prefix(self):
        ids = {generate_encounter_id() for _ in range(200)}
        assert len(ids) == 200
        sample = next(iter(ids))
        stamp, suffix = sample.split('-')
        assert len(stamp) == 20 and stamp.isdigit()
        assert len(suffix) == 8


class TestLifecycle:

    def test_starts_inactive(self, service):
        assert service.state == EncounterState.NO_ACTIVE_ENCOUNTER
        assert service.active_encounter_id is None

    def test_start_twice_creates_one_encounter(self, service, repo):
        first = service.start()
        second = service.start()

        assert first == second
        assert service.state == EncounterState.ENCOUNTER_ACTIVE
        assert repo.count_encounters() == 1

    def test_end_twice_is_harmless(self, service, repo):
        encounter_id = service.start()

        assert service.end(5000) is True
        assert service.end(5000) is False

        assert service.state == EncounterState.NO_ACTIVE_ENCOUNTER
        data = repo.load_encounter(encounter_id)
        assert data.is_active is False
        assert data.duration_ms == 5000

    def test_end_without_start(self, service, repo):
        assert service.end(1000) is False
        assert repo.count_encounters() == 0

    def test_restart_after_end_creates_new_encounter(self, service, repo):
        first = service.start()
        service.end(1000)
        second = service.start()

        assert first != second
        assert [e.encounter_id for e in repo.get_active_encounters()] == [second]

    def test_concurrent_starts_produce_one_active_encounter(self, service, repo):
        barrier = threading.Barrier(8)
        results = []

        def racer():
            barrier.wait()
            results.append(service.start())

        threads = [threading.Thread(target=racer) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(results)) == 1
        assert len(repo.get_active_encounters()) == 1
        assert repo.count_encounters() == 1

    def test_duplicate_id_race_is_ignored(self, repo):
        repo.create_encounter("fixed-id")
        service = EncounterService(repo, id_factory=lambda: "fixed-id")

        assert service.start() is None
        assert service.state == EncounterState.NO_ACTIVE_ENCOUNTER

    def test_start_storage_failure_propagates(self, service, repo, monkeypatch):
        monkeypatch.setattr(repo, 'create_encounter', _fail)
        with pytest.raises(StoreIOError):
            service.start()
        assert service.state == EncounterState.NO_ACTIVE_ENCOUNTER


class TestCheckpoints:

    def test_save_while_inactive_is_noop(self, service, repo):
        written = service.save_stats(players_by_uid([make_player(1)]), stats_by_uid([make_stats(1)]))
        assert written == 0
        assert repo.count_player_stats() == 0

    def test_save_writes_players_and_stats(self, service, repo):
        encounter_id = service.start()
        players = players_by_uid([make_player(1, "Alpha"), make_player(2, "Beta")])
        stats = stats_by_uid([make_stats(1, damage=500), make_stats(2, damage=700)])

        assert service.save_stats(players, stats) == 2
        assert service.last_checkpoint_at is not None
        assert repo.count_player_stats(encounter_id) == 2
        assert repo.get_player(2).name == "Beta"

    def test_repeated_saves_update_in_place(self, service, repo):
        encounter_id = service.start()
        players = players_by_uid([make_player(1)])

        for damage in (100, 200, 300):
            service.save_stats(players, stats_by_uid([make_stats(1, damage=damage)]))

        assert repo.count_player_stats(encounter_id) == 1
        assert repo.load_encounter(encounter_id).players[0].total_attack_damage == 300

    def test_malformed_snapshots_are_skipped(self, service, repo):
        encounter_id = service.start()
        stats = {
            1: make_stats(1, damage=100),
            2: make_stats(2, damage=-1),
        }
        players = {1: make_player(1), 2: make_player(2)}

        assert service.save_stats(players, stats) == 1
        assert repo.count_player_stats(encounter_id) == 1

    def test_end_performs_final_save(self, service, repo):
        encounter_id = service.start()
        players = players_by_uid([make_player(9, "Finisher")])

        service.save_stats(players, stats_by_uid([make_stats(9, damage=10)]))
        service.end(30000, players, stats_by_uid([make_stats(9, damage=999, heal=55)]))

        record = repo.load_encounter(encounter_id).get_player(9)
        assert record.total_attack_damage == 999
        assert record.total_heal == 55

    def test_checkpoint_failure_is_contained(self, service, repo, monkeypatch):
        service.start()
        monkeypatch.setattr(repo, 'save_checkpoint', _fail)

        written = service.save_stats(players_by_uid([make_player(1)]), stats_by_uid([make_stats(1)]))

        assert written == 0
        assert service.state == EncounterState.ENCOUNTER_ACTIVE
        assert service.last_checkpoint_at is None

    def test_failed_close_keeps_encounter_active(self, service, repo, monkeypatch):
        encounter_id = service.start()
        monkeypatch.setattr(repo, 'end_encounter', _fail)

        assert service.end(1000) is False
        assert service.active_encounter_id == encounter_id

        monkeypatch.undo()
        assert service.end(1000) is True
        assert repo.get_active_encounters() == []

    def test_vanished_row_clears_state(self, service, repo, store):
        service.start()
        repo.delete_old_encounters(0)  # active rows are spared...
        with store.write_scope() as session:
            session.execute(Encounter.__table__.delete())  # ...so remove it by hand

        assert service.end(1000) is True
        assert service.state == EncounterState.NO_ACTIVE_ENCOUNTER


class TestPlayerCacheAndHistory:

    def test_update_player_cache_in_either_state(self, service, repo):
        assert service.update_player_cache(make_player(3, "Idle")) is True
        service.start()
        assert service.update_player_cache(make_player(3, "Busy")) is True

        assert repo.get_player(3).name == "Busy"
        assert service.get_cached_player(3).name == "Busy"
        assert repo.count_player_stats() == 0

    def test_update_player_cache_rejects_bad_uid(self, service):
        with pytest.raises(ValidationError):
            service.update_player_cache(make_player(0))

    def test_update_player_cache_storage_failure(self, service, repo, monkeypatch):
        monkeypatch.setattr(repo, 'upsert_player', _fail)
        assert service.update_player_cache(make_player(3)) is False

    def test_list_and_load(self, service):
        first = service.start()
        service.end(1000)
        second = service.start()

        assert [s.encounter_id for s in service.list_recent(10)] == [second, first]
        assert service.load(first).encounter_id == first
        with pytest.raises(NotFoundError):
            service.load("missing")

    def test_cleanup_failure_is_non_fatal(self, service, repo, monkeypatch):
        monkeypatch.setattr(repo, 'delete_old_encounters', _fail)
        assert service.cleanup(10) == 0
