"""
Shared builders for the encounter persistence tests.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime, timedelta
from typing import Dict, Iterable

from persistence.records import PlayerSnapshot, CombatStatsSnapshot


class FakeClock:
    """Monotonic clock the tests advance by hand"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SteppingUtcClock:
    """UTC clock that moves forward one second per call"""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value


def make_player(uid: int, name: str = None, **overrides) -> PlayerSnapshot:
    values = dict(
        uid=uid,
        name=name if name is not None else f"Player{uid}",
        profession_id=2,
        sub_profession_name="Iaido",
        class_id=1,
        spec_id=3,
        combat_power=10000 + uid,
        level=50,
        rank_level=4,
        critical=1200,
        lucky=800,
        max_hp=250000,
        is_npc=False,
    )
    values.update(overrides)
    return PlayerSnapshot(**values)


def make_stats(uid: int, damage: int = 1000, heal: int = 0, taken: int = 0, **overrides) -> CombatStatsSnapshot:
    values = dict(
        uid=uid,
        total_attack_damage=damage,
        total_taken_damage=taken,
        total_heal=heal,
        start_logged_tick=100,
        last_logged_tick=900,
        is_npc_data=False,
        skills={"1001": {"hits": 3, "damage": damage}},
    )
    values.update(overrides)
    return CombatStatsSnapshot(**values)


def players_by_uid(players: Iterable[PlayerSnapshot]) -> Dict[int, PlayerSnapshot]:
    return {p.uid: p for p in players}


def stats_by_uid(stats: Iterable[CombatStatsSnapshot]) -> Dict[int, CombatStatsSnapshot]:
    return {s.uid: s for s in stats}
