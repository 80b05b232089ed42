"""
Persistence Records

Plain data objects that cross the persistence boundary. The telemetry
source hands us PlayerSnapshot / CombatStatsSnapshot; the repository hands
back EncounterSummary / EncounterData so callers never hold live ORM rows.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import ValidationError


def _pick(data: Dict[str, Any], *keys, default=None):
    """First present key wins (accepts snake_case and camelCase payloads)"""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Field '{name}' must be an integer", {'value': value})


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class PlayerSnapshot:
    """Captured-in-time copy of a player's live profile"""
    uid: int
    name: str = ""
    profession_id: int = 0
    sub_profession_name: Optional[str] = None
    class_id: int = 0
    spec_id: int = 0
    combat_power: int = 0
    level: int = 0
    rank_level: int = 0
    critical: int = 0
    lucky: int = 0
    max_hp: int = 0
    is_npc: bool = False

    # Only filled when read back from the player cache
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None

    def validate(self) -> 'PlayerSnapshot':
        if not isinstance(self.uid, int) or isinstance(self.uid, bool) or self.uid <= 0:
            raise ValidationError("Player UID must be a positive integer", {'uid': self.uid})
        if self.name is None:
            self.name = ""
        if len(self.name) > 100:
            raise ValidationError("Player name longer than 100 characters", {'uid': self.uid})
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PlayerSnapshot':
        if not isinstance(data, dict):
            raise ValidationError("Player payload must be an object")
        snapshot = cls(
            uid=_as_int(_pick(data, 'uid', 'UID'), 'uid'),
            name=str(_pick(data, 'name', 'Name', default='')),
            profession_id=_as_int(_pick(data, 'profession_id', 'professionId', default=0), 'profession_id'),
            sub_profession_name=_pick(data, 'sub_profession_name', 'subProfessionName'),
            class_id=_as_int(_pick(data, 'class_id', 'classId', default=0), 'class_id'),
            spec_id=_as_int(_pick(data, 'spec_id', 'specId', default=0), 'spec_id'),
            combat_power=_as_int(_pick(data, 'combat_power', 'combatPower', default=0), 'combat_power'),
            level=_as_int(_pick(data, 'level', default=0), 'level'),
            rank_level=_as_int(_pick(data, 'rank_level', 'rankLevel', default=0), 'rank_level'),
            critical=_as_int(_pick(data, 'critical', default=0), 'critical'),
            lucky=_as_int(_pick(data, 'lucky', default=0), 'lucky'),
            max_hp=_as_int(_pick(data, 'max_hp', 'maxHp', default=0), 'max_hp'),
            is_npc=bool(_pick(data, 'is_npc', 'isNpc', default=False)),
        )
        return snapshot.validate()

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['first_seen'] = _iso(self.first_seen)
        result['last_seen'] = _iso(self.last_seen)
        return result


@dataclass
class CombatStatsSnapshot:
    """Aggregated damage/heal numbers for one player in the current section"""
    uid: int
    total_attack_damage: int = 0
    total_taken_damage: int = 0
    total_heal: int = 0
    start_logged_tick: int = 0
    last_logged_tick: int = 0
    is_npc_data: bool = False
    skills: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> 'CombatStatsSnapshot':
        if not isinstance(self.uid, int) or isinstance(self.uid, bool) or self.uid <= 0:
            raise ValidationError("Stats UID must be a positive integer", {'uid': self.uid})
        for name in ('total_attack_damage', 'total_taken_damage', 'total_heal'):
            if getattr(self, name) < 0:
                raise ValidationError(f"'{name}' cannot be negative", {'uid': self.uid})
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CombatStatsSnapshot':
        if not isinstance(data, dict):
            raise ValidationError("Stats payload must be an object")
        skills = _pick(data, 'skills', 'skillData', default={})
        if not isinstance(skills, dict):
            raise ValidationError("'skills' must be an object")
        snapshot = cls(
            uid=_as_int(_pick(data, 'uid', 'UID'), 'uid'),
            total_attack_damage=_as_int(_pick(data, 'total_attack_damage', 'totalAttackDamage', default=0), 'total_attack_damage'),
            total_taken_damage=_as_int(_pick(data, 'total_taken_damage', 'totalTakenDamage', default=0), 'total_taken_damage'),
            total_heal=_as_int(_pick(data, 'total_heal', 'totalHeal', default=0), 'total_heal'),
            start_logged_tick=_as_int(_pick(data, 'start_logged_tick', 'startLoggedTick', default=0), 'start_logged_tick'),
            last_logged_tick=_as_int(_pick(data, 'last_logged_tick', 'lastLoggedTick', default=0), 'last_logged_tick'),
            is_npc_data=bool(_pick(data, 'is_npc_data', 'isNpcData', default=False)),
            skills=skills,
        )
        return snapshot.validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EncounterSummary:
    """One row of the encounter history list"""
    encounter_id: str
    start_time: datetime
    end_time: Optional[datetime]
    duration_ms: int
    is_active: bool
    player_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'encounter_id': self.encounter_id,
            'start_time': _iso(self.start_time),
            'end_time': _iso(self.end_time),
            'duration_ms': self.duration_ms,
            'is_active': self.is_active,
            'player_count': self.player_count,
        }


@dataclass
class PlayerEncounterRecord:
    """A stats row joined with the owning player's cached profile"""
    uid: int
    name: str
    total_attack_damage: int
    total_taken_damage: int
    total_heal: int
    start_logged_tick: int
    last_logged_tick: int
    is_npc_data: bool
    combat_power: int
    level: int
    profession_id: int = 0
    sub_profession_name: Optional[str] = None
    class_id: int = 0
    spec_id: int = 0
    skills: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EncounterData:
    """Fully hydrated encounter with every player's stats"""
    encounter_id: str
    start_time: datetime
    end_time: Optional[datetime]
    duration_ms: int
    is_active: bool
    players: List[PlayerEncounterRecord] = field(default_factory=list)

    @property
    def total_damage(self) -> int:
        return sum(p.total_attack_damage for p in self.players)

    @property
    def total_heal(self) -> int:
        return sum(p.total_heal for p in self.players)

    def get_player(self, uid: int) -> Optional[PlayerEncounterRecord]:
        for player in self.players:
            if player.uid == uid:
                return player
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'encounter_id': self.encounter_id,
            'start_time': _iso(self.start_time),
            'end_time': _iso(self.end_time),
            'duration_ms': self.duration_ms,
            'is_active': self.is_active,
            'total_damage': self.total_damage,
            'total_heal': self.total_heal,
            'players': [p.to_dict() for p in self.players],
        }
