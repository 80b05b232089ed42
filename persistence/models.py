"""
Database Models for the Combat Ledger

Tracks:
- Players seen in the live feed (identity cache keyed by UID)
- Encounters (one bounded combat session each)
- Per-player, per-encounter statistics snapshots
"""

from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, BigInteger, String, Boolean, DateTime, Text,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite stores datetimes without zone info)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Player(Base):
    """
    Identity and latest-known profile of a combatant.

    The UID is the only identity key; names can collide or change.
    Rows are never hard-deleted so historical "Unknown" entries can be
    resolved from this cache later.
    """
    __tablename__ = 'players'

    uid = Column(BigInteger, primary_key=True, autoincrement=False)
    name = Column(String(100), nullable=False, default='')

    # Profession / class
    profession_id = Column(Integer, default=0)
    sub_profession_name = Column(String(50))
    class_id = Column(Integer, default=0)
    spec_id = Column(Integer, default=0)

    # Combat profile
    combat_power = Column(Integer, default=0)
    level = Column(Integer, default=0)
    rank_level = Column(Integer, default=0)
    critical = Column(Integer, default=0)
    lucky = Column(Integer, default=0)
    max_hp = Column(BigInteger, default=0)

    is_npc = Column(Boolean, default=False)

    # Timestamps
    first_seen = Column(DateTime, default=utcnow)
    last_seen = Column(DateTime, default=utcnow)

    encounter_stats = relationship(
        'PlayerEncounterStats',
        back_populates='player',
        cascade='all, delete-orphan',
        passive_deletes=True,
    )

    __table_args__ = (
        Index('idx_player_name', 'name'),
        Index('idx_player_last_seen', 'last_seen'),
        Index('idx_player_is_npc', 'is_npc'),
    )

    def __repr__(self):
        return f"<Player({self.uid}: {self.name})>"


class Encounter(Base):
    """
    One bounded combat session.

    At most one row may have is_active=True at any time.
    """
    __tablename__ = 'encounters'

    id = Column(Integer, primary_key=True)
    encounter_id = Column(String(64), nullable=False, unique=True)
    start_time = Column(DateTime, nullable=False, default=utcnow)
    end_time = Column(DateTime)
    duration_ms = Column(BigInteger, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    player_stats = relationship(
        'PlayerEncounterStats',
        back_populates='encounter',
        cascade='all, delete-orphan',
        passive_deletes=True,
    )

    __table_args__ = (
        Index('idx_encounter_start', 'start_time'),
        Index('idx_encounter_active', 'is_active'),
    )

    def __repr__(self):
        state = "active" if self.is_active else f"{self.duration_ms}ms"
        return f"<Encounter({self.encounter_id}: {state})>"


class PlayerEncounterStats(Base):
    """
    One player's performance within one encounter.

    Name, level and combat power are copied at save time so historical
    rows keep their meaning after the live profile changes.
    """
    __tablename__ = 'player_encounter_stats'

    id = Column(Integer, primary_key=True)
    player_uid = Column(BigInteger, ForeignKey('players.uid', ondelete='CASCADE'), nullable=False)
    encounter_id = Column(Integer, ForeignKey('encounters.id', ondelete='CASCADE'), nullable=False)

    # Totals
    total_attack_damage = Column(BigInteger, default=0)
    total_taken_damage = Column(BigInteger, default=0)
    total_heal = Column(BigInteger, default=0)

    # First/last action, monotonic ticks from the telemetry source
    start_logged_tick = Column(BigInteger, default=0)
    last_logged_tick = Column(BigInteger, default=0)

    is_npc_data = Column(Boolean, default=False)

    # Opaque per-skill breakdown (JSON)
    skill_data_json = Column(Text)

    # Point-in-time profile
    combat_power_snapshot = Column(Integer, default=0)
    level_snapshot = Column(Integer, default=0)
    name_snapshot = Column(String(100), default='')

    player = relationship('Player', back_populates='encounter_stats')
    encounter = relationship('Encounter', back_populates='player_stats')

    __table_args__ = (
        UniqueConstraint('player_uid', 'encounter_id', name='uq_player_encounter'),
        Index('idx_stats_encounter', 'encounter_id'),
        Index('idx_stats_player', 'player_uid'),
    )

    def __repr__(self):
        return f"<PlayerEncounterStats({self.name_snapshot or self.player_uid} in {self.encounter_id}: {self.total_attack_damage} dmg)>"
