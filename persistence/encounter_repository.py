"""
Encounter Repository - Data Access Layer

CRUD and query operations over players, encounters and per-encounter
player stats. No lifecycle rules live here; the encounter service decides
when each of these is called.

Upserts are explicit ``INSERT ... ON CONFLICT DO UPDATE`` statements so two
writers racing on the same (player, encounter) row end in one row, never two.
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Optional, List, Tuple

from sqlalchemy import func, desc, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .models import Player, Encounter, PlayerEncounterStats, utcnow
from .records import (
    PlayerSnapshot, CombatStatsSnapshot, EncounterSummary,
    EncounterData, PlayerEncounterRecord,
)
from .errors import PersistenceError, NotFoundError, ConflictError, StoreIOError, ValidationError

logger = logging.getLogger(__name__)

# Player columns refreshed on every observation (first_seen is insert-only)
PLAYER_MUTABLE_FIELDS = (
    'profession_id', 'sub_profession_name', 'class_id', 'spec_id',
    'combat_power', 'level', 'rank_level', 'critical', 'lucky',
    'max_hp', 'is_npc', 'last_seen',
)

STATS_MUTABLE_FIELDS = (
    'total_attack_damage', 'total_taken_damage', 'total_heal',
    'start_logged_tick', 'last_logged_tick', 'is_npc_data', 'skill_data_json',
    'combat_power_snapshot', 'level_snapshot', 'name_snapshot',
)

UNKNOWN_PLAYER_NAME = "Unknown"

# Stay well under SQLite's bound-parameter limit for IN (...) lists
DELETE_CHUNK_SIZE = 500


@contextmanager
def _storage_errors(operation: str):
    """Re-raise driver/ORM failures as StoreIOError; typed errors pass through"""
    try:
        yield
    except PersistenceError:
        raise
    except (SQLAlchemyError, OSError) as e:
        raise StoreIOError(f"{operation} failed: {e}", {'operation': operation}) from e


def _player_to_snapshot(player: Player) -> PlayerSnapshot:
    return PlayerSnapshot(
        uid=player.uid,
        name=player.name,
        profession_id=player.profession_id or 0,
        sub_profession_name=player.sub_profession_name,
        class_id=player.class_id or 0,
        spec_id=player.spec_id or 0,
        combat_power=player.combat_power or 0,
        level=player.level or 0,
        rank_level=player.rank_level or 0,
        critical=player.critical or 0,
        lucky=player.lucky or 0,
        max_hp=player.max_hp or 0,
        is_npc=bool(player.is_npc),
        first_seen=player.first_seen,
        last_seen=player.last_seen,
    )


def _decode_skills(raw: Optional[str], uid: int) -> dict:
    if not raw:
        return {}
    try:
        skills = json.loads(raw)
    except ValueError:
        logger.warning(f"Unreadable skill data for player {uid}, ignoring")
        return {}
    return skills if isinstance(skills, dict) else {}


class EncounterRepository:
    """
    Repository for encounter persistence.

    Provides methods for:
    - Encounter rows (create, close, crash-recovery deactivation)
    - Player identity cache (upsert, lookup)
    - Per-encounter player stats (upsert)
    - History queries and retention cleanup
    """

    def __init__(self, store):
        """
        Initialize repository.

        Args:
            store: Open Store shared by the process
        """
        self._store = store

    # =========================================================================
    # Encounters
    # =========================================================================

    def deactivate_all_active(self, end_time: Optional[datetime] = None) -> int:
        """Close every encounter still marked active. Returns rows changed."""
        end_time = end_time or utcnow()
        with _storage_errors('deactivate_all_active'):
            with self._store.write_scope() as session:
                count = session.query(Encounter).filter(
                    Encounter.is_active == True  # noqa: E712
                ).update({
                    Encounter.is_active: False,
                    Encounter.end_time: func.coalesce(Encounter.end_time, end_time),
                }, synchronize_session=False)
        return count

    def create_encounter(self, encounter_id: str, start_time: Optional[datetime] = None) -> Encounter:
        """
        Insert a new active encounter.

        Raises:
            ConflictError: encounter_id already exists
        """
        if not encounter_id:
            raise ValidationError("Encounter id must not be empty")

        with _storage_errors('create_encounter'):
            try:
                with self._store.write_scope() as session:
                    encounter = Encounter(
                        encounter_id=encounter_id,
                        start_time=start_time or utcnow(),
                        duration_ms=0,
                        is_active=True,
                    )
                    session.add(encounter)
                    session.commit()
                    session.refresh(encounter)
                    session.expunge(encounter)
            except IntegrityError as e:
                raise ConflictError("Encounter already exists", {'encounter_id': encounter_id}) from e

        logger.info(f"Created encounter {encounter_id}")
        return encounter

    def end_encounter(self, encounter_id: str, end_time: Optional[datetime] = None,
                      duration_ms: int = 0) -> Encounter:
        """
        Mark an encounter closed.

        Raises:
            NotFoundError: no encounter with that id
        """
        with _storage_errors('end_encounter'):
            with self._store.write_scope() as session:
                encounter = session.query(Encounter).filter_by(encounter_id=encounter_id).first()
                if encounter:
                    encounter.is_active = False
                    encounter.end_time = end_time or utcnow()
                    encounter.duration_ms = max(0, int(duration_ms))
                    session.commit()
                    session.refresh(encounter)
                    session.expunge(encounter)

        if encounter is None:
            raise NotFoundError("Encounter not found", {'encounter_id': encounter_id})

        logger.info(f"Closed encounter {encounter_id} after {encounter.duration_ms}ms")
        return encounter

    def get_active_encounters(self) -> List[Encounter]:
        with _storage_errors('get_active_encounters'):
            with self._store.session_scope() as session:
                encounters = session.query(Encounter).filter(
                    Encounter.is_active == True  # noqa: E712
                ).all()
                for e in encounters:
                    session.expunge(e)
                return encounters

    # =========================================================================
    # Player Cache
    # =========================================================================

    def upsert_player(self, snapshot: PlayerSnapshot, seen_at: Optional[datetime] = None) -> None:
        """
        Insert a new player or refresh an existing one.

        first_seen is written on insert only. An empty incoming name keeps
        the cached one.
        """
        snapshot.validate()
        with _storage_errors('upsert_player'):
            with self._store.write_scope() as session:
                self._upsert_player(session, snapshot, seen_at or utcnow())

    def ensure_player(self, uid: int, is_npc: bool = False, seen_at: Optional[datetime] = None) -> None:
        """Create a placeholder row for a UID we have stats for but no profile"""
        if uid <= 0:
            raise ValidationError("Player UID must be a positive integer", {'uid': uid})
        with _storage_errors('ensure_player'):
            with self._store.write_scope() as session:
                self._ensure_player(session, uid, is_npc, seen_at or utcnow())

    def get_player(self, uid: int) -> Optional[PlayerSnapshot]:
        """Get cached player profile (returns None if not found)"""
        with _storage_errors('get_player'):
            with self._store.session_scope() as session:
                player = session.get(Player, uid)
                return _player_to_snapshot(player) if player else None

    def count_players(self) -> int:
        with _storage_errors('count_players'):
            with self._store.session_scope() as session:
                return session.query(func.count(Player.uid)).scalar() or 0

    def _upsert_player(self, session: Session, snapshot: PlayerSnapshot, seen_at: datetime) -> None:
        values = {
            'uid': snapshot.uid,
            'name': snapshot.name or UNKNOWN_PLAYER_NAME,
            'profession_id': snapshot.profession_id,
            'sub_profession_name': snapshot.sub_profession_name,
            'class_id': snapshot.class_id,
            'spec_id': snapshot.spec_id,
            'combat_power': snapshot.combat_power,
            'level': snapshot.level,
            'rank_level': snapshot.rank_level,
            'critical': snapshot.critical,
            'lucky': snapshot.lucky,
            'max_hp': snapshot.max_hp,
            'is_npc': snapshot.is_npc,
            'first_seen': seen_at,
            'last_seen': seen_at,
        }
        stmt = sqlite_insert(Player).values(**values)
        update = {name: stmt.excluded[name] for name in PLAYER_MUTABLE_FIELDS}
        if snapshot.name:
            update['name'] = stmt.excluded.name
        stmt = stmt.on_conflict_do_update(index_elements=[Player.uid], set_=update)
        session.execute(stmt)

    def _ensure_player(self, session: Session, uid: int, is_npc: bool, seen_at: datetime) -> None:
        stmt = sqlite_insert(Player).values(
            uid=uid,
            name=UNKNOWN_PLAYER_NAME,
            is_npc=is_npc,
            first_seen=seen_at,
            last_seen=seen_at,
        ).on_conflict_do_nothing(index_elements=[Player.uid])
        session.execute(stmt)

    # =========================================================================
    # Player Encounter Stats
    # =========================================================================

    def upsert_player_stats(self, encounter_id: str, stats: CombatStatsSnapshot,
                            profile: Optional[PlayerSnapshot] = None) -> None:
        """
        Insert or update the stats row for (stats.uid, encounter_id).

        Args:
            encounter_id: External encounter id
            stats: Aggregated numbers to store
            profile: Live profile for the name/level/power snapshot. When
                omitted the cached player row is used.

        Raises:
            NotFoundError: encounter_id is unknown
        """
        self.save_checkpoint(encounter_id, [(stats, profile)])

    def save_checkpoint(self, encounter_id: str,
                        entries: List[Tuple[CombatStatsSnapshot, Optional[PlayerSnapshot]]]) -> int:
        """
        Write one checkpoint in a single transaction.

        For each (stats, profile) pair the player cache row is refreshed
        (or a placeholder created when profile is None), then the stats row
        is upserted with the point-in-time profile fields.

        Returns:
            Number of stats rows written

        Raises:
            NotFoundError: encounter_id is unknown
        """
        for stats, profile in entries:
            stats.validate()
            if profile is not None:
                profile.validate()

        seen_at = utcnow()
        with _storage_errors('save_checkpoint'):
            with self._store.write_scope() as session:
                encounter_pk = session.query(Encounter.id).filter_by(encounter_id=encounter_id).scalar()
                if encounter_pk is not None:
                    for stats, profile in entries:
                        if profile is not None:
                            self._upsert_player(session, profile, seen_at)
                        else:
                            self._ensure_player(session, stats.uid, stats.is_npc_data, seen_at)
                            cached = session.get(Player, stats.uid)
                            profile = _player_to_snapshot(cached) if cached else None
                        self._upsert_stats(session, encounter_pk, stats, profile)

        if encounter_pk is None:
            raise NotFoundError("Encounter not found", {'encounter_id': encounter_id})

        logger.debug(f"Checkpoint for {encounter_id}: {len(entries)} player(s)")
        return len(entries)

    def _upsert_stats(self, session: Session, encounter_pk: int, stats: CombatStatsSnapshot,
                      profile: Optional[PlayerSnapshot]) -> None:
        values = {
            'player_uid': stats.uid,
            'encounter_id': encounter_pk,
            'total_attack_damage': stats.total_attack_damage,
            'total_taken_damage': stats.total_taken_damage,
            'total_heal': stats.total_heal,
            'start_logged_tick': stats.start_logged_tick,
            'last_logged_tick': stats.last_logged_tick,
            'is_npc_data': stats.is_npc_data,
            'skill_data_json': json.dumps(stats.skills) if stats.skills else None,
            'combat_power_snapshot': profile.combat_power if profile else 0,
            'level_snapshot': profile.level if profile else 0,
            'name_snapshot': (profile.name if profile else '') or UNKNOWN_PLAYER_NAME,
        }
        stmt = sqlite_insert(PlayerEncounterStats).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[PlayerEncounterStats.player_uid, PlayerEncounterStats.encounter_id],
            set_={name: stmt.excluded[name] for name in STATS_MUTABLE_FIELDS},
        )
        session.execute(stmt)

    def count_player_stats(self, encounter_id: Optional[str] = None) -> int:
        with _storage_errors('count_player_stats'):
            with self._store.session_scope() as session:
                query = session.query(func.count(PlayerEncounterStats.id))
                if encounter_id is not None:
                    query = query.join(
                        Encounter, Encounter.id == PlayerEncounterStats.encounter_id
                    ).filter(Encounter.encounter_id == encounter_id)
                return query.scalar() or 0

    # =========================================================================
    # History
    # =========================================================================

    def list_recent_encounters(self, limit: int = 50) -> List[EncounterSummary]:
        """Most recently started encounters first, with player counts"""
        if limit < 0:
            raise ValidationError("limit cannot be negative", {'limit': limit})
        if limit == 0:
            return []

        with _storage_errors('list_recent_encounters'):
            with self._store.session_scope() as session:
                rows = session.query(
                    Encounter, func.count(PlayerEncounterStats.id)
                ).outerjoin(
                    PlayerEncounterStats, PlayerEncounterStats.encounter_id == Encounter.id
                ).group_by(Encounter.id).order_by(
                    desc(Encounter.start_time), desc(Encounter.id)
                ).limit(limit).all()

                return [
                    EncounterSummary(
                        encounter_id=e.encounter_id,
                        start_time=e.start_time,
                        end_time=e.end_time,
                        duration_ms=e.duration_ms or 0,
                        is_active=bool(e.is_active),
                        player_count=count,
                    )
                    for e, count in rows
                ]

    def load_encounter(self, encounter_id: str) -> EncounterData:
        """
        Load an encounter with every player's stats joined to the player cache.

        Raises:
            NotFoundError: no encounter with that id
        """
        data = None
        with _storage_errors('load_encounter'):
            with self._store.session_scope() as session:
                encounter = session.query(Encounter).filter_by(encounter_id=encounter_id).first()
                if encounter:
                    rows = session.query(PlayerEncounterStats, Player).join(
                        Player, Player.uid == PlayerEncounterStats.player_uid
                    ).filter(
                        PlayerEncounterStats.encounter_id == encounter.id
                    ).order_by(desc(PlayerEncounterStats.total_attack_damage)).all()

                    data = EncounterData(
                        encounter_id=encounter.encounter_id,
                        start_time=encounter.start_time,
                        end_time=encounter.end_time,
                        duration_ms=encounter.duration_ms or 0,
                        is_active=bool(encounter.is_active),
                        players=[
                            PlayerEncounterRecord(
                                uid=player.uid,
                                name=stats.name_snapshot or player.name,
                                total_attack_damage=stats.total_attack_damage or 0,
                                total_taken_damage=stats.total_taken_damage or 0,
                                total_heal=stats.total_heal or 0,
                                start_logged_tick=stats.start_logged_tick or 0,
                                last_logged_tick=stats.last_logged_tick or 0,
                                is_npc_data=bool(stats.is_npc_data),
                                combat_power=stats.combat_power_snapshot or 0,
                                level=stats.level_snapshot or 0,
                                profession_id=player.profession_id or 0,
                                sub_profession_name=player.sub_profession_name,
                                class_id=player.class_id or 0,
                                spec_id=player.spec_id or 0,
                                skills=_decode_skills(stats.skill_data_json, player.uid),
                            )
                            for stats, player in rows
                        ],
                    )

        if data is None:
            raise NotFoundError("Encounter not found", {'encounter_id': encounter_id})
        return data

    def count_encounters(self) -> int:
        with _storage_errors('count_encounters'):
            with self._store.session_scope() as session:
                return session.query(func.count(Encounter.id)).scalar() or 0

    # =========================================================================
    # Retention
    # =========================================================================

    def delete_old_encounters(self, keep_count: int) -> int:
        """
        Keep the keep_count most recently started encounters and delete the
        rest together with their stats rows, all in one transaction.

        An encounter that is still active is never deleted.

        Returns:
            Number of encounters deleted
        """
        if keep_count < 0:
            raise ValidationError("keep_count cannot be negative", {'keep_count': keep_count})

        deleted = 0
        with _storage_errors('delete_old_encounters'):
            with self._store.write_scope() as session:
                stale_ids = [
                    row[0] for row in session.query(Encounter.id).filter(
                        Encounter.is_active == False  # noqa: E712
                    ).filter(
                        ~Encounter.id.in_(
                            select(Encounter.id).order_by(
                                desc(Encounter.start_time), desc(Encounter.id)
                            ).limit(keep_count)
                        )
                    ).all()
                ]

                for start in range(0, len(stale_ids), DELETE_CHUNK_SIZE):
                    chunk = stale_ids[start:start + DELETE_CHUNK_SIZE]
                    session.query(PlayerEncounterStats).filter(
                        PlayerEncounterStats.encounter_id.in_(chunk)
                    ).delete(synchronize_session=False)
                    deleted += session.query(Encounter).filter(
                        Encounter.id.in_(chunk)
                    ).delete(synchronize_session=False)

        if deleted:
            logger.info(f"Retention cleanup removed {deleted} encounter(s), kept {keep_count}")
        return deleted
