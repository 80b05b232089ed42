"""
Encounter Service

The encounter lifecycle state machine. Decides what gets written for an
encounter and keeps the "at most one active encounter" rule.

States:
    NO_ACTIVE_ENCOUNTER --start()--> ENCOUNTER_ACTIVE
    ENCOUNTER_ACTIVE    --end()----> NO_ACTIVE_ENCOUNTER

start() while active and end() while inactive are silent no-ops, so
duplicate or out-of-order lifecycle signals are harmless. Checkpoint
failures are logged and never change the state.
"""

import logging
import threading
import uuid
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from persistence.models import utcnow
from persistence.records import (
    PlayerSnapshot, CombatStatsSnapshot, EncounterSummary, EncounterData,
)
from persistence.errors import PersistenceError, NotFoundError, ConflictError, StoreIOError, ValidationError

logger = logging.getLogger(__name__)


class EncounterState(Enum):
    """Lifecycle states"""
    NO_ACTIVE_ENCOUNTER = "no_active_encounter"
    ENCOUNTER_ACTIVE = "encounter_active"


def generate_encounter_id(now: Optional[datetime] = None) -> str:
    """Time-ordered id with a random suffix, e.g. 20261019143052123456-9f1c2ab0"""
    now = now or utcnow()
    return f"{now:%Y%m%d%H%M%S%f}-{uuid.uuid4().hex[:8]}"


class EncounterService:
    """
    Owns the active encounter and what is persisted for it.

    Usage:
        service = EncounterService(repository)
        service.start()
        service.save_stats(players, stats)       # as often as you like
        service.end(duration_ms, players, stats)  # final save + close
    """

    def __init__(self, repository,
                 id_factory: Callable[[], str] = generate_encounter_id,
                 clock: Callable[[], datetime] = utcnow):
        """
        Initialize service.

        Args:
            repository: EncounterRepository over an initialized Store
            id_factory: Produces new external encounter ids
            clock: Returns the current naive-UTC time
        """
        self._repository = repository
        self._id_factory = id_factory
        self._clock = clock

        # Guards every field below; held across the store call of each transition
        self._lock = threading.RLock()
        self._active_encounter_id: Optional[str] = None
        self._active_since: Optional[datetime] = None
        self._last_checkpoint_at: Optional[datetime] = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> EncounterState:
        with self._lock:
            if self._active_encounter_id is None:
                return EncounterState.NO_ACTIVE_ENCOUNTER
            return EncounterState.ENCOUNTER_ACTIVE

    @property
    def is_active(self) -> bool:
        return self.state == EncounterState.ENCOUNTER_ACTIVE

    @property
    def active_encounter_id(self) -> Optional[str]:
        with self._lock:
            return self._active_encounter_id

    @property
    def active_since(self) -> Optional[datetime]:
        with self._lock:
            return self._active_since

    @property
    def last_checkpoint_at(self) -> Optional[datetime]:
        with self._lock:
            return self._last_checkpoint_at

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> Optional[str]:
        """
        Begin a new encounter.

        Returns:
            The active encounter id (the existing one if already active),
            or None if a concurrent creator won a duplicate-id race.

        Raises:
            StoreIOError: The encounter row could not be written
        """
        with self._lock:
            if self._active_encounter_id is not None:
                logger.debug(f"Start ignored, encounter {self._active_encounter_id} already active")
                return self._active_encounter_id

            encounter_id = self._id_factory()
            started_at = self._clock()
            try:
                self._repository.create_encounter(encounter_id, started_at)
            except ConflictError:
                logger.warning(f"Encounter {encounter_id} already exists, ignoring duplicate start")
                return None

            self._active_encounter_id = encounter_id
            self._active_since = started_at
            self._last_checkpoint_at = None
            logger.info(f"⚔️ Encounter started: {encounter_id}")
            return encounter_id

    def save_stats(self, player_snapshots: Dict[int, PlayerSnapshot],
                   stats_snapshots: Dict[int, CombatStatsSnapshot]) -> int:
        """
        Checkpoint the current stats into the active encounter.

        No-op unless an encounter is active. Storage failures are logged
        and swallowed; the next checkpoint retries with fresh data.

        Returns:
            Number of player stats rows written
        """
        with self._lock:
            encounter_id = self._active_encounter_id
            if encounter_id is None:
                return 0

            entries = self._build_entries(player_snapshots or {}, stats_snapshots or {})
            if not entries:
                return 0

            try:
                written = self._repository.save_checkpoint(encounter_id, entries)
            except PersistenceError as e:
                logger.error(f"Checkpoint for encounter {encounter_id} failed: {e}")
                return 0

            self._last_checkpoint_at = self._clock()
            return written

    def end(self, duration_ms: int,
            player_snapshots: Optional[Dict[int, PlayerSnapshot]] = None,
            stats_snapshots: Optional[Dict[int, CombatStatsSnapshot]] = None) -> bool:
        """
        Final save (when stats are given) and close the active encounter.

        No-op when nothing is active. If the row can't be closed the
        encounter stays active so a later end() retries.

        Returns:
            True if an encounter was closed
        """
        with self._lock:
            encounter_id = self._active_encounter_id
            if encounter_id is None:
                logger.debug("End ignored, no active encounter")
                return False

            if stats_snapshots:
                self.save_stats(player_snapshots or {}, stats_snapshots)

            try:
                self._repository.end_encounter(encounter_id, self._clock(), duration_ms)
            except NotFoundError:
                # Row is gone, so nothing is left active in the store
                logger.warning(f"Encounter {encounter_id} vanished before it could be closed")
            except PersistenceError as e:
                logger.error(f"Closing encounter {encounter_id} failed: {e}")
                return False

            self._active_encounter_id = None
            self._active_since = None
            logger.info(f"🏁 Encounter ended: {encounter_id} ({duration_ms}ms)")
            return True

    def _build_entries(self, player_snapshots: Dict[int, PlayerSnapshot],
                       stats_snapshots: Dict[int, CombatStatsSnapshot]
                       ) -> List[Tuple[CombatStatsSnapshot, Optional[PlayerSnapshot]]]:
        entries = []
        for stats in stats_snapshots.values():
            try:
                stats.validate()
            except ValidationError as e:
                logger.warning(f"Skipping malformed stats snapshot: {e}")
                continue

            profile = player_snapshots.get(stats.uid)
            if profile is not None:
                try:
                    profile.validate()
                except ValidationError as e:
                    logger.warning(f"Ignoring malformed profile for {stats.uid}: {e}")
                    profile = None
            entries.append((stats, profile))
        return entries

    # =========================================================================
    # Player Cache
    # =========================================================================

    def update_player_cache(self, snapshot: PlayerSnapshot) -> bool:
        """
        Refresh one player's cached profile (no stats). Works in either state.

        Raises:
            ValidationError: snapshot is malformed
        """
        snapshot.validate()
        try:
            self._repository.upsert_player(snapshot, self._clock())
        except StoreIOError as e:
            logger.error(f"Player cache update for {snapshot.uid} failed: {e}")
            return False
        return True

    def get_cached_player(self, uid: int) -> Optional[PlayerSnapshot]:
        """Cached profile for a UID, used to resolve "Unknown" players"""
        return self._repository.get_player(uid)

    # =========================================================================
    # History / Maintenance
    # =========================================================================

    def list_recent(self, count: int = 50) -> List[EncounterSummary]:
        return self._repository.list_recent_encounters(count)

    def load(self, encounter_id: str) -> EncounterData:
        """
        Raises:
            NotFoundError: no such encounter
        """
        return self._repository.load_encounter(encounter_id)

    def cleanup(self, keep_count: int = 100) -> int:
        """
        Delete all but the keep_count newest encounters.

        Storage failures are logged and reported as 0 deleted; a later
        call can succeed once the condition clears.
        """
        try:
            return self._repository.delete_old_encounters(keep_count)
        except StoreIOError as e:
            logger.error(f"Encounter cleanup failed: {e}")
            return 0
