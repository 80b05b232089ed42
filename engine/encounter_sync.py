"""
Encounter Sync

Bridges the telemetry source's notifications to the encounter service.

The telemetry source fires its callbacks from its own dispatch path, with
no ordering between the three notification kinds and at a rate far above
what the database should see. This module:

- runs each notification's work on a supervised worker, so persistence
  never slows down or raises into the dispatch path
- throttles periodic checkpoints to one per MIN_SAVE_INTERVAL_SECONDS
- maps section boundaries / connects / disconnects onto start and end

One EncounterSync is created and owned by the process entry point; there
is no module-level instance.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from persistence import Store, EncounterRepository, ValidationError
from persistence.records import PlayerSnapshot, EncounterSummary, EncounterData
from .encounter_service import EncounterService
from .supervisor import TaskSupervisor
from .telemetry import TelemetrySource

logger = logging.getLogger(__name__)


class CheckpointThrottle:
    """
    Admits at most one checkpoint per min_interval seconds.

    Requests inside the window are dropped, not queued.
    """

    def __init__(self, min_interval: float, clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self._clock = clock
        self._last: Optional[float] = None
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        with self._lock:
            now = self._clock()
            if self._last is not None and now - self._last < self.min_interval:
                return False
            self._last = now
            return True

    def mark(self) -> None:
        """Record a checkpoint that bypassed the throttle (forced save)"""
        with self._lock:
            self._last = self._clock()

    def reset(self) -> None:
        with self._lock:
            self._last = None

    @property
    def last_checkpoint(self) -> Optional[float]:
        with self._lock:
            return self._last


class EncounterSync:
    """
    Owns the process-wide persistence lifecycle.

    Usage:
        telemetry = LiveTelemetry()
        sync = EncounterSync(telemetry)
        sync.initialize('/path/to/ledger.db')
        ...
        sync.shutdown()

    Every public method is a no-op (or returns an empty result) while the
    sync is not initialized.
    """

    def __init__(self, telemetry: TelemetrySource, cfg=None, synchronous: bool = False,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the sync (nothing is opened until initialize()).

        Args:
            telemetry: Source of section/connection/player notifications
            cfg: Config instance (defaults to the global config)
            synchronous: Run handlers inline instead of on worker threads
            clock: Monotonic clock used by the checkpoint throttle
        """
        if cfg is None:
            from config import config as cfg

        self.telemetry = telemetry
        self._config = cfg
        self._synchronous = synchronous
        self._clock = clock

        self._lock = threading.RLock()
        self._store: Optional[Store] = None
        self._service: Optional[EncounterService] = None
        self._supervisor: Optional[TaskSupervisor] = None
        self._throttle = CheckpointThrottle(cfg.MIN_SAVE_INTERVAL_SECONDS, clock)
        self._unsubscribers: List[Callable[[], None]] = []
        self._listeners: List[Callable[[str, dict], None]] = []

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize(self, database_path: Optional[str] = None) -> bool:
        """
        Open the store, build the service and subscribe to telemetry.

        A second call while initialized does nothing.

        Raises:
            StoreIOError: The database could not be opened
        """
        with self._lock:
            if self._service is not None:
                return True

            store = Store.initialize(database_path)
            self._store = store
            self._service = EncounterService(EncounterRepository(store))
            self._supervisor = TaskSupervisor(
                max_workers=self._config.SYNC_WORKERS,
                synchronous=self._synchronous,
            )
            self._throttle.reset()
            self._unsubscribers = [
                self.telemetry.subscribe_section_boundary(self.on_section_boundary),
                self.telemetry.subscribe_connection_state(self.on_connection_state_changed),
                self.telemetry.subscribe_player_info(self.on_player_info_updated),
            ]

        logger.info(f"📊 Encounter sync initialized: {store.path}")
        return True

    def shutdown(self) -> None:
        """Unsubscribe, let running handlers finish, close the store"""
        with self._lock:
            if self._service is None:
                return

            for unsubscribe in self._unsubscribers:
                unsubscribe()
            self._unsubscribers = []

            self._service = None
            supervisor, self._supervisor = self._supervisor, None
            store, self._store = self._store, None

        if supervisor is not None:
            supervisor.shutdown(wait=True)
        if store is not None:
            store.close()
        logger.info("Encounter sync shut down")

    @property
    def is_initialized(self) -> bool:
        return self._service is not None

    @property
    def service(self) -> Optional[EncounterService]:
        return self._service

    @property
    def store(self) -> Optional[Store]:
        return self._store

    @property
    def throttle(self) -> CheckpointThrottle:
        return self._throttle

    def add_listener(self, callback: Callable[[str, dict], None]) -> Callable[[], None]:
        """
        Register a callback for lifecycle changes.

        Callback signature: callback(event_name: str, payload: dict)
        Events: 'encounter_started', 'encounter_ended', 'checkpoint_saved'
        """
        with self._lock:
            self._listeners.append(callback)

        def remove():
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return remove

    def _notify(self, event_name: str, payload: dict) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(event_name, payload)
            except Exception as e:
                logger.error(f"Error in {event_name} listener: {e}")

    # =========================================================================
    # Telemetry handlers (never raise)
    # =========================================================================

    def on_section_boundary(self) -> None:
        self._dispatch('section boundary', self._handle_section_boundary)

    def on_connection_state_changed(self, is_connected: bool) -> None:
        self._dispatch('connection state', self._handle_connection_state, is_connected)

    def on_player_info_updated(self, snapshot: PlayerSnapshot) -> None:
        self._dispatch('player info', self._handle_player_info, snapshot)

    def _dispatch(self, name: str, handler: Callable, *args) -> None:
        supervisor = self._supervisor
        if supervisor is None:
            return
        try:
            supervisor.submit(name, handler, *args)
        except Exception:
            logger.exception(f"Could not schedule '{name}' handler")

    def _handle_section_boundary(self) -> None:
        service = self._service
        if service is None:
            return
        if service.is_active:
            duration_ms = int(self.telemetry.section_timeout.total_seconds() * 1000)
            self._end(service, duration_ms)
        self._start(service)

    def _handle_connection_state(self, is_connected: bool) -> None:
        service = self._service
        if service is None:
            return
        if is_connected:
            self._start(service)
        elif service.is_active:
            # Elapsed time isn't meaningful at disconnect
            self._end(service, 0)

    def _handle_player_info(self, snapshot: PlayerSnapshot) -> None:
        service = self._service
        if service is None:
            return
        try:
            service.update_player_cache(snapshot)
        except ValidationError as e:
            logger.warning(f"Player info rejected, cache not updated: {e}")
        self.save_current_encounter()

    def _start(self, service: EncounterService) -> Optional[str]:
        was_active = service.is_active
        encounter_id = service.start()
        if encounter_id and not was_active:
            self._throttle.reset()
            self._notify('encounter_started', {'encounter_id': encounter_id})
        return encounter_id

    def _end(self, service: EncounterService, duration_ms: int) -> bool:
        encounter_id = service.active_encounter_id
        closed = service.end(
            duration_ms,
            self.telemetry.current_player_snapshots(),
            self.telemetry.current_stats_snapshots(),
        )
        if closed:
            self._throttle.mark()
            self._notify('encounter_ended', {
                'encounter_id': encounter_id,
                'duration_ms': duration_ms,
            })
        return closed

    # =========================================================================
    # Manual overrides
    # =========================================================================

    def start_encounter(self) -> Optional[str]:
        service = self._service
        if service is None:
            return None
        return self._start(service)

    def end_encounter(self, duration_ms: int) -> bool:
        """Final save and close of the active encounter"""
        service = self._service
        if service is None:
            return False
        return self._end(service, duration_ms)

    def save_current_encounter(self, force: bool = False) -> bool:
        """
        Checkpoint the telemetry's current stats into the active encounter.

        Unless forced, the save is skipped when the previous one ran less
        than MIN_SAVE_INTERVAL_SECONDS ago.

        Returns:
            True if a checkpoint was executed
        """
        service = self._service
        if service is None or not service.is_active:
            return False

        if force:
            self._throttle.mark()
        elif not self._throttle.try_acquire():
            logger.debug("Checkpoint skipped (throttled)")
            return False

        written = service.save_stats(
            self.telemetry.current_player_snapshots(),
            self.telemetry.current_stats_snapshots(),
        )
        if written:
            self._notify('checkpoint_saved', {
                'encounter_id': service.active_encounter_id,
                'players': written,
            })
        return True

    # =========================================================================
    # History / Maintenance
    # =========================================================================

    def list_recent_encounters(self, count: Optional[int] = None) -> List[EncounterSummary]:
        service = self._service
        if service is None:
            return []
        if count is None:
            count = self._config.DEFAULT_HISTORY_COUNT
        return service.list_recent(count)

    def load_encounter(self, encounter_id: str) -> Optional[EncounterData]:
        """
        Raises:
            NotFoundError: no such encounter
        """
        service = self._service
        if service is None:
            return None
        return service.load(encounter_id)

    def get_cached_player(self, uid: int) -> Optional[PlayerSnapshot]:
        service = self._service
        if service is None:
            return None
        return service.get_cached_player(uid)

    def cleanup_old_encounters(self, keep_count: Optional[int] = None) -> int:
        service = self._service
        if service is None:
            return 0
        if keep_count is None:
            keep_count = self._config.DEFAULT_KEEP_COUNT
        return service.cleanup(keep_count)

    def status(self) -> Dict:
        service = self._service
        if service is None:
            return {'initialized': False}
        active_since = service.active_since
        return {
            'initialized': True,
            'state': service.state.value,
            'active_encounter_id': service.active_encounter_id,
            'active_since': active_since.isoformat() if active_since else None,
            'database_path': self._store.path if self._store else None,
            'handler_failures': self._supervisor.failures if self._supervisor else 0,
        }
