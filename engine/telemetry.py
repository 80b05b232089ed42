"""
Telemetry Source

The live feed that tells us when combat sections begin, when the game
server connection comes and goes, and when a player's profile changes.
Packet decoding and damage aggregation happen elsewhere; this module only
defines the contract the encounter sync consumes, plus an in-process
implementation fed by the HTTP ingestion endpoints.

Subscribers register callbacks and get back an unsubscribe handle:

    unsubscribe = telemetry.subscribe_section_boundary(on_section)
    ...
    unsubscribe()
"""

import logging
import threading
from datetime import timedelta
from typing import Callable, Dict, List

from persistence.records import PlayerSnapshot, CombatStatsSnapshot

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]


class _Signal:
    """A list of callbacks with thread-safe add/remove and guarded dispatch"""

    def __init__(self, name: str):
        self.name = name
        self._callbacks: List[Callable] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable) -> Unsubscribe:
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def emit(self, *args) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Error in {self.name} callback: {e}")

    def __len__(self):
        with self._lock:
            return len(self._callbacks)


class TelemetrySource:
    """
    Observer hub for the three notifications the encounter sync listens to.

    Concrete sources override current_player_snapshots() and
    current_stats_snapshots(); those are pulled synchronously at
    checkpoint time.
    """

    def __init__(self, section_timeout: timedelta = timedelta(seconds=15)):
        self.section_timeout = section_timeout
        self._section_boundary = _Signal('section boundary')
        self._connection_state = _Signal('connection state')
        self._player_info = _Signal('player info')

    def subscribe_section_boundary(self, callback: Callable[[], None]) -> Unsubscribe:
        """Callback signature: callback()"""
        return self._section_boundary.subscribe(callback)

    def subscribe_connection_state(self, callback: Callable[[bool], None]) -> Unsubscribe:
        """Callback signature: callback(is_connected: bool)"""
        return self._connection_state.subscribe(callback)

    def subscribe_player_info(self, callback: Callable[[PlayerSnapshot], None]) -> Unsubscribe:
        """Callback signature: callback(player: PlayerSnapshot)"""
        return self._player_info.subscribe(callback)

    def subscriber_count(self) -> int:
        return len(self._section_boundary) + len(self._connection_state) + len(self._player_info)

    def current_player_snapshots(self) -> Dict[int, PlayerSnapshot]:
        return {}

    def current_stats_snapshots(self) -> Dict[int, CombatStatsSnapshot]:
        return {}

    def _notify_section_boundary(self) -> None:
        self._section_boundary.emit()

    def _notify_connection_state(self, is_connected: bool) -> None:
        self._connection_state.emit(is_connected)

    def _notify_player_info(self, snapshot: PlayerSnapshot) -> None:
        self._player_info.emit(snapshot)


class LiveTelemetry(TelemetrySource):
    """
    In-process telemetry source.

    Holds the latest player profiles and per-section stats pushed to it and
    fans notifications out to subscribers on the caller's thread.
    """

    def __init__(self, section_timeout: timedelta = timedelta(seconds=15)):
        super().__init__(section_timeout)
        self._lock = threading.Lock()
        self._players: Dict[int, PlayerSnapshot] = {}
        self._stats: Dict[int, CombatStatsSnapshot] = {}
        self.is_connected = False

    def current_player_snapshots(self) -> Dict[int, PlayerSnapshot]:
        with self._lock:
            return dict(self._players)

    def current_stats_snapshots(self) -> Dict[int, CombatStatsSnapshot]:
        with self._lock:
            return dict(self._stats)

    def record_stats(self, stats: CombatStatsSnapshot) -> None:
        """Replace the running totals for one player in the current section"""
        stats.validate()
        with self._lock:
            self._stats[stats.uid] = stats

    def reset_section(self) -> None:
        """Forget per-section stats (player profiles are kept)"""
        with self._lock:
            self._stats.clear()

    def publish_section_boundary(self) -> None:
        logger.debug("Section boundary")
        self._notify_section_boundary()

    def publish_connection_state(self, is_connected: bool) -> None:
        with self._lock:
            changed = self.is_connected != is_connected
            self.is_connected = is_connected
        if changed:
            logger.info(f"Server connection {'established' if is_connected else 'lost'}")
        self._notify_connection_state(is_connected)

    def publish_player_info(self, snapshot: PlayerSnapshot) -> None:
        snapshot.validate()
        with self._lock:
            self._players[snapshot.uid] = snapshot
        self._notify_player_info(snapshot)
