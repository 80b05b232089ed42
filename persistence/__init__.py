"""
Persistence Module

SQLite database for tracking:
- Player identity cache (UID -> latest profile)
- Encounters (bounded combat sessions)
- Per-player, per-encounter statistics
"""

from .models import (
    Player,
    Encounter,
    PlayerEncounterStats,
)
from .records import (
    PlayerSnapshot,
    CombatStatsSnapshot,
    EncounterSummary,
    EncounterData,
    PlayerEncounterRecord,
)
from .errors import (
    PersistenceError,
    NotFoundError,
    ConflictError,
    StoreIOError,
    ValidationError,
)
from .database import Store, backup, size_in_bytes, size_in_mb, get_default_database_path
from .encounter_repository import EncounterRepository

__all__ = [
    # Models
    'Player',
    'Encounter',
    'PlayerEncounterStats',
    # Records
    'PlayerSnapshot',
    'CombatStatsSnapshot',
    'EncounterSummary',
    'EncounterData',
    'PlayerEncounterRecord',
    # Errors
    'PersistenceError',
    'NotFoundError',
    'ConflictError',
    'StoreIOError',
    'ValidationError',
    # Database
    'Store',
    'backup',
    'size_in_bytes',
    'size_in_mb',
    'get_default_database_path',
    # Repository
    'EncounterRepository',
]
