"""
User Settings

Per-install overrides kept in a small JSON file next to the database:

    {
      "database_path": "~/ledgers/raid.db",
      "keep_count": 250,
      "cleanup_on_startup": false
    }

Anything missing or malformed falls back to the process config, so the
file only ever holds what the user changed.
"""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, Optional

from config import config

logger = logging.getLogger(__name__)


def settings_path() -> Path:
    """LEDGER_SETTINGS_FILE, else <DATA_DIR>/user_settings.json"""
    override = os.environ.get('LEDGER_SETTINGS_FILE')
    if override:
        return Path(override)
    return Path(config.DATA_DIR) / "user_settings.json"


@dataclass
class UserSettings:
    """Overrides for the database location and retention policy"""
    database_path: Optional[str] = None
    keep_count: int = field(default_factory=lambda: config.DEFAULT_KEEP_COUNT)
    cleanup_on_startup: bool = field(default_factory=lambda: config.CLEANUP_ON_STARTUP)

    @property
    def resolved_database_path(self) -> str:
        if self.database_path:
            return os.path.expanduser(self.database_path)
        return config.DATABASE_PATH

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UserSettings':
        result = cls()

        path = data.get('database_path')
        if path is not None and not isinstance(path, str):
            logger.warning(f"Ignoring non-string database_path: {path!r}")
        elif path:
            result.database_path = path

        keep = data.get('keep_count')
        if keep is not None:
            if isinstance(keep, int) and not isinstance(keep, bool) and keep >= 0:
                result.keep_count = keep
            else:
                logger.warning(f"Ignoring invalid keep_count: {keep!r}")

        cleanup = data.get('cleanup_on_startup')
        if isinstance(cleanup, bool):
            result.cleanup_on_startup = cleanup
        elif cleanup is not None:
            logger.warning(f"Ignoring invalid cleanup_on_startup: {cleanup!r}")

        return result

    @classmethod
    def load(cls, path: Optional[Path] = None) -> 'UserSettings':
        """Read the settings file; config defaults when absent or unreadable"""
        path = path or settings_path()
        if not path.exists():
            return cls()

        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read settings from {path}: {e}")
            return cls()

        if not isinstance(data, dict):
            logger.error(f"Settings file {path} does not hold an object, ignoring")
            return cls()
        return cls.from_dict(data)

    def save(self, path: Optional[Path] = None) -> bool:
        path = path or settings_path()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w') as f:
                json.dump(asdict(self), f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save settings to {path}: {e}")
            return False
        logger.debug(f"Saved settings to {path}")
        return True
