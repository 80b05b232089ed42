import os
from dataclasses import dataclass


@dataclass
class Config:
    """Configuration for the combat ledger"""

    # Flask settings
    SECRET_KEY: str = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-prod')
    HOST: str = os.environ.get('LEDGER_HOST', '127.0.0.1')
    PORT: int = int(os.environ.get('LEDGER_PORT', '5011'))
    DEBUG: bool = os.environ.get('FLASK_DEBUG', 'False').lower() == 'true'

    # Checkpointing
    # A periodic save only runs if this many seconds passed since the last one.
    # Saves requested inside the window are dropped, not queued.
    MIN_SAVE_INTERVAL_SECONDS: float = 3.0

    # Elapsed time recorded for encounters closed by a section boundary.
    # Mirrors the telemetry source's own section timeout.
    SECTION_TIMEOUT_SECONDS: float = 15.0

    # History / retention
    DEFAULT_HISTORY_COUNT: int = 50
    DEFAULT_KEEP_COUNT: int = 100
    CLEANUP_ON_STARTUP: bool = True

    # Worker threads that run telemetry handlers off the dispatch path
    SYNC_WORKERS: int = 2

    # Paths
    BASE_DIR: str = os.path.dirname(os.path.abspath(__file__))
    DATA_DIR: str = os.environ.get('LEDGER_DATA_DIR', os.path.join(BASE_DIR, 'data'))
    LOG_DIR: str = os.environ.get('LEDGER_LOG_DIR', os.path.join(BASE_DIR, 'logs'))
    DATABASE_FILENAME: str = 'combat_ledger.db'

    # Database
    @property
    def DATABASE_PATH(self) -> str:
        return os.path.join(self.DATA_DIR, self.DATABASE_FILENAME)

    def __post_init__(self):
        """Ensure directories exist"""
        os.makedirs(self.DATA_DIR, exist_ok=True)
        os.makedirs(self.LOG_DIR, exist_ok=True)


# Create global config instance
config = Config()
