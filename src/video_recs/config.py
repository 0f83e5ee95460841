"""
Configuration constants for the video recommendation service.

Values can be overridden via environment variables. The engine itself never
reads these globals; it receives an EngineConfig built by EngineConfig.from_env().
"""
import os
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("VIDEO_RECS_DB", "data/video_recs.db"))

# Recommendation limits
MAX_VIDEOS_PER_REQUEST = _get_int_env("VIDEO_RECS_MAX_PER_REQUEST", 15, min_val=1)
POPULARITY_DAYS = _get_int_env("VIDEO_RECS_POPULARITY_DAYS", 3, min_val=1)
REQUEST_DEADLINE_SECONDS = _get_float_env("VIDEO_RECS_DEADLINE_SECONDS", 2.0, min_val=0.0)  # 0 disables

# Largest OFFSET a page may translate to (SQLite INTEGER is signed 64-bit)
MAX_RESULT_OFFSET = 2**63 - 1

# Placeholder id for backends that cannot take an empty NOT IN set
EXCLUSION_SENTINEL_ID = -1

# Retry for transient store errors ("database is locked")
STORE_RETRIES = _get_int_env("VIDEO_RECS_STORE_RETRIES", 3, min_val=1)
STORE_RETRY_DELAY = 0.05
STORE_BUSY_TIMEOUT_MS = 5000

# HTTP server
SERVER_HOST = os.environ.get("VIDEO_RECS_HOST", "127.0.0.1")
SERVER_PORT = _get_int_env("VIDEO_RECS_PORT", 8000, min_val=1)

# Import/export batching
IMPORT_CHUNK_SIZE = 500
EXPORT_CHUNK_SIZE = 1000


@dataclass(frozen=True)
class EngineConfig:
    max_videos_per_request: int = 15
    popularity_days: int = 3
    deadline_seconds: float | None = 2.0

    def __post_init__(self):
        if self.max_videos_per_request < 1:
            raise ValueError("max_videos_per_request must be positive")
        if self.popularity_days < 1:
            raise ValueError("popularity_days must be positive")
        if self.deadline_seconds is not None and self.deadline_seconds < 0:
            raise ValueError("deadline_seconds must not be negative")

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build engine settings from the module-level constants."""
        return cls(
            max_videos_per_request=MAX_VIDEOS_PER_REQUEST,
            popularity_days=POPULARITY_DAYS,
            deadline_seconds=REQUEST_DEADLINE_SECONDS or None,
        )
