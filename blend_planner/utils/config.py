"""
Configuration management for the Blend Planner application.

This module handles:
- Database path and URL configuration
- Environment-specific configuration (development vs. production)
- Blending policy overrides (allocation unit, reversal window, lot format)

Environment variables:
    BLEND_PLANNER_ENV: 'production' (default) or 'development'
    BLEND_PLANNER_DB_TYPE: 'sqlite' (default) or 'postgresql'
    DATABASE_URL: Connection URL, required when DB type is postgresql
    BLEND_PLANNER_DB_TIMEOUT: SQLite busy timeout in seconds (default 30)
    BLEND_PLANNER_REVERSAL_HOURS: Blend undo window in hours (default 48)
    BLEND_PLANNER_BAGS_PER_BATCH: Bags contributed by each batch (default 10)
    BLEND_PLANNER_KG_PER_BAG: Weight of one bag in kg (default 25)
    BLEND_PLANNER_LOT_PREFIX: Lot number prefix (default 'HG')
    BLEND_PLANNER_LOT_SITE: Lot number site code (default 'MFI')
"""

import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from .constants import (
    BAGS_PER_BATCH,
    DATABASE_FILENAME,
    KG_PER_BAG,
    LOT_NUMBER_PREFIX,
    LOT_NUMBER_SITE,
    REVERSAL_WINDOW_HOURS,
)

logger = logging.getLogger(__name__)

VALID_DATABASE_TYPES = ("sqlite", "postgresql")


def _positive_int_env(name: str, default: int) -> int:
    """Read a positive integer from the environment, falling back on bad input."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid {name} value '{raw}', using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Invalid {name} value '{raw}', using default {default}")
        return default
    return value


class Config:
    """
    Application configuration manager.

    Handles database location, connection settings and the blending policy
    values that operators may tune per site.
    """

    def __init__(self, environment: str = "production"):
        """
        Initialize configuration.

        Args:
            environment: Environment mode - 'production' or 'development'
        """
        self.environment = environment
        if environment == "development":
            self._base_dir = self._get_project_data_dir()
        else:
            self._base_dir = self._get_user_documents_dir()

        self._database_dir = self._base_dir
        self._database_path = self._database_dir / DATABASE_FILENAME

    def _get_project_data_dir(self) -> Path:
        """
        Get the project's data directory for development.

        Returns:
            Path to project data/ directory
        """
        project_root = Path(__file__).parent.parent.parent
        return project_root / "data"

    def _get_user_documents_dir(self) -> Path:
        """
        Get the user's Documents directory for production.

        Returns:
            Path to user's Documents folder with app subdirectory
        """
        return Path.home() / "Documents" / "BlendPlanner"

    def ensure_directories(self) -> None:
        """Create the database directory if it doesn't exist."""
        self._database_dir.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        """Full path to the SQLite database file."""
        return self._database_path

    @property
    def database_type(self) -> str:
        """Database backend, 'sqlite' or 'postgresql'."""
        raw = os.environ.get("BLEND_PLANNER_DB_TYPE", "sqlite").strip().lower()
        if raw not in VALID_DATABASE_TYPES:
            logger.warning(f"Invalid BLEND_PLANNER_DB_TYPE '{raw}', using sqlite")
            return "sqlite"
        return raw

    @property
    def database_url(self) -> str:
        """
        SQLAlchemy database URL.

        Returns:
            Database URL string for SQLAlchemy

        Raises:
            ValueError: If postgresql is selected but DATABASE_URL is not set
        """
        if self.database_type == "postgresql":
            url = os.environ.get("DATABASE_URL")
            if not url:
                raise ValueError(
                    "DATABASE_URL must be set when BLEND_PLANNER_DB_TYPE=postgresql"
                )
            return url

        db_path_str = str(self._database_path).replace("\\", "/")
        return f"sqlite:///{db_path_str}"

    @property
    def db_timeout(self) -> int:
        """SQLite busy timeout in seconds."""
        return _positive_int_env("BLEND_PLANNER_DB_TIMEOUT", 30)

    @property
    def db_connect_args(self) -> Dict[str, Any]:
        """Driver connect args for the configured backend."""
        if self.database_type == "sqlite":
            return {"check_same_thread": False, "timeout": self.db_timeout}
        return {}

    @property
    def reversal_window(self) -> timedelta:
        """How long after creation a blend may still be deleted."""
        hours = _positive_int_env("BLEND_PLANNER_REVERSAL_HOURS", REVERSAL_WINDOW_HOURS)
        return timedelta(hours=hours)

    @property
    def bags_per_batch(self) -> int:
        """Fixed allocation unit contributed by each selected batch."""
        return _positive_int_env("BLEND_PLANNER_BAGS_PER_BATCH", BAGS_PER_BATCH)

    @property
    def kg_per_bag(self) -> int:
        """Weight of one bag in kilograms."""
        return _positive_int_env("BLEND_PLANNER_KG_PER_BAG", KG_PER_BAG)

    @property
    def lot_prefix(self) -> str:
        """Prefix used by generated lot numbers."""
        return os.environ.get("BLEND_PLANNER_LOT_PREFIX", LOT_NUMBER_PREFIX)

    @property
    def lot_site(self) -> str:
        """Site code used by generated lot numbers."""
        return os.environ.get("BLEND_PLANNER_LOT_SITE", LOT_NUMBER_SITE)

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    def database_exists(self) -> bool:
        """
        Check if database file exists.

        Returns:
            True if database file exists, False otherwise
        """
        return self._database_path.exists()

    def __repr__(self) -> str:
        """String representation of config."""
        return (
            f"Config(environment='{self.environment}', " f"database_path='{self._database_path}')"
        )


# Global configuration instance
_config_instance: Optional[Config] = None


def get_config(environment: Optional[str] = None) -> Config:
    """
    Get the global configuration instance.

    Once created, the singleton's environment cannot be changed by passing
    a different environment argument - this prevents accidental database
    switching mid-session.

    Args:
        environment: Optional environment for initial creation. If None, uses
                    BLEND_PLANNER_ENV or defaults to production. Ignored if
                    singleton already exists.

    Returns:
        Config instance
    """
    global _config_instance

    if _config_instance is None:
        if environment is None:
            environment = os.environ.get("BLEND_PLANNER_ENV", "production")
        _config_instance = Config(environment)
    elif environment is not None and environment != _config_instance.environment:
        logger.warning(
            f"get_config() called with environment='{environment}' but singleton "
            f"already exists with environment='{_config_instance.environment}'. "
            f"Returning existing singleton to prevent database switching."
        )

    return _config_instance


def reset_config():
    """
    Reset the global configuration instance.

    Useful for testing.
    """
    global _config_instance
    _config_instance = None


def get_database_url() -> str:
    """
    Get the database URL.

    Returns:
        SQLAlchemy database URL string
    """
    return get_config().database_url
