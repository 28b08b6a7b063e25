from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
import json
import os
import logging
from pathlib import Path

# Set up logging
logger = logging.getLogger(__name__)

# Config file location
CONFIG_DIR = Path(os.environ.get("CONFIG_DIR", "/config"))
CONFIG_FILE = CONFIG_DIR / "settings.json"


class MediarrSettings(BaseModel):
    """User-configurable lifecycle settings."""
    # Global dry-run switch: previews queue entries but never deletes anything
    dry_run: bool = True
    # Days between a rule match and destructive execution when a rule has none set
    default_buffer_days: int = 15
    # Cap on queue entries executed per processing pass
    max_deletions_per_run: int = 50
    # Cron expressions for the scheduled passes
    rules_schedule: str = "0 2 * * *"
    queue_schedule: str = "0 * * * *"
    cleanup_schedule: str = "0 3 * * *"
    redownload_schedule: str = "0 */6 * * *"
    # Retention for journal entries and finished queue entries (days)
    log_retention_days: int = 30
    queue_retention_days: int = 30
    # External API pacing during bulk passes
    api_delay_ms: int = 100
    max_consecutive_errors: int = 5
    error_backoff_seconds: int = 30
    # Media-server collection that enqueued items are added to ("" disables)
    leaving_soon_collection: str = "Leaving Soon"
    # Smart mode defaults, used when a rule leaves a parameter unset
    smart_min_days_since_watch: int = 15
    smart_velocity_buffer_days: int = 7
    smart_protect_episodes_ahead: int = 3
    smart_active_viewer_days: int = 30
    smart_redownload_lead_days: int = 3
    # Episodes needed within this many hours are flagged as emergency redownloads
    smart_emergency_buffer_hours: int = 24
    # Backend log level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    backend_log_level: str = "INFO"


class Settings(BaseSettings):
    """App settings from environment (for container config)."""
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    config_dir: str = "/config"
    database_url: str = ""


# In-memory cache of settings
_cached_settings: MediarrSettings | None = None


def ensure_config_dir():
    """Ensure config directory exists."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    logger.info(f"Ensured config directory exists: {CONFIG_DIR}")


def load_settings() -> MediarrSettings:
    """Load settings from file or return defaults."""
    global _cached_settings

    if _cached_settings is not None:
        return _cached_settings

    logger.info(f"Loading settings from {CONFIG_FILE}")

    if CONFIG_FILE.exists():
        try:
            data = json.loads(CONFIG_FILE.read_text())
            _cached_settings = MediarrSettings(**data)
            logger.info(f"Loaded settings successfully, dry_run={_cached_settings.dry_run}")
            return _cached_settings
        except Exception as e:
            logger.error(f"Failed to load settings from {CONFIG_FILE}: {e}")

    logger.info("Using default settings (no config file found or failed to parse)")
    _cached_settings = MediarrSettings()
    return _cached_settings


def save_settings(settings: MediarrSettings) -> None:
    """Save settings to file."""
    global _cached_settings

    ensure_config_dir()

    try:
        CONFIG_FILE.write_text(json.dumps(settings.model_dump(), indent=2))
        _cached_settings = settings
        logger.info(f"Settings saved successfully to {CONFIG_FILE}")
    except Exception as e:
        logger.error(f"Failed to save settings to {CONFIG_FILE}: {e}")
        raise


def clear_settings_cache() -> None:
    """Clear the cached settings (forces reload)."""
    global _cached_settings
    _cached_settings = None
    logger.info("Settings cache cleared")


def get_settings() -> MediarrSettings:
    """Get the current lifecycle settings."""
    return load_settings()


def get_env_settings() -> Settings:
    """Get container-level settings from the environment."""
    return Settings()
