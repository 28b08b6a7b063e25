"""
Process wiring for the lifecycle service.

start() brings up logging, the database, the rules engine and the task
engine for a pair of concrete adapters; stop() shuts the scheduler down.
"""
import logging
from typing import Optional

from config import MediarrSettings, get_env_settings, get_settings
from database import init_db
from log_utils import configure_logging, install_safe_logging
from media_adapters import DownloadOrchestratorAdapter, MediaLibraryAdapter
from rules_engine import RulesEngine, init_rules_engine
from task_engine import start_engine, stop_engine
from task_registry import get_registry

logger = logging.getLogger(__name__)


async def start(media: MediaLibraryAdapter,
                orchestrator: Optional[DownloadOrchestratorAdapter] = None,
                settings: Optional[MediarrSettings] = None,
                schedule: bool = True) -> RulesEngine:
    """Initialize every component and, with schedule=True, start the task loop."""
    install_safe_logging()
    settings = settings or get_settings()
    configure_logging(settings.backend_log_level)

    env = get_env_settings()
    init_db(env.database_url or None)

    engine = init_rules_engine(media, orchestrator, settings=settings)

    # Registers the lifecycle tasks
    import tasks  # noqa: F401

    get_registry().apply_settings(settings)
    if schedule:
        await start_engine()
    logger.info(f"Lifecycle service started (dry_run={settings.dry_run})")
    return engine


async def stop() -> None:
    await stop_engine()
    logger.info("Lifecycle service stopped")
