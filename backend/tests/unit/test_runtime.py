"""
Unit tests for service start-up wiring.
"""
import pytest

import database
import rules_engine
import runtime
from config import MediarrSettings
from task_registry import get_registry
from tests.fixtures.fake_adapters import FakeMediaLibrary, FakeOrchestrator


@pytest.fixture
def isolated_state(monkeypatch):
    """Point start-up at an in-memory database and restore module globals afterwards."""
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setattr(database, "_engine", database._engine)
    monkeypatch.setattr(database, "_SessionLocal", database._SessionLocal)
    monkeypatch.setattr(rules_engine, "_engine_instance", None)


@pytest.mark.asyncio
async def test_start_wires_engine_and_tasks(isolated_state):
    media = FakeMediaLibrary()
    settings = MediarrSettings(dry_run=True, rules_schedule="30 4 * * *")

    engine = await runtime.start(media, FakeOrchestrator(), settings=settings, schedule=False)

    assert rules_engine.get_rules_engine() is engine
    assert engine.settings is settings
    registry = get_registry()
    for task_id in ("rule_run", "queue_processing", "cleanup", "redownload"):
        assert registry.is_registered(task_id)
    rule_run = registry.get_task_instance("rule_run")
    assert rule_run.schedule_config.cron_expression == "30 4 * * *"
    assert rule_run.next_run is not None

    # Tables exist on the fresh database
    session = database.get_session()
    try:
        from models import Rule
        assert session.query(Rule).count() == 0
    finally:
        session.close()
