"""
Smart retention against a show two viewers are working through.

Viewer A is at episode 5 and viewer B at episode 12, both at one episode a
day; every episode was last watched 20 days ago. Only episodes 1-4 sit
behind both viewers, and A reaches 6-8 within the redownload lead time.
"""
from datetime import timedelta

import pytest

from media_adapters import OrchestratorEpisode
from models import QueueItem
from queue_store import QueueStore
from tests.fixtures.factories import create_rule, create_user_velocity

MISSING_FILES = (6, 7, 8)


@pytest.fixture
def show(media, orchestrator, clock):
    watched = {"view_count": 1, "last_viewed_at": clock.now - timedelta(days=20)}
    media.add_library("2", "TV", "show")
    show = media.add_show("2", "lost", "Lost", {1: [dict(watched) for _ in range(12)]},
                          guids=["tvdb://73739"])
    orchestrator.add_series(5, "Lost", tvdb_id="73739", episodes=[
        OrchestratorEpisode(
            id=100 + n,
            season_number=1,
            episode_number=n,
            has_file=n not in MISSING_FILES,
            episode_file_id=None if n in MISSING_FILES else 900 + n,
            monitored=n not in MISSING_FILES,
        )
        for n in range(1, 13)
    ])
    return show


@pytest.fixture
def viewers(db, test_session, clock):
    create_user_velocity(test_session, "A", "lost", current_position=5,
                         last_watched_at=clock.now - timedelta(days=2))
    create_user_velocity(test_session, "B", "lost", current_position=12,
                         last_watched_at=clock.now - timedelta(days=2))


def smart_rule(session, target_type="episodes", **kwargs):
    return create_rule(
        session,
        name="Smart TV",
        target_type=target_type,
        smart_enabled=True,
        actions=[{"type": "add_to_queue"}, {"type": "remove_from_orchestrator"}, {"type": "delete_files"}],
        **kwargs
    )


class TestSmartEpisodes:
    @pytest.mark.asyncio
    async def test_only_episodes_behind_every_viewer_are_queued(self, rules_engine, show, viewers,
                                                                 test_session):
        rule = smart_rule(test_session)

        summary = await rules_engine.run_all_rules(dry_run=False)

        assert summary["matches"] == 4
        queued = sorted(e.media_item_id for e in QueueStore().list_items(dry_run=False))
        assert queued == [f"lost-s1e{n}" for n in range(1, 5)]
        metadata = test_session.query(QueueItem).first().get_metadata()
        assert metadata["smart"]["safe_to_delete"] is True
        assert metadata["rule_name"] == rule.name

    @pytest.mark.asyncio
    async def test_proactive_redownload(self, rules_engine, orchestrator, show, viewers, test_session):
        smart_rule(test_session)

        await rules_engine.run_all_rules(dry_run=False)

        monitored = [c[1] for c in orchestrator.called("monitor_episode")]
        searched = [c[1] for c in orchestrator.called("search_episode")]
        assert monitored == [106, 107, 108]
        assert searched == [106, 107, 108]

    @pytest.mark.asyncio
    async def test_no_redownload_in_dry_run(self, rules_engine, orchestrator, show, viewers, test_session):
        smart_rule(test_session)

        await rules_engine.run_all_rules(dry_run=True)

        assert orchestrator.called("monitor_episode") == []
        assert orchestrator.called("search_episode") == []

    @pytest.mark.asyncio
    async def test_redownload_can_be_disabled(self, rules_engine, orchestrator, show, viewers, test_session):
        smart_rule(test_session, smart_proactive_redownload=False)

        await rules_engine.run_all_rules(dry_run=False)

        assert orchestrator.called("search_episode") == []

    @pytest.mark.asyncio
    async def test_commit_unmonitors_and_deletes_episode_files(self, rules_engine, orchestrator, clock, show,
                                                                viewers, test_session):
        rule = smart_rule(test_session, buffer_days=0)
        await rules_engine.run_rule(rule.id, dry_run=False)
        clock.advance(hours=1)

        summary = await rules_engine.queue.process_due(clock())

        assert summary.completed == 4
        unmonitored = sorted(c[1][0] for c in orchestrator.called("unmonitor_episodes"))
        assert unmonitored == [101, 102, 103, 104]
        deleted_files = sorted(c[1] for c in orchestrator.called("delete_episode_file"))
        assert deleted_files == [901, 902, 903, 904]
        assert orchestrator.called("delete_series") == []

    @pytest.mark.asyncio
    async def test_rewatched_episode_cancelled(self, rules_engine, media, clock, show, viewers, test_session):
        rule = smart_rule(test_session, buffer_days=0)
        await rules_engine.run_rule(rule.id, dry_run=False)
        media.items["lost-s1e2"].last_viewed_at = clock.now
        clock.advance(hours=1)

        summary = await rules_engine.queue.process_due(clock())

        assert summary.completed == 3
        assert summary.cancelled == 1
        cancelled = QueueStore().list_items(status="cancelled")
        assert [e.media_item_id for e in cancelled] == ["lost-s1e2"]
        assert cancelled[0].error_message == "No longer a smart deletion candidate"


class TestSmartShows:
    @pytest.mark.asyncio
    async def test_show_in_progress_is_not_a_target(self, rules_engine, show, viewers, test_session):
        smart_rule(test_session, target_type="shows")

        summary = await rules_engine.run_all_rules(dry_run=False)

        assert summary["matches"] == 0

    @pytest.mark.asyncio
    async def test_finished_show_is_a_target(self, rules_engine, show, test_session):
        smart_rule(test_session, target_type="shows")

        summary = await rules_engine.run_all_rules(dry_run=False)

        assert summary["matches"] == 1
        assert QueueStore().list_items(dry_run=False)[0].media_item_id == "lost"


class TestRedownloadPlan:
    @pytest.mark.asyncio
    async def test_plan_lists_upcoming_episodes(self, rules_engine, show, viewers):
        plan = await rules_engine.get_redownload_plan("lost")

        assert plan["protection_buffer"] == 7
        assert [e["absolute_index"] for e in plan["episodes"]] == [6, 7, 8]


class TestRedownloadPass:
    @pytest.mark.asyncio
    async def test_pass_triggers_missing_episodes(self, rules_engine, orchestrator, show, viewers, test_session):
        smart_rule(test_session)

        summary = await rules_engine.run_redownload_pass(dry_run=False)

        assert summary["shows_checked"] == 1
        assert summary["triggered"] == 3
        assert [c[1] for c in orchestrator.called("search_episode")] == [106, 107, 108]
        assert [e["title"] for e in summary["episodes"]] == ["Lost S01E06", "Lost S01E07", "Lost S01E08"]

    @pytest.mark.asyncio
    async def test_episode_needed_within_a_day_is_emergency(self, rules_engine, show, viewers, test_session):
        smart_rule(test_session)

        summary = await rules_engine.run_redownload_pass(dry_run=False)

        assert summary["emergencies"] == 1
        assert [e["emergency"] for e in summary["episodes"]] == [True, False, False]

    @pytest.mark.asyncio
    async def test_dry_run_pass_only_reports(self, rules_engine, orchestrator, show, viewers, test_session):
        smart_rule(test_session)

        summary = await rules_engine.run_redownload_pass(dry_run=True)

        assert summary["missing"] == 3
        assert summary["triggered"] == 0
        assert orchestrator.called("monitor_episode") == []

    @pytest.mark.asyncio
    async def test_rules_without_redownload_are_skipped(self, rules_engine, orchestrator, show, viewers,
                                                        test_session):
        smart_rule(test_session, smart_proactive_redownload=False)

        summary = await rules_engine.run_redownload_pass(dry_run=False)

        assert summary["shows_checked"] == 0
        assert orchestrator.called("search_episode") == []

    @pytest.mark.asyncio
    async def test_scheduled_task_runs_pass(self, rules_engine, orchestrator, show, viewers, test_session,
                                            settings, monkeypatch):
        import tasks.redownload
        from run_coordinator import RunCoordinator
        from tasks.redownload import RedownloadTask

        monkeypatch.setattr(tasks.redownload, "get_settings", lambda: settings)
        smart_rule(test_session)
        task = RedownloadTask(engine=rules_engine)
        task.coordinator = RunCoordinator()

        result = await task.run()

        assert result.success is True
        assert result.message == "Live: 1 shows checked, 3 missing episodes, 3 triggered, 1 emergencies"
        assert result.success_count == 3
