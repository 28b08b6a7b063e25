"""
End-to-end lifecycle tests: rule pass -> queue -> buffer -> commit or cancel.

Everything runs against the in-memory database and the fake media server,
with the engine's clock moved forward between passes.
"""
from datetime import timedelta

import pytest

import journal
from exceptions import RuleNotFoundError, RunInProgressError
from models import QueueItem
from queue_store import QueueStore
from run_coordinator import LIFECYCLE_KEY
from tests.fixtures.factories import create_exclusion, create_rule, create_watchlist_entry

WATCHED_AND_IDLE = [
    {"field": "watched", "operator": "equals", "value": True},
    {"field": "on_watchlist", "operator": "equals", "value": False},
    {"field": "days_since_watched", "operator": "greater_than", "value": 7},
]


@pytest.fixture
def library(media, clock):
    media.add_library("1", "Movies", "movie")
    media.add_movie(
        "1", "m1", "Alien", year=1979, guids=["tmdb://348"],
        view_count=1, last_viewed_at=clock.now - timedelta(days=10),
    )
    return media


@pytest.fixture
def rule(db, test_session):
    return create_rule(test_session, name="Watched movies", conditions=WATCHED_AND_IDLE, buffer_days=15)


def live_entries():
    return QueueStore().list_items(dry_run=False)


class TestBasicRule:
    @pytest.mark.asyncio
    async def test_match_is_queued_behind_buffer(self, rules_engine, library, rule, clock):
        summary = await rules_engine.run_all_rules(dry_run=False)

        assert summary["matches"] == 1
        entries = live_entries()
        assert len(entries) == 1
        assert entries[0].status == "pending"
        assert entries[0].action_at == clock.now + timedelta(days=15)
        assert library.deleted == []
        assert library.collections == [("m1", "Leaving Soon")]

    @pytest.mark.asyncio
    async def test_processing_before_buffer_is_noop(self, rules_engine, library, rule, clock):
        await rules_engine.run_all_rules(dry_run=False)
        clock.advance(days=10)

        summary = await rules_engine.run_all_rules(dry_run=False)

        assert summary["queue_processed"] == 0
        assert [e.status for e in live_entries()] == ["pending"]
        assert library.deleted == []

    @pytest.mark.asyncio
    async def test_commit_after_buffer(self, rules_engine, library, rule, clock):
        await rules_engine.run_all_rules(dry_run=False)
        clock.advance(days=16)

        summary = await rules_engine.run_all_rules(dry_run=False)

        assert summary["queue"]["completed"] == 1
        assert [e.status for e in live_entries()] == ["completed"]
        assert library.deleted == ["m1"]
        assert journal.get_daily_stats(days=1)[0]["deletions_count"] == 1

    @pytest.mark.asyncio
    async def test_rerun_does_not_duplicate_entry(self, rules_engine, library, rule):
        await rules_engine.run_all_rules(dry_run=False)
        await rules_engine.run_all_rules(dry_run=False)

        assert len(live_entries()) == 1
        assert len(library.collections) == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_media_server_watchlist_cancels(self, rules_engine, library, rule, clock):
        await rules_engine.run_all_rules(dry_run=False)
        library.watchlist.add("m1")
        clock.advance(days=16)

        summary = await rules_engine.run_all_rules(dry_run=False)

        assert summary["stale_cleanup"]["removed"] == 1
        entry = live_entries()[0]
        assert entry.status == "cancelled"
        assert entry.error_message.startswith("Saved by watchlist")
        assert library.deleted == []

    @pytest.mark.asyncio
    async def test_internal_watchlist_cancels_at_processing(self, rules_engine, library, rule, clock,
                                                            test_session):
        await rules_engine.run_all_rules(dry_run=False)
        create_watchlist_entry(test_session, user_id="alice", tmdb_id="348")
        clock.advance(days=16)

        summary = await rules_engine.queue.process_due(clock())

        assert summary.cancelled == 1
        assert live_entries()[0].status == "cancelled"
        assert library.deleted == []

    @pytest.mark.asyncio
    async def test_rewatched_item_no_longer_matches(self, rules_engine, library, rule, clock):
        await rules_engine.run_all_rules(dry_run=False)
        clock.advance(days=16)
        library.items["m1"].last_viewed_at = clock.now - timedelta(days=1)

        await rules_engine.queue.process_due(clock())

        entry = live_entries()[0]
        assert entry.status == "cancelled"
        assert entry.error_message == "No longer matches rule conditions"

    @pytest.mark.asyncio
    async def test_manual_protection_blocks_commit(self, rules_engine, library, rule, clock, test_session):
        await rules_engine.run_all_rules(dry_run=False)
        create_exclusion(test_session, type="manual_protection", tmdb_id="348", media_type="movie",
                         reason="Family favourite")
        clock.advance(days=16)

        await rules_engine.queue.process_due(clock())

        entry = live_entries()[0]
        assert entry.status == "cancelled"
        assert entry.error_message == "Family favourite"
        assert library.deleted == []

    @pytest.mark.asyncio
    async def test_inactive_rule_cancels(self, rules_engine, library, rule, clock, test_session):
        await rules_engine.run_all_rules(dry_run=False)
        rule.is_active = False
        test_session.commit()
        clock.advance(days=16)

        await rules_engine.queue.process_due(clock())

        assert live_entries()[0].error_message == "Rule no longer exists or is inactive"


class TestSmartFlagOnMovies:
    @pytest.mark.asyncio
    async def test_movie_rule_with_smart_flag_runs_as_standard(self, rules_engine, library, clock, test_session):
        create_rule(test_session, name="Stale movies", conditions=WATCHED_AND_IDLE, buffer_days=15,
                    smart_enabled=True)

        summary = await rules_engine.run_all_rules(dry_run=False)
        assert summary["matches"] == 1

        clock.advance(days=16)
        processed = await rules_engine.queue.process_due(clock())

        assert processed.completed == 1
        assert live_entries()[0].status == "completed"
        assert library.deleted == ["m1"]


class TestVanishedItems:
    @pytest.mark.asyncio
    async def test_gone_item_completes_at_processing(self, rules_engine, library, rule, clock):
        await rules_engine.run_all_rules(dry_run=False)
        library.remove("m1")
        clock.advance(days=16)

        summary = await rules_engine.queue.process_due(clock())

        assert summary.completed == 1
        assert live_entries()[0].status == "completed"
        assert library.deleted == []

    @pytest.mark.asyncio
    async def test_stale_cleanup_removes_gone_item(self, rules_engine, library, rule, test_session):
        await rules_engine.run_all_rules(dry_run=False)
        library.remove("m1")

        result = await rules_engine.queue.cleanup_stale()

        assert result == {"removed": 1, "kept": 0}
        assert test_session.query(QueueItem).count() == 0


class TestErrors:
    @pytest.mark.asyncio
    async def test_failed_action_marks_error_until_retried(self, rules_engine, library, rule, clock):
        await rules_engine.run_all_rules(dry_run=False)
        clock.advance(days=16)

        async def refuse(item_id):
            raise PermissionError("read-only library")

        original = library.delete_item
        library.delete_item = refuse
        await rules_engine.queue.process_due(clock())

        entry = live_entries()[0]
        assert entry.status == "error"
        assert entry.error_message == "read-only library"

        # Errors are not retried automatically
        summary = await rules_engine.queue.process_due(clock())
        assert summary.processed == 0

        library.delete_item = original
        assert rules_engine.queue.retry(entry.id) is True
        summary = await rules_engine.queue.process_due(clock())
        assert summary.completed == 1
        assert library.deleted == ["m1"]


class TestOperatorCancel:
    @pytest.mark.asyncio
    async def test_cancelled_entry_is_never_executed(self, rules_engine, library, rule, clock):
        await rules_engine.run_all_rules(dry_run=False)
        entry = live_entries()[0]

        assert rules_engine.queue.cancel(entry.id) is True
        assert rules_engine.queue.cancel(entry.id) is False

        clock.advance(days=16)
        await rules_engine.queue.process_due(clock())
        assert library.deleted == []
        assert rules_engine.queue.list_items(status="cancelled")[0]["error_message"] == "Cancelled by operator"


class TestDryRun:
    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, rules_engine, library, rule):
        summary = await rules_engine.run_all_rules(dry_run=True)

        assert summary["dry_run"] is True
        assert summary["stale_cleanup"] is None
        assert live_entries() == []
        previews = QueueStore().list_items(dry_run=True)
        assert len(previews) == 1
        assert library.collections == []

    @pytest.mark.asyncio
    async def test_live_run_replaces_preview(self, rules_engine, library, rule, test_session):
        await rules_engine.run_all_rules(dry_run=True)

        await rules_engine.run_all_rules(dry_run=False)

        rows = test_session.query(QueueItem).all()
        assert [(r.is_dry_run, r.status) for r in rows] == [(False, "pending")]

    @pytest.mark.asyncio
    async def test_dry_run_processing_leaves_entry_pending(self, rules_engine, library, rule, clock):
        await rules_engine.run_all_rules(dry_run=False)
        clock.advance(days=16)

        summary = await rules_engine.queue.process_due(clock(), dry_run=True)

        assert summary.outcomes[0].message.startswith("[DRY RUN] Would mark completed")
        assert [e.status for e in live_entries()] == ["pending"]
        assert library.deleted == []


class TestRunControl:
    @pytest.mark.asyncio
    async def test_concurrent_pass_refused(self, rules_engine, library, rule):
        async with rules_engine.coordinator.hold(LIFECYCLE_KEY, "queue_processing"):
            with pytest.raises(RunInProgressError):
                await rules_engine.run_all_rules(dry_run=False)

        assert live_entries() == []

    @pytest.mark.asyncio
    async def test_run_single_rule(self, rules_engine, library, rule):
        result = await rules_engine.run_rule(rule.id, dry_run=False)

        assert result["matches"] == 1
        assert result["items"][0]["item_id"] == "m1"
        assert len(live_entries()) == 1

    @pytest.mark.asyncio
    async def test_run_missing_rule(self, rules_engine, db):
        with pytest.raises(RuleNotFoundError):
            await rules_engine.run_rule(9999)

    @pytest.mark.asyncio
    async def test_rule_stats_recorded(self, rules_engine, library, rule, test_session):
        await rules_engine.run_all_rules(dry_run=False)

        test_session.refresh(rule)
        assert rule.last_run is not None
        assert rule.last_run_matches == 1
