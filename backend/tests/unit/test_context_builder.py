"""
Unit tests for the context builder: watchlist matcher ranking, the
orchestrator link cache and the derived context fields.
"""
from datetime import timedelta

import pytest

from context_builder import ContextBuilder, WatchlistSubject, match_watchlist
from media_adapters import MediaItem, OrchestratorRecord
from repositories import WatchlistStore
from tests.fixtures.factories import create_watchlist_entry
from tests.fixtures.fake_adapters import FakeClock, FakeMediaLibrary, FakeOrchestrator


def subject(**fields) -> WatchlistSubject:
    defaults = {"title": "Dune", "year": 2021, "media_type": "movie"}
    defaults.update(fields)
    return WatchlistSubject(**defaults)


class TestWatchlistMatching:
    def test_orchestrator_tmdb_ranks_first(self, db, test_session):
        create_watchlist_entry(test_session, user_id="alice", tmdb_id="438631", title="Dune", year=2021)
        record = OrchestratorRecord(id=7, kind="movie", title="Dune", tmdb_id="438631")

        result = match_watchlist(subject(tmdb_id="438631", orchestrator_record=record), WatchlistStore())

        assert result.found
        assert result.matcher == "watchlist_via_orchestrator"
        assert result.entry.user_id == "alice"

    def test_media_server_imdb(self, db, test_session):
        create_watchlist_entry(test_session, imdb_id="tt1160419")

        result = match_watchlist(subject(imdb_id="tt1160419"), WatchlistStore())

        assert result.matcher == "watchlist_imdb"

    def test_title_and_year(self, db, test_session):
        create_watchlist_entry(test_session, title="Dune", year=2021)

        assert match_watchlist(subject(), WatchlistStore()).matcher == "watchlist_title_year"

    def test_title_only_case_insensitive(self, db, test_session):
        create_watchlist_entry(test_session, title="  dune ", year=1984)

        assert match_watchlist(subject(), WatchlistStore()).matcher == "watchlist_title"

    def test_media_type_must_agree(self, db, test_session):
        create_watchlist_entry(test_session, title="Dune", year=2021, media_type="show")

        assert not match_watchlist(subject(), WatchlistStore())

    def test_tv_rows_match_shows(self, db, test_session):
        create_watchlist_entry(test_session, tmdb_id="1399", media_type="tv", title="Game of Thrones", year=2011)

        show = subject(tmdb_id="1399", title="Game of Thrones", year=2011, media_type="show")
        result = match_watchlist(show, WatchlistStore())

        assert result.matcher == "watchlist"

    def test_series_rows_match_shows_by_title_year(self, db, test_session):
        create_watchlist_entry(test_session, media_type="Series", title="Severance", year=2022)

        show = subject(title="Severance", year=2022, media_type="show")

        assert match_watchlist(show, WatchlistStore()).matcher == "watchlist_title_year"

    def test_inactive_entries_ignored(self, db, test_session):
        create_watchlist_entry(test_session, tmdb_id="438631", is_active=False)

        assert not match_watchlist(subject(tmdb_id="438631"), WatchlistStore())


@pytest.fixture
def library():
    media = FakeMediaLibrary()
    media.add_library("1", "Movies", "movie")
    media.add_library("2", "TV", "show")
    return media


class TestContextBuilder:
    @pytest.mark.asyncio
    async def test_movie_context(self, db, library):
        clock = FakeClock()
        orchestrator = FakeOrchestrator()
        orchestrator.add_movie(11, "Dune", tmdb_id="438631", size_on_disk=8_000_000_000)
        movie = library.add_movie("1", "m1", "Dune", year=2021, guids=["tmdb://438631"],
                                  last_viewed_at=clock.now - timedelta(days=3), file_size=100)
        builder = ContextBuilder(media=library, orchestrator=orchestrator, clock=clock)

        ctx = await builder.build(movie, "movies")

        assert ctx.now == clock.now
        assert ctx.orchestrator_record.id == 11
        assert ctx.file_size == 8_000_000_000
        assert ctx.last_activity == movie.last_viewed_at
        assert ctx.on_watchlist is False
        assert builder.links["m1"].record_id == 11

    @pytest.mark.asyncio
    async def test_media_server_watchlist_wins(self, db, library):
        movie = library.add_movie("1", "m1", "Dune")
        library.watchlist.add("m1")
        builder = ContextBuilder(media=library)

        ctx = await builder.build(movie, "movies")

        assert ctx.on_watchlist is True
        assert ctx.wanted_reason == "media_server_watchlist"
        # The media server's list carries no requester
        assert ctx.has_request is False
        assert ctx.requested_by is None

    @pytest.mark.asyncio
    async def test_internal_watchlist_sets_request_fields(self, db, test_session, library):
        entry = create_watchlist_entry(test_session, user_id="bob", tmdb_id="438631")
        movie = library.add_movie("1", "m1", "Dune", guids=["tmdb://438631"])
        builder = ContextBuilder(media=library)

        ctx = await builder.build(movie, "movies")

        assert ctx.on_watchlist is True
        assert ctx.wanted_by == "bob"
        assert ctx.has_request is True
        assert ctx.request_date == entry.added_at

    @pytest.mark.asyncio
    async def test_episode_uses_parent_show(self, db, test_session, library):
        clock = FakeClock()
        show = library.add_show("2", "s1", "Severance", {1: [{}, {}]}, guids=["tvdb://371980"])
        library.activity["s1"] = clock.now - timedelta(days=9)
        create_watchlist_entry(test_session, media_type="show", title="Severance", year=None)
        orchestrator = FakeOrchestrator()
        orchestrator.add_series(5, "Severance", tvdb_id="371980")
        builder = ContextBuilder(media=library, orchestrator=orchestrator, clock=clock)
        episode = library.items["s1-s1e2"]

        ctx = await builder.build(episode, "episodes")

        assert ctx.on_watchlist is True
        assert ctx.wanted_reason == "watchlist_title"
        assert ctx.orchestrator_record.id == 5
        assert (await builder.subject_for(episode)).id == show.id

    @pytest.mark.asyncio
    async def test_show_activity_for_show_targets(self, db, library):
        clock = FakeClock()
        show = library.add_show("2", "s1", "Severance", {1: [{}]})
        library.activity["s1"] = clock.now - timedelta(days=40)
        builder = ContextBuilder(media=library, clock=clock)

        ctx = await builder.build(show, "shows")

        assert ctx.last_activity == clock.now - timedelta(days=40)

    @pytest.mark.asyncio
    async def test_stale_link_is_cleared(self, db, library):
        orchestrator = FakeOrchestrator()
        orchestrator.add_movie(11, "Dune", tmdb_id="438631")
        movie = library.add_movie("1", "m1", "Dune", guids=["tmdb://438631"])
        builder = ContextBuilder(media=library, orchestrator=orchestrator)
        await builder.build(movie, "movies")

        orchestrator.drop("movie", 11)
        ctx = await builder.build(movie, "movies")

        assert ctx.orchestrator_record is None
        assert "m1" not in builder.links

        # Re-added under a new id: the next pass resolves it again
        orchestrator.add_movie(12, "Dune", tmdb_id="438631")
        ctx = await builder.build(movie, "movies")
        assert ctx.orchestrator_record.id == 12

    @pytest.mark.asyncio
    async def test_build_does_not_mutate_adapters(self, db, library):
        orchestrator = FakeOrchestrator()
        orchestrator.add_movie(11, "Dune", tmdb_id="438631")
        movie = library.add_movie("1", "m1", "Dune", guids=["tmdb://438631"])
        builder = ContextBuilder(media=library, orchestrator=orchestrator)

        await builder.build(movie, "movies")

        assert library.calls == []
        assert orchestrator.calls == []
