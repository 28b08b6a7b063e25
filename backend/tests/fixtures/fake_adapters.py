"""
In-memory media server and download orchestrator for tests.

Both fakes implement the adapter ABCs, keep their state in plain dicts that
tests can edit between passes, and record every mutating call in .calls.
"""
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

from exceptions import MediaItemNotFoundError, OrchestratorNotFoundError
from media_adapters import (
    DownloadOrchestratorAdapter,
    Library,
    MediaItem,
    MediaLibraryAdapter,
    OrchestratorEpisode,
    OrchestratorRecord,
    WatchView,
)
from models import utcnow


class FakeClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or utcnow().replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: float = 0, hours: float = 0) -> datetime:
        self.now = self.now + timedelta(days=days, hours=hours)
        return self.now


class FakeMediaLibrary(MediaLibraryAdapter):
    def __init__(self):
        self.libraries: list[Library] = []
        self.items: dict[str, MediaItem] = {}
        self.contents: dict[str, list[str]] = {}
        self.children: dict[str, list[str]] = {}
        self.watchlist: set[str] = set()
        self.history: dict[str, list[WatchView]] = {}
        self.activity: dict[str, datetime] = {}
        self.collections: list[tuple[str, str]] = []
        self.deleted: list[str] = []
        self.calls: list[tuple] = []
        self.fail_collections = False

    # -------------------------------------------------------------------------
    # Test setup helpers
    # -------------------------------------------------------------------------

    def add_library(self, library_id: str, title: str, kind: str) -> Library:
        library = Library(id=library_id, title=title, kind=kind)
        self.libraries.append(library)
        self.contents.setdefault(library_id, [])
        return library

    def add_movie(self, library_id: str, item_id: str, title: str, **fields) -> MediaItem:
        item = MediaItem(id=item_id, type="movie", title=title, library_id=library_id, **fields)
        self.items[item_id] = item
        self.contents.setdefault(library_id, []).append(item_id)
        return item

    def add_show(self, library_id: str, item_id: str, title: str, seasons: dict, **fields) -> MediaItem:
        """
        Add a show with its seasons and episodes.

        seasons maps a season number to a list of dicts of episode fields;
        episode ids are "{show}-s{season}e{episode}".
        """
        show = MediaItem(id=item_id, type="show", title=title, library_id=library_id,
                         child_count=len(seasons), **fields)
        self.items[item_id] = show
        self.contents.setdefault(library_id, []).append(item_id)
        self.children[item_id] = []

        leaf_count = 0
        for season_number, episodes in sorted(seasons.items()):
            season_id = f"{item_id}-s{season_number}"
            season = MediaItem(id=season_id, type="season", title=f"Season {season_number}",
                               library_id=library_id, parent_id=item_id, index=season_number,
                               show_title=title, leaf_count=len(episodes))
            self.items[season_id] = season
            self.children[item_id].append(season_id)
            self.children[season_id] = []
            for episode_number, ep_fields in enumerate(episodes, start=1):
                ep_fields = dict(ep_fields)
                episode_id = f"{item_id}-s{season_number}e{episode_number}"
                episode = MediaItem(
                    id=episode_id,
                    type="episode",
                    title=ep_fields.pop("title", f"Episode {episode_number}"),
                    library_id=library_id,
                    parent_id=season_id,
                    grandparent_id=item_id,
                    index=episode_number,
                    parent_index=season_number,
                    show_title=title,
                    **ep_fields,
                )
                self.items[episode_id] = episode
                self.children[season_id].append(episode_id)
                leaf_count += 1
        show.leaf_count = leaf_count
        return show

    def add_view(self, show_id: str, user_id: str, item_id: str, viewed_at: datetime) -> None:
        self.history.setdefault(show_id, []).append(
            WatchView(user_id=user_id, item_id=item_id, viewed_at=viewed_at)
        )

    def remove(self, item_id: str) -> None:
        """Simulate an item vanishing from the server."""
        self.items.pop(item_id, None)
        for ids in self.contents.values():
            if item_id in ids:
                ids.remove(item_id)

    # -------------------------------------------------------------------------
    # Adapter interface
    # -------------------------------------------------------------------------

    def _get(self, item_id: str) -> MediaItem:
        item = self.items.get(item_id)
        if item is None:
            raise MediaItemNotFoundError(item_id)
        return replace(item)

    async def get_libraries(self) -> list[Library]:
        return list(self.libraries)

    async def get_library_contents(self, library_id: str) -> list[MediaItem]:
        return [self._get(i) for i in self.contents.get(library_id, []) if i in self.items]

    async def get_item_metadata(self, item_id: str) -> MediaItem:
        return self._get(item_id)

    async def get_item_children(self, item_id: str) -> list[MediaItem]:
        if item_id not in self.items:
            raise MediaItemNotFoundError(item_id)
        return [self._get(i) for i in self.children.get(item_id, []) if i in self.items]

    async def delete_item(self, item_id: str) -> None:
        self.calls.append(("delete_item", item_id))
        if item_id not in self.items:
            raise MediaItemNotFoundError(item_id)
        self.remove(item_id)
        self.deleted.append(item_id)

    async def is_on_watchlist(self, item: MediaItem) -> bool:
        return item.id in self.watchlist

    async def add_to_watchlist(self, item: MediaItem) -> None:
        self.watchlist.add(item.id)

    async def remove_from_watchlist(self, item: MediaItem) -> None:
        self.watchlist.discard(item.id)

    async def get_watch_history(self, show_id: str, since: Optional[datetime] = None) -> list[WatchView]:
        views = self.history.get(show_id, [])
        if since is not None:
            views = [v for v in views if v.viewed_at >= since]
        return list(views)

    async def get_show_activity(self, show_id: str) -> Optional[datetime]:
        return self.activity.get(show_id)

    async def add_to_collection(self, item: MediaItem, collection_name: str) -> None:
        self.calls.append(("add_to_collection", item.id, collection_name))
        if self.fail_collections:
            raise RuntimeError("collection service unavailable")
        self.collections.append((item.id, collection_name))


class FakeOrchestrator(DownloadOrchestratorAdapter):
    def __init__(self):
        self.records: dict[tuple[str, int], OrchestratorRecord] = {}
        self.episodes: dict[int, list[OrchestratorEpisode]] = {}
        self.calls: list[tuple] = []

    # -------------------------------------------------------------------------
    # Test setup helpers
    # -------------------------------------------------------------------------

    def add_movie(self, record_id: int, title: str, tmdb_id: str = None, **fields) -> OrchestratorRecord:
        record = OrchestratorRecord(id=record_id, kind="movie", title=title, tmdb_id=tmdb_id, **fields)
        self.records[("movie", record_id)] = record
        return record

    def add_series(self, record_id: int, title: str, tvdb_id: str = None, tmdb_id: str = None,
                   episodes: Optional[list[OrchestratorEpisode]] = None, **fields) -> OrchestratorRecord:
        record = OrchestratorRecord(id=record_id, kind="series", title=title, tvdb_id=tvdb_id,
                                    tmdb_id=tmdb_id, **fields)
        self.records[("series", record_id)] = record
        self.episodes[record_id] = episodes or []
        return record

    def drop(self, kind: str, record_id: int) -> None:
        """Simulate the record being removed behind our back."""
        self.records.pop((kind, record_id), None)

    def _find(self, kind: str, guids: list[str]) -> Optional[OrchestratorRecord]:
        for (record_kind, _), record in self.records.items():
            if record_kind != kind:
                continue
            ids = {f"tmdb://{record.tmdb_id}", f"imdb://{record.imdb_id}", f"tvdb://{record.tvdb_id}"}
            if any(guid in ids for guid in guids or []):
                return record
        return None

    def _episode(self, episode_id: int) -> Optional[OrchestratorEpisode]:
        for episodes in self.episodes.values():
            for ep in episodes:
                if ep.id == episode_id:
                    return ep
        return None

    # -------------------------------------------------------------------------
    # Adapter interface
    # -------------------------------------------------------------------------

    async def find_series(self, guids: list[str]) -> Optional[OrchestratorRecord]:
        return self._find("series", guids)

    async def find_movie(self, guids: list[str]) -> Optional[OrchestratorRecord]:
        return self._find("movie", guids)

    async def get_record(self, kind: str, record_id: int) -> OrchestratorRecord:
        record = self.records.get((kind, record_id))
        if record is None:
            raise OrchestratorNotFoundError(kind, record_id)
        return record

    async def get_size(self, record: OrchestratorRecord) -> int:
        return record.size_on_disk

    async def delete_series(self, series_id: int, delete_files: bool, add_exclusion: bool = True) -> None:
        self.calls.append(("delete_series", series_id, delete_files, add_exclusion))
        if ("series", series_id) not in self.records:
            raise OrchestratorNotFoundError("series", series_id)
        self.drop("series", series_id)

    async def delete_movie(self, movie_id: int, delete_files: bool, add_exclusion: bool = True) -> None:
        self.calls.append(("delete_movie", movie_id, delete_files, add_exclusion))
        if ("movie", movie_id) not in self.records:
            raise OrchestratorNotFoundError("movie", movie_id)
        self.drop("movie", movie_id)

    async def get_episodes(self, series_id: int) -> list[OrchestratorEpisode]:
        if ("series", series_id) not in self.records:
            raise OrchestratorNotFoundError("series", series_id)
        return list(self.episodes.get(series_id, []))

    async def unmonitor_episodes(self, episode_ids: list[int]) -> None:
        self.calls.append(("unmonitor_episodes", list(episode_ids)))
        for episode_id in episode_ids:
            ep = self._episode(episode_id)
            if ep is not None:
                ep.monitored = False

    async def delete_episode_file(self, episode_file_id: int) -> None:
        self.calls.append(("delete_episode_file", episode_file_id))
        for episodes in self.episodes.values():
            for ep in episodes:
                if ep.episode_file_id == episode_file_id:
                    ep.has_file = False
                    ep.episode_file_id = None

    async def monitor_episode(self, episode_id: int, monitored: bool = True) -> None:
        self.calls.append(("monitor_episode", episode_id, monitored))
        ep = self._episode(episode_id)
        if ep is not None:
            ep.monitored = monitored

    async def search_episode(self, episode_id: int) -> None:
        self.calls.append(("search_episode", episode_id))

    async def episode_has_file(self, series_id: int, season_number: int, episode_number: int) -> bool:
        for ep in self.episodes.get(series_id, []):
            if ep.season_number == season_number and ep.episode_number == episode_number:
                return ep.has_file
        return False

    async def add_tag(self, record: OrchestratorRecord, tag: str) -> None:
        self.calls.append(("add_tag", record.id, tag))
        if tag not in record.tags:
            record.tags.append(tag)

    async def remove_tag(self, record: OrchestratorRecord, tag: str) -> None:
        self.calls.append(("remove_tag", record.id, tag))
        if tag in record.tags:
            record.tags.remove(tag)

    async def unmonitor(self, record: OrchestratorRecord) -> None:
        self.calls.append(("unmonitor", record.id))
        record.monitored = False

    def called(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]
