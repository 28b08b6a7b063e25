"""
Media Server and Download Orchestrator Adapters

The lifecycle core talks to external services only through the abstract
adapters defined here. Concrete implementations (Plex, Jellyfin, Sonarr,
Radarr, ...) live outside the core; every method is async and every value
crossing the boundary is one of the snapshot dataclasses below.

Conventions:
- Item ids are strings.
- Timestamps are naive UTC datetimes.
- External ids use the "scheme://value" guid form ("tmdb://603", "imdb://tt0133093").
- A vanished item raises MediaItemNotFoundError; a stale orchestrator id raises
  OrchestratorNotFoundError.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, date
from typing import Optional

from exceptions import MediaItemNotFoundError, OrchestratorNotFoundError  # noqa: F401


def guid_value(guids: list[str], scheme: str) -> Optional[str]:
    """Extract the value for a guid scheme ("tmdb", "imdb", "tvdb")."""
    prefix = f"{scheme}://"
    for guid in guids or []:
        if isinstance(guid, str) and guid.startswith(prefix):
            return guid[len(prefix):]
    return None


# =============================================================================
# Snapshots
# =============================================================================

@dataclass
class Library:
    """A media-server library section."""
    id: str
    title: str
    kind: str  # "movie" or "show"


@dataclass
class MediaItem:
    """
    Normalized snapshot of a media-server item.

    Durations and offsets are milliseconds. For episodes, index is the episode
    number, parent_index the season number, parent_id the season and
    grandparent_id the show. For seasons, index is the season number and
    parent_id the show.
    """
    id: str
    type: str  # "movie", "show", "season", "episode"
    title: str
    year: Optional[int] = None
    library_id: Optional[str] = None
    guids: list[str] = field(default_factory=list)

    # Hierarchy
    parent_id: Optional[str] = None
    grandparent_id: Optional[str] = None
    index: Optional[int] = None
    parent_index: Optional[int] = None
    show_title: Optional[str] = None

    # Watch state
    view_count: int = 0
    last_viewed_at: Optional[datetime] = None
    view_offset: int = 0
    watched_by: list[str] = field(default_factory=list)

    # Dates
    added_at: Optional[datetime] = None
    originally_available_at: Optional[date] = None

    # Metadata
    duration: int = 0
    rating: Optional[float] = None
    audience_rating: Optional[float] = None
    genres: list[str] = field(default_factory=list)
    content_rating: Optional[str] = None
    studio: Optional[str] = None
    language: Optional[str] = None
    child_count: int = 0
    leaf_count: int = 0
    collections: list[str] = field(default_factory=list)

    # File / quality
    resolution: Optional[str] = None
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    video_dynamic_range: Optional[str] = None
    file_size: int = 0  # bytes

    extra: dict = field(default_factory=dict)

    @property
    def tmdb_id(self) -> Optional[str]:
        return guid_value(self.guids, "tmdb")

    @property
    def imdb_id(self) -> Optional[str]:
        return guid_value(self.guids, "imdb")

    @property
    def tvdb_id(self) -> Optional[str]:
        return guid_value(self.guids, "tvdb")

    @property
    def show_id(self) -> Optional[str]:
        """Id of the show this item belongs to (itself for shows)."""
        if self.type == "show":
            return self.id
        if self.type == "season":
            return self.parent_id
        if self.type == "episode":
            return self.grandparent_id
        return None

    @property
    def display_title(self) -> str:
        if self.type == "episode" and self.parent_index is not None and self.index is not None:
            show = self.show_title or self.title
            return f"{show} - S{self.parent_index:02d}E{self.index:02d}"
        if self.type == "season" and self.index is not None:
            return f"{self.show_title or self.title} - Season {self.index}"
        return self.title

    def snapshot(self) -> dict:
        """Minimal JSON-safe snapshot stored with queue entries."""
        return {
            "guids": list(self.guids),
            "library_id": self.library_id,
            "show_id": self.show_id,
            "season_number": self.parent_index if self.type == "episode" else self.index,
            "episode_number": self.index if self.type == "episode" else None,
            "file_size": self.file_size,
        }


@dataclass
class WatchView:
    """One viewing of an item by a user."""
    user_id: str
    item_id: str
    viewed_at: datetime


@dataclass
class OrchestratorRecord:
    """A movie or series as tracked by the download orchestrator."""
    id: int
    kind: str  # "movie" or "series"
    title: str
    tmdb_id: Optional[str] = None
    imdb_id: Optional[str] = None
    tvdb_id: Optional[str] = None
    status: Optional[str] = None
    monitored: bool = True
    quality_profile: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    root_folder: Optional[str] = None
    size_on_disk: int = 0
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    video_dynamic_range: Optional[str] = None
    extra: dict = field(default_factory=dict)


@dataclass
class OrchestratorEpisode:
    """An episode as tracked by the download orchestrator."""
    id: int
    season_number: int
    episode_number: int
    has_file: bool = False
    episode_file_id: Optional[int] = None
    monitored: bool = True


# =============================================================================
# Adapters
# =============================================================================

class MediaLibraryAdapter(ABC):
    """Media server (Plex-like or Jellyfin-like) operations used by the core."""

    @abstractmethod
    async def get_libraries(self) -> list[Library]:
        """List library sections."""

    @abstractmethod
    async def get_library_contents(self, library_id: str) -> list[MediaItem]:
        """Top-level items (movies or shows) in a library."""

    @abstractmethod
    async def get_item_metadata(self, item_id: str) -> MediaItem:
        """Full metadata for an item. Raises MediaItemNotFoundError if gone."""

    @abstractmethod
    async def get_item_children(self, item_id: str) -> list[MediaItem]:
        """Seasons of a show or episodes of a season."""

    @abstractmethod
    async def delete_item(self, item_id: str) -> None:
        """Remove an item from the library."""

    @abstractmethod
    async def is_on_watchlist(self, item: MediaItem) -> bool:
        """Whether the item is on the media server's own watchlist."""

    @abstractmethod
    async def add_to_watchlist(self, item: MediaItem) -> None:
        ...

    @abstractmethod
    async def remove_from_watchlist(self, item: MediaItem) -> None:
        ...

    @abstractmethod
    async def get_watch_history(self, show_id: str, since: Optional[datetime] = None) -> list[WatchView]:
        """Per-user views of the show's episodes, optionally limited to views after since."""

    @abstractmethod
    async def get_show_activity(self, show_id: str) -> Optional[datetime]:
        """Most recent view of any episode of the show."""

    @abstractmethod
    async def add_to_collection(self, item: MediaItem, collection_name: str) -> None:
        """Add the item to a named collection, creating it if needed."""


class DownloadOrchestratorAdapter(ABC):
    """Download orchestrator (Sonarr/Radarr-like) operations used by the core."""

    @abstractmethod
    async def find_series(self, guids: list[str]) -> Optional[OrchestratorRecord]:
        """Find a series by any of the item's guids (tvdb, tmdb, imdb)."""

    @abstractmethod
    async def find_movie(self, guids: list[str]) -> Optional[OrchestratorRecord]:
        """Find a movie by any of the item's guids (tmdb, imdb)."""

    @abstractmethod
    async def get_record(self, kind: str, record_id: int) -> OrchestratorRecord:
        """Refresh a linked record. Raises OrchestratorNotFoundError if stale."""

    @abstractmethod
    async def get_size(self, record: OrchestratorRecord) -> int:
        """Bytes on disk for a movie or series."""

    @abstractmethod
    async def delete_series(self, series_id: int, delete_files: bool, add_exclusion: bool = True) -> None:
        ...

    @abstractmethod
    async def delete_movie(self, movie_id: int, delete_files: bool, add_exclusion: bool = True) -> None:
        ...

    @abstractmethod
    async def get_episodes(self, series_id: int) -> list[OrchestratorEpisode]:
        ...

    @abstractmethod
    async def unmonitor_episodes(self, episode_ids: list[int]) -> None:
        ...

    @abstractmethod
    async def delete_episode_file(self, episode_file_id: int) -> None:
        ...

    @abstractmethod
    async def monitor_episode(self, episode_id: int, monitored: bool = True) -> None:
        ...

    @abstractmethod
    async def search_episode(self, episode_id: int) -> None:
        ...

    @abstractmethod
    async def episode_has_file(self, series_id: int, season_number: int, episode_number: int) -> bool:
        ...

    @abstractmethod
    async def add_tag(self, record: OrchestratorRecord, tag: str) -> None:
        """Attach a tag by label, creating it if needed."""

    @abstractmethod
    async def remove_tag(self, record: OrchestratorRecord, tag: str) -> None:
        ...

    @abstractmethod
    async def unmonitor(self, record: OrchestratorRecord) -> None:
        """Stop monitoring a movie or series."""


def orchestrator_episode_for(episodes: list[OrchestratorEpisode], season_number: Optional[int],
                             episode_number: Optional[int]) -> Optional[OrchestratorEpisode]:
    """Find the orchestrator episode matching a season/episode pointer."""
    for ep in episodes:
        if ep.season_number == season_number and ep.episode_number == episode_number:
            return ep
    return None
