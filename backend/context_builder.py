"""
Context Builder

Enriches a media item with the derived facts conditions need: watchlist
protection, the linked download-orchestrator record with its size and
quality data, activity recency and request data. All lookups are
read-only.

Watchlist membership is resolved through an ordered list of matcher
strategies; the first one that finds an active entry wins:

    1. orchestrator tmdb id       4. media-server imdb guid
    2. orchestrator imdb id       5. exact title + year
    3. media-server tmdb guid     6. case-insensitive title only

Episodes and seasons are matched through their parent show.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from condition_evaluator import EvaluationContext
from exceptions import MediaItemNotFoundError, OrchestratorNotFoundError
from media_adapters import (
    DownloadOrchestratorAdapter,
    MediaItem,
    MediaLibraryAdapter,
    OrchestratorRecord,
)
from models import WatchlistEntry, utcnow
from repositories import WatchlistStore
from throttle import ApiThrottle

logger = logging.getLogger(__name__)


# =============================================================================
# Watchlist Matching
# =============================================================================

@dataclass
class WatchlistSubject:
    """What a watchlist matcher compares against: a movie or a show."""
    title: str
    year: Optional[int]
    media_type: str  # "movie" or "show"
    tmdb_id: Optional[str] = None
    imdb_id: Optional[str] = None
    orchestrator_record: Optional[OrchestratorRecord] = None

    @classmethod
    def from_item(cls, item: MediaItem, record: Optional[OrchestratorRecord] = None) -> "WatchlistSubject":
        return cls(
            title=item.title,
            year=item.year,
            media_type="movie" if item.type == "movie" else "show",
            tmdb_id=item.tmdb_id,
            imdb_id=item.imdb_id,
            orchestrator_record=record,
        )


@dataclass
class MatchResult:
    found: bool
    matcher: Optional[str] = None
    entry: Optional[WatchlistEntry] = None

    @classmethod
    def not_found(cls) -> "MatchResult":
        return cls(found=False)

    def __bool__(self):
        return self.found


class WatchlistMatcher(ABC):
    """One identity-matching strategy."""

    name: str = ""

    def match(self, subject: WatchlistSubject, store: WatchlistStore) -> MatchResult:
        entry = self.lookup(subject, store)
        if entry is None:
            return MatchResult.not_found()
        return MatchResult(found=True, matcher=self.name, entry=entry)

    @abstractmethod
    def lookup(self, subject: WatchlistSubject, store: WatchlistStore) -> Optional[WatchlistEntry]:
        ...


class OrchestratorTmdbMatcher(WatchlistMatcher):
    name = "watchlist_via_orchestrator"

    def lookup(self, subject, store):
        record = subject.orchestrator_record
        return store.find_by_tmdb(record.tmdb_id if record else None, subject.media_type)


class OrchestratorImdbMatcher(WatchlistMatcher):
    name = "watchlist_via_orchestrator_imdb"

    def lookup(self, subject, store):
        record = subject.orchestrator_record
        return store.find_by_imdb(record.imdb_id if record else None)


class MediaServerTmdbMatcher(WatchlistMatcher):
    name = "watchlist"

    def lookup(self, subject, store):
        return store.find_by_tmdb(subject.tmdb_id, subject.media_type)


class MediaServerImdbMatcher(WatchlistMatcher):
    name = "watchlist_imdb"

    def lookup(self, subject, store):
        return store.find_by_imdb(subject.imdb_id)


class TitleYearMatcher(WatchlistMatcher):
    name = "watchlist_title_year"

    def lookup(self, subject, store):
        return store.find_by_title_year(subject.title, subject.year, subject.media_type)


class TitleOnlyMatcher(WatchlistMatcher):
    name = "watchlist_title"

    def lookup(self, subject, store):
        return store.find_by_title(subject.title, subject.media_type)


DEFAULT_MATCHERS: tuple[WatchlistMatcher, ...] = (
    OrchestratorTmdbMatcher(),
    OrchestratorImdbMatcher(),
    MediaServerTmdbMatcher(),
    MediaServerImdbMatcher(),
    TitleYearMatcher(),
    TitleOnlyMatcher(),
)


def match_watchlist(subject: WatchlistSubject, store: WatchlistStore,
                    matchers=DEFAULT_MATCHERS) -> MatchResult:
    """Try each matcher in rank order and return the first hit."""
    for matcher in matchers:
        result = matcher.match(subject, store)
        if result.found:
            logger.debug(f"[CONTEXT] '{subject.title}' on watchlist via {matcher.name}")
            return result
    return MatchResult.not_found()


# =============================================================================
# Context Builder
# =============================================================================

@dataclass
class OrchestratorLink:
    kind: str
    record_id: int


@dataclass
class ContextBuilder:
    """
    Builds EvaluationContext objects for rule evaluation.

    Keeps a link cache from media-server movie/show ids to orchestrator
    record ids. A linked id the orchestrator no longer knows is dropped from
    the cache so the next pass resolves the item again.
    """
    media: MediaLibraryAdapter
    orchestrator: Optional[DownloadOrchestratorAdapter] = None
    watchlist: WatchlistStore = field(default_factory=WatchlistStore)
    throttle: Optional[ApiThrottle] = None
    matchers: tuple = DEFAULT_MATCHERS
    clock: Callable[[], datetime] = utcnow
    links: dict = field(default_factory=dict)
    _show_cache: dict = field(default_factory=dict, repr=False)

    async def _call(self, fn, *args, **kwargs):
        if self.throttle is None:
            return await fn(*args, **kwargs)
        return await self.throttle.call(fn, *args, **kwargs)

    def reset_pass_cache(self) -> None:
        """Forget show metadata fetched during a previous pass."""
        self._show_cache.clear()

    async def build(self, item: MediaItem, target_kind: str) -> EvaluationContext:
        ctx = EvaluationContext(now=self.clock())

        subject_item = await self.subject_for(item)
        record = await self.resolve_orchestrator(subject_item)
        ctx.orchestrator_record = record

        # Watchlist: media server's own list, then the ranked internal chain
        watch = await self.check_watchlist(subject_item, record)
        if watch.found:
            ctx.on_watchlist = True
            ctx.wanted_reason = watch.matcher
            if watch.entry is not None:
                ctx.wanted_by = watch.entry.user_id
                ctx.has_request = True
                ctx.requested_by = watch.entry.user_id
                ctx.request_date = watch.entry.added_at

        # File size and quality
        ctx.file_size = item.file_size or 0
        if record is not None and item.type in ("movie", "show") and self.orchestrator is not None:
            size = await self._call(self.orchestrator.get_size, record)
            if size:
                ctx.file_size = size
        ctx.resolution = item.resolution

        # Activity recency
        if item.type in ("show", "season") or target_kind in ("shows", "seasons"):
            show_id = item.show_id
            if show_id:
                ctx.last_activity = await self._call(self.media.get_show_activity, show_id)
        else:
            ctx.last_activity = item.last_viewed_at

        return ctx

    async def subject_for(self, item: MediaItem) -> MediaItem:
        """The movie or show whose identity governs watchlist and orchestrator lookups."""
        if item.type not in ("episode", "season"):
            return item
        show_id = item.show_id
        if not show_id:
            return item
        if show_id not in self._show_cache:
            try:
                self._show_cache[show_id] = await self._call(self.media.get_item_metadata, show_id)
            except MediaItemNotFoundError:
                logger.warning(f"[CONTEXT] Parent show {show_id} of '{item.display_title}' not found")
                self._show_cache[show_id] = None
        return self._show_cache[show_id] or item

    async def check_watchlist(self, subject_item: MediaItem,
                              record: Optional[OrchestratorRecord] = None) -> MatchResult:
        """Media-server watchlist first, then the ranked internal matchers."""
        if await self._call(self.media.is_on_watchlist, subject_item):
            return MatchResult(found=True, matcher="media_server_watchlist")
        subject = WatchlistSubject.from_item(subject_item, record)
        return match_watchlist(subject, self.watchlist, self.matchers)

    async def resolve_orchestrator(self, subject_item: MediaItem) -> Optional[OrchestratorRecord]:
        """Find the orchestrator record for a movie or show, using the link cache."""
        if self.orchestrator is None or subject_item.type not in ("movie", "show"):
            return None

        kind = "movie" if subject_item.type == "movie" else "series"
        link = self.links.get(subject_item.id)
        if link is not None:
            try:
                return await self._call(self.orchestrator.get_record, link.kind, link.record_id)
            except OrchestratorNotFoundError:
                logger.warning(
                    f"[CONTEXT] Clearing stale orchestrator link for '{subject_item.title}' "
                    f"({link.kind} {link.record_id})"
                )
                self.links.pop(subject_item.id, None)
                return None

        if kind == "movie":
            record = await self._call(self.orchestrator.find_movie, subject_item.guids)
        else:
            record = await self._call(self.orchestrator.find_series, subject_item.guids)
        if record is not None:
            self.links[subject_item.id] = OrchestratorLink(kind=kind, record_id=record.id)
        return record

    async def fetch_item(self, item_id: str) -> MediaItem:
        """Fresh metadata for an item; raises MediaItemNotFoundError if it is gone."""
        return await self._call(self.media.get_item_metadata, item_id)

    def clear_link(self, item_id: str) -> None:
        self.links.pop(item_id, None)
