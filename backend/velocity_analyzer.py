"""
Velocity Protection Analyzer

Decides, per episode of a show, whether it is safe to delete while several
people watch the show at different paces.

For each viewer with recent history the analyzer derives:
  - current position: the end of the contiguous watched run from episode 1,
    or the most recently watched episode if that is further along
  - velocity: episodes per day between first and last view (1/day for a
    single session)
  - activity: last view within active_viewer_days

An episode is a deletion candidate when it is behind every active viewer,
has been watched, was last watched at least min_days_since_watch days ago,
and no viewer is projected to reach it within velocity_buffer_days. With no
active viewers, every watched episode old enough is a candidate.

The analyzer is pure: episodes, views, stored velocity records and "now"
are all inputs.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional

from media_adapters import MediaItem, WatchView
from rule_schema import SmartOptions

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

# Views older than this are ignored when computing progress
HISTORY_WINDOW_DAYS = 90


@dataclass
class Episode:
    """An episode of a show with its position in viewing order."""
    item_id: str
    absolute_index: int
    season_number: int
    episode_number: int
    last_viewed_at: Optional[datetime] = None
    view_count: int = 0
    title: str = ""

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "absolute_index": self.absolute_index,
            "season_number": self.season_number,
            "episode_number": self.episode_number,
            "last_viewed_at": self.last_viewed_at.isoformat() if self.last_viewed_at else None,
            "view_count": self.view_count,
            "title": self.title,
        }


def build_episodes(items: Iterable[MediaItem]) -> list[Episode]:
    """
    Order episodes by season then episode number and assign 1-based absolute
    indexes. Specials (season 0) and items without numbering are skipped.
    """
    numbered = [
        item for item in items
        if item.parent_index is not None and item.index is not None and item.parent_index > 0
    ]
    numbered.sort(key=lambda i: (i.parent_index, i.index))
    return [
        Episode(
            item_id=item.id,
            absolute_index=position,
            season_number=item.parent_index,
            episode_number=item.index,
            last_viewed_at=item.last_viewed_at,
            view_count=item.view_count or 0,
            title=item.title,
        )
        for position, item in enumerate(numbered, start=1)
    ]


@dataclass
class ViewerProgress:
    """One viewer's progress through a show."""
    user_id: str
    current_position: int = 0
    velocity: float = 0.0
    watched_count: int = 0
    last_watched_index: int = 0
    first_watched_at: Optional[datetime] = None
    last_watched_at: Optional[datetime] = None
    is_active: bool = False
    source: str = "history"  # "history" or "velocity_record"

    def days_until(self, absolute_index: int) -> float:
        """Projected days until this viewer reaches an episode (0 if already there)."""
        distance = absolute_index - self.current_position
        if self.velocity <= 0:
            return max(0.0, float(distance))
        return max(0.0, distance / self.velocity)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "current_position": self.current_position,
            "velocity": round(self.velocity, 3),
            "watched_count": self.watched_count,
            "last_watched_at": self.last_watched_at.isoformat() if self.last_watched_at else None,
            "is_active": self.is_active,
            "source": self.source,
        }


@dataclass
class EpisodeVerdict:
    """Classification of one episode."""
    episode: Episode
    safe_to_delete: bool
    reason: str
    days_since_watch: Optional[float] = None
    needs_redownload: bool = False
    redownload_by: Optional[datetime] = None
    users_approaching: list = field(default_factory=list)

    @property
    def absolute_index(self) -> int:
        return self.episode.absolute_index

    def to_dict(self) -> dict:
        data = self.episode.to_dict()
        data.update({
            "safe_to_delete": self.safe_to_delete,
            "reason": self.reason,
            "days_since_watch": math.floor(self.days_since_watch) if self.days_since_watch is not None else None,
            "needs_redownload": self.needs_redownload,
            "redownload_by": self.redownload_by.isoformat() if self.redownload_by else None,
            "users_approaching": self.users_approaching,
        })
        return data


@dataclass
class ShowAnalysis:
    """Result of analyzing one show."""
    show_id: Optional[str]
    show_title: Optional[str]
    viewers: list[ViewerProgress]
    episodes: list[EpisodeVerdict]
    protection_buffer: int
    options: SmartOptions

    @property
    def active_viewers(self) -> list[ViewerProgress]:
        return [v for v in self.viewers if v.is_active]

    @property
    def candidates(self) -> list[EpisodeVerdict]:
        return [e for e in self.episodes if e.safe_to_delete]

    @property
    def protected(self) -> list[EpisodeVerdict]:
        return [e for e in self.episodes if not e.safe_to_delete]

    @property
    def needs_redownload(self) -> list[EpisodeVerdict]:
        return [e for e in self.episodes if e.needs_redownload]

    @property
    def slowest_viewer_position(self) -> Optional[int]:
        active = self.active_viewers
        if not active:
            return None
        return min(v.current_position for v in active)

    def verdict_for(self, item_id: str) -> Optional[EpisodeVerdict]:
        for verdict in self.episodes:
            if verdict.episode.item_id == item_id:
                return verdict
        return None

    def summary(self) -> dict:
        return {
            "total_episodes": len(self.episodes),
            "active_viewers": len(self.active_viewers),
            "slowest_viewer_position": self.slowest_viewer_position,
            "protection_buffer": self.protection_buffer,
            "candidates_for_deletion": len(self.candidates),
            "protected_count": len(self.protected),
            "needs_redownload": len(self.needs_redownload),
        }

    def to_dict(self) -> dict:
        return {
            "show_id": self.show_id,
            "show_title": self.show_title,
            "options": self.options.to_dict(),
            "viewers": [v.to_dict() for v in self.viewers],
            "episodes": [e.to_dict() for e in self.episodes],
            "summary": self.summary(),
        }


class VelocityProtectionAnalyzer:
    def __init__(self, options: Optional[SmartOptions] = None):
        self.options = options or SmartOptions()

    # -------------------------------------------------------------------------
    # Viewer progress
    # -------------------------------------------------------------------------

    def compute_progress(self, episodes: list[Episode], views: Iterable[WatchView],
                         now: datetime) -> dict[str, ViewerProgress]:
        """Per-user position, velocity and activity from raw views."""
        by_item = {ep.item_id: ep for ep in episodes}
        ordered = sorted(episodes, key=lambda e: e.absolute_index)
        cutoff = now - timedelta(days=HISTORY_WINDOW_DAYS)

        views_by_user: dict[str, list[tuple[WatchView, Episode]]] = {}
        for view in views:
            ep = by_item.get(view.item_id)
            if ep is None or view.viewed_at is None or view.viewed_at < cutoff:
                continue
            views_by_user.setdefault(str(view.user_id), []).append((view, ep))

        progress = {}
        for user_id, user_views in views_by_user.items():
            watched = set()
            first_at = last_at = None
            last_index = 0
            for view, ep in user_views:
                watched.add(ep.item_id)
                if first_at is None or view.viewed_at < first_at:
                    first_at = view.viewed_at
                if last_at is None or view.viewed_at > last_at:
                    last_at = view.viewed_at
                    last_index = ep.absolute_index

            velocity = 0.0
            span_days = (last_at - first_at).total_seconds() / SECONDS_PER_DAY
            if len(user_views) > 1 and span_days > 0:
                velocity = len(watched) / span_days
            elif watched:
                # Single session: one episode a day is the conservative baseline
                velocity = 1.0

            position = 0
            for ep in ordered:
                if ep.item_id not in watched:
                    break
                position = ep.absolute_index
            # Skip-ahead viewing: the latest episode watched wins when further along
            if last_index > position:
                position = last_index

            progress[user_id] = ViewerProgress(
                user_id=user_id,
                current_position=position,
                velocity=velocity,
                watched_count=len(watched),
                last_watched_index=last_index,
                first_watched_at=first_at,
                last_watched_at=last_at,
                is_active=self._is_active(last_at, now),
            )
        return progress

    def _is_active(self, last_watched_at: Optional[datetime], now: datetime) -> bool:
        if last_watched_at is None:
            return False
        return (now - last_watched_at) <= timedelta(days=self.options.active_viewer_days)

    @staticmethod
    def record_position(record, episodes: list[Episode]) -> int:
        """
        A stored record's position in terms of the episodes still present.

        The season/episode pointer wins: it maps to the last present episode
        at or before it, or 0 when every present episode is ahead of it. The
        stored absolute position counts over the full show, so it is only
        used for records without a pointer.
        """
        season = getattr(record, "current_season", None)
        number = getattr(record, "current_episode", None)
        if season is None or number is None:
            return record.current_position or 0
        position = 0
        for ep in episodes:
            if (ep.season_number, ep.episode_number) <= (season, number):
                position = max(position, ep.absolute_index)
        return position

    def merge_velocity_records(self, progress: dict[str, ViewerProgress], records: Iterable,
                               now: datetime, episodes: Optional[list[Episode]] = None) -> dict[str, ViewerProgress]:
        """
        Fold stored velocity records into computed progress. Active records
        that are further along replace position and velocity; active records
        for unknown viewers add them.
        """
        episodes = episodes or []
        for record in records:
            last_at = record.last_watched_at
            if not self._is_active(last_at, now):
                continue
            position = self.record_position(record, episodes)
            user_id = str(record.user_id)
            existing = progress.get(user_id)
            if existing is not None and existing.is_active:
                if position > existing.current_position:
                    existing.current_position = position
                    existing.velocity = record.episodes_per_day or existing.velocity
                    existing.last_watched_at = last_at or existing.last_watched_at
                    existing.source = "velocity_record"
                continue
            progress[user_id] = ViewerProgress(
                user_id=user_id,
                current_position=position,
                velocity=record.episodes_per_day or 1.0,
                last_watched_at=last_at,
                is_active=True,
                source="velocity_record",
            )
        return progress

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    def protection_buffer(self, active: list[ViewerProgress]) -> int:
        """Episodes to protect ahead of viewers, covering the fastest approacher."""
        buffer = self.options.protect_episodes_ahead
        for viewer in active:
            if viewer.velocity > 0:
                buffer = max(buffer, math.ceil(viewer.velocity * self.options.velocity_buffer_days))
        return buffer

    def analyze(
        self,
        episodes: list[Episode],
        views: Iterable[WatchView],
        now: datetime,
        velocity_records: Iterable = (),
        show_id: Optional[str] = None,
        show_title: Optional[str] = None,
    ) -> ShowAnalysis:
        progress = self.compute_progress(episodes, views, now)
        progress = self.merge_velocity_records(progress, velocity_records, now, episodes)
        viewers = sorted(progress.values(), key=lambda v: v.user_id)
        active = [v for v in viewers if v.is_active]

        if active:
            verdicts = [self._classify(ep, active, now) for ep in episodes]
        else:
            verdicts = [self._classify_unwatched_show(ep, now) for ep in episodes]

        analysis = ShowAnalysis(
            show_id=show_id,
            show_title=show_title,
            viewers=viewers,
            episodes=verdicts,
            protection_buffer=self.protection_buffer(active),
            options=self.options,
        )
        logger.debug(f"[SMART] {show_title or show_id}: {analysis.summary()}")
        return analysis

    @staticmethod
    def _days_since(ep: Episode, now: datetime) -> Optional[float]:
        if ep.last_viewed_at is None:
            return None
        return (now - ep.last_viewed_at).total_seconds() / SECONDS_PER_DAY

    def _classify_unwatched_show(self, ep: Episode, now: datetime) -> EpisodeVerdict:
        """No active viewers: only age and watched state matter."""
        days = self._days_since(ep, now)
        if ep.view_count > 0 and days is not None and days >= self.options.min_days_since_watch:
            return EpisodeVerdict(
                episode=ep,
                safe_to_delete=True,
                reason=f"No active viewers, unwatched for {math.floor(days)} days",
                days_since_watch=days,
            )
        if ep.view_count <= 0:
            reason = "never watched"
        else:
            reason = f"only {math.floor(days or 0)} days since watch"
        return EpisodeVerdict(episode=ep, safe_to_delete=False, reason=reason, days_since_watch=days)

    def _classify(self, ep: Episode, active: list[ViewerProgress], now: datetime) -> EpisodeVerdict:
        opts = self.options
        days = self._days_since(ep, now)

        behind_all = all(ep.absolute_index < v.current_position for v in active)

        needed_soon = False
        for viewer in active:
            if viewer.velocity > 0 and ep.absolute_index >= viewer.current_position:
                days_to_reach = (ep.absolute_index - viewer.current_position) / viewer.velocity
                if days_to_reach <= opts.velocity_buffer_days:
                    needed_soon = True
                    break

        old_enough = days is not None and days >= opts.min_days_since_watch

        approaching = []
        needs_redownload = False
        redownload_by = None
        for viewer in active:
            if ep.absolute_index <= viewer.current_position:
                continue
            days_until = viewer.days_until(ep.absolute_index)
            approaching.append({
                "user_id": viewer.user_id,
                "current_position": viewer.current_position,
                "velocity": round(viewer.velocity, 3),
                "days_until_needed": round(days_until, 2),
            })
            if days_until <= opts.redownload_lead_days:
                needs_redownload = True
                needed_at = now + timedelta(days=days_until)
                if redownload_by is None or needed_at < redownload_by:
                    redownload_by = needed_at

        if behind_all and old_enough and not needed_soon and ep.view_count > 0:
            return EpisodeVerdict(
                episode=ep,
                safe_to_delete=True,
                reason=f"Behind all {len(active)} active viewers, unwatched for {math.floor(days)} days",
                days_since_watch=days,
                needs_redownload=needs_redownload,
                redownload_by=redownload_by,
                users_approaching=approaching,
            )

        reasons = []
        if not behind_all:
            reasons.append("ahead of active viewer")
        if needed_soon:
            reasons.append("viewer approaching based on velocity")
        if not old_enough and ep.view_count > 0:
            reasons.append(f"only {math.floor(days or 0)} days since watch")
        if ep.view_count <= 0:
            reasons.append("never watched")

        return EpisodeVerdict(
            episode=ep,
            safe_to_delete=False,
            reason=", ".join(reasons),
            days_since_watch=days,
            needs_redownload=needs_redownload,
            redownload_by=redownload_by,
            users_approaching=approaching,
        )


def redownload_plan(analysis: ShowAnalysis) -> list[EpisodeVerdict]:
    """Episodes flagged for redownload, most urgent first."""
    flagged = analysis.needs_redownload
    return sorted(flagged, key=lambda v: (v.redownload_by is None, v.redownload_by or datetime.max, v.absolute_index))
