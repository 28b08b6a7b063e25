"""
SQLAlchemy ORM models for rules, the deferred action queue, protection
records, viewer velocity, the audit journal and daily statistics.

All timestamps are naive UTC.
"""
import json
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, BigInteger, String, Text, Boolean, DateTime, Date, Float, Index, text
from database import Base


def utcnow() -> datetime:
    """Current time as naive UTC, the convention for every stored timestamp."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() + "Z" if value else None


def _load_json(raw, default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (ValueError, TypeError):
        return default


class Rule(Base):
    """
    Lifecycle rule.

    Rules are evaluated in priority order (higher number runs first, ties broken
    by creation time). Conditions are stored as a JSON condition tree, actions as
    a JSON array executed in order when the conditions match. The smart_* columns
    configure velocity-aware episode retention.
    """
    __tablename__ = "rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    priority = Column(Integer, default=0, nullable=False)

    # Scope
    target_type = Column(String(20), nullable=False)  # movies, shows, seasons, episodes
    target_library_ids = Column(Text, nullable=True)  # JSON list, null = all libraries

    # Rule logic - stored as JSON
    conditions = Column(Text, nullable=True)  # JSON condition tree
    actions = Column(Text, nullable=True)  # JSON array of action objects
    buffer_days = Column(Integer, default=15, nullable=False)

    # Smart mode
    smart_enabled = Column(Boolean, default=False, nullable=False)
    smart_min_days_since_watch = Column(Integer, nullable=True)
    smart_velocity_buffer_days = Column(Integer, nullable=True)
    smart_protect_episodes_ahead = Column(Integer, nullable=True)
    smart_active_viewer_days = Column(Integer, nullable=True)
    smart_require_all_users_watched = Column(Boolean, default=True, nullable=False)
    smart_proactive_redownload = Column(Boolean, default=True, nullable=False)
    smart_redownload_lead_days = Column(Integer, nullable=True)

    # Tracking
    last_run = Column(DateTime, nullable=True)
    last_run_matches = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_rule_active_priority", is_active, priority),
    )

    def get_conditions(self) -> dict:
        """Parse the condition tree. Legacy list form is wrapped in an AND group."""
        data = _load_json(self.conditions, {})
        if isinstance(data, list):
            return {"operator": "AND", "conditions": data}
        return data

    def set_conditions(self, conditions) -> None:
        self.conditions = json.dumps(conditions) if conditions else None

    def get_actions(self) -> list:
        return _load_json(self.actions, [])

    def set_actions(self, actions: list) -> None:
        self.actions = json.dumps(actions) if actions else "[]"

    def get_target_library_ids(self) -> list:
        return _load_json(self.target_library_ids, [])

    def set_target_library_ids(self, library_ids: list) -> None:
        self.target_library_ids = json.dumps(library_ids) if library_ids else None

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "priority": self.priority,
            "target_type": self.target_type,
            "target_library_ids": self.get_target_library_ids(),
            "conditions": self.get_conditions(),
            "actions": self.get_actions(),
            "buffer_days": self.buffer_days,
            "smart_enabled": self.smart_enabled,
            "smart_min_days_since_watch": self.smart_min_days_since_watch,
            "smart_velocity_buffer_days": self.smart_velocity_buffer_days,
            "smart_protect_episodes_ahead": self.smart_protect_episodes_ahead,
            "smart_active_viewer_days": self.smart_active_viewer_days,
            "smart_require_all_users_watched": self.smart_require_all_users_watched,
            "smart_proactive_redownload": self.smart_proactive_redownload,
            "smart_redownload_lead_days": self.smart_redownload_lead_days,
            "last_run": _iso(self.last_run),
            "last_run_matches": self.last_run_matches,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Rule(id={self.id}, name={self.name}, target={self.target_type}, smart={self.smart_enabled})>"


class QueueItem(Base):
    """
    Deferred destructive action for one media item.

    Created by a rule match with action_at = match time + buffer days. Leaves the
    pending state exactly once (completed, cancelled or error). Dry-run rows are
    previews and are never processed.
    """
    __tablename__ = "queue_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(Integer, nullable=True)
    media_item_id = Column(String(64), nullable=False)  # Media-server item id
    tmdb_id = Column(String(32), nullable=True)
    media_type = Column(String(20), nullable=False)  # movie, show, season, episode
    title = Column(String(500), nullable=True)
    year = Column(Integer, nullable=True)
    # Note: 'metadata' is reserved by SQLAlchemy, so we use 'item_metadata'
    item_metadata = Column(Text, nullable=True)  # JSON snapshot taken at match time
    added_at = Column(DateTime, default=utcnow, nullable=False)
    action_at = Column(DateTime, nullable=False)
    status = Column(String(20), default="pending", nullable=False)  # pending, completed, cancelled, error
    is_dry_run = Column(Boolean, default=False, nullable=False)
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    # Set while a processing pass owns the row; cleared when it leaves pending
    claim_token = Column(String(36), nullable=True)
    claimed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_queue_status_action_at", status, action_at),
        Index("idx_queue_media_item", media_item_id),
        # At most one pending row per item and dry-run flag
        Index(
            "uq_queue_pending_item", media_item_id, is_dry_run, unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    def get_metadata(self) -> dict:
        return _load_json(self.item_metadata, {})

    def set_metadata(self, metadata: dict) -> None:
        self.item_metadata = json.dumps(metadata, default=str) if metadata else None

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "media_item_id": self.media_item_id,
            "tmdb_id": self.tmdb_id,
            "media_type": self.media_type,
            "title": self.title,
            "year": self.year,
            "metadata": self.get_metadata(),
            "added_at": _iso(self.added_at),
            "action_at": _iso(self.action_at),
            "status": self.status,
            "is_dry_run": self.is_dry_run,
            "error_message": self.error_message,
            "processed_at": _iso(self.processed_at),
            "claimed": self.claim_token is not None,
        }

    def __repr__(self):
        return f"<QueueItem(id={self.id}, item={self.media_item_id}, status={self.status}, dry_run={self.is_dry_run})>"


class Exclusion(Base):
    """
    Standing protection record, checked before any rule evaluation.

    Type decides which column is compared: media (media_item_id), user (user_id),
    collection/genre/tag/regex (value), manual_protection (tmdb_id + media_type).
    """
    __tablename__ = "exclusions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(30), nullable=False)
    media_item_id = Column(String(64), nullable=True)
    user_id = Column(String(64), nullable=True)
    tmdb_id = Column(String(32), nullable=True)
    media_type = Column(String(20), nullable=True)
    title = Column(String(500), nullable=True)
    value = Column(String(500), nullable=True)
    reason = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)  # Null = never expires
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_exclusion_type", type),
        Index("idx_exclusion_tmdb", tmdb_id, media_type),
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utcnow())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "media_item_id": self.media_item_id,
            "user_id": self.user_id,
            "tmdb_id": self.tmdb_id,
            "media_type": self.media_type,
            "title": self.title,
            "value": self.value,
            "reason": self.reason,
            "expires_at": _iso(self.expires_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Exclusion(id={self.id}, type={self.type}, value={self.value or self.media_item_id or self.tmdb_id})>"


class WatchlistEntry(Base):
    """A user's internal watchlist entry. Active entries protect the content."""
    __tablename__ = "watchlist"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    tmdb_id = Column(String(32), nullable=True)
    imdb_id = Column(String(32), nullable=True)
    media_type = Column(String(20), nullable=False)  # movie, show
    title = Column(String(500), nullable=True)
    year = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    added_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_watchlist_tmdb", tmdb_id, media_type),
        Index("idx_watchlist_imdb", imdb_id),
        Index("idx_watchlist_active", is_active),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "tmdb_id": self.tmdb_id,
            "imdb_id": self.imdb_id,
            "media_type": self.media_type,
            "title": self.title,
            "year": self.year,
            "is_active": self.is_active,
            "added_at": _iso(self.added_at),
        }

    def __repr__(self):
        return f"<WatchlistEntry(id={self.id}, user={self.user_id}, title={self.title}, active={self.is_active})>"


class UserVelocity(Base):
    """
    Per (user, show) watch position and pace.
    Written by watch-history ingestion, read by smart retention.
    """
    __tablename__ = "user_velocity"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    show_id = Column(String(64), nullable=False)  # Media-server show id
    current_position = Column(Integer, default=0, nullable=False)  # Absolute episode index
    current_season = Column(Integer, nullable=True)
    current_episode = Column(Integer, nullable=True)
    episodes_per_day = Column(Float, default=0.0, nullable=False)
    last_watched_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_velocity_user_show", user_id, show_id, unique=True),
        Index("idx_velocity_show", show_id),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "show_id": self.show_id,
            "current_position": self.current_position,
            "current_season": self.current_season,
            "current_episode": self.current_episode,
            "episodes_per_day": self.episodes_per_day,
            "last_watched_at": _iso(self.last_watched_at),
        }

    def __repr__(self):
        return f"<UserVelocity(user={self.user_id}, show={self.show_id}, position={self.current_position})>"


class JournalEntry(Base):
    """
    Audit event.
    Records rule evaluations, action executions and queue transitions.
    """
    __tablename__ = "journal_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False)
    category = Column(String(20), nullable=False)  # "rule", "action", "queue", "smart", "task"
    action_type = Column(String(30), nullable=False)  # "evaluate", "enqueue", "delete", "cancel", ...
    entity_id = Column(String(64), nullable=True)  # ID of the affected entity
    entity_name = Column(String(500), nullable=False)  # Human-readable name
    description = Column(Text, nullable=False)
    details = Column(Text, nullable=True)  # JSON with structured event data
    dry_run = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("idx_journal_timestamp", timestamp.desc()),
        Index("idx_journal_category", category),
        Index("idx_journal_action_type", action_type),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "category": self.category,
            "action_type": self.action_type,
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "description": self.description,
            "details": _load_json(self.details, None),
            "dry_run": self.dry_run,
        }

    def __repr__(self):
        return f"<JournalEntry(id={self.id}, category={self.category}, action={self.action_type}, entity={self.entity_name})>"


class StatsDaily(Base):
    """Daily aggregate counters. One row per day."""
    __tablename__ = "stats_daily"

    id = Column(Integer, primary_key=True, autoincrement=True)
    date = Column(Date, nullable=False, unique=True)
    requests_count = Column(Integer, default=0, nullable=False)
    deletions_count = Column(Integer, default=0, nullable=False)
    restorations_count = Column(Integer, default=0, nullable=False)
    storage_saved_bytes = Column(BigInteger, default=0, nullable=False)
    rules_run = Column(Integer, default=0, nullable=False)
    queue_size = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("idx_stats_daily_date", date.desc()),
    )

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat() if self.date else None,
            "requests_count": self.requests_count,
            "deletions_count": self.deletions_count,
            "restorations_count": self.restorations_count,
            "storage_saved_bytes": self.storage_saved_bytes,
            "rules_run": self.rules_run,
            "queue_size": self.queue_size,
        }

    def __repr__(self):
        return f"<StatsDaily(date={self.date}, deletions={self.deletions_count})>"


class TaskExecution(Base):
    """
    Record of a task execution.
    One row per execution attempt with results.
    """
    __tablename__ = "task_executions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(String(50), nullable=False)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    status = Column(String(20), nullable=False)  # "running", "completed", "failed", "cancelled"
    success = Column(Boolean, nullable=True)
    message = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    total_items = Column(Integer, default=0, nullable=False)
    success_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)
    skipped_count = Column(Integer, default=0, nullable=False)
    details = Column(Text, nullable=True)  # JSON with execution details
    triggered_by = Column(String(20), default="scheduled", nullable=False)  # "scheduled", "manual"

    __table_args__ = (
        Index("idx_task_exec_task_id", task_id),
        Index("idx_task_exec_started_at", started_at.desc()),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_seconds": self.duration_seconds,
            "status": self.status,
            "success": self.success,
            "message": self.message,
            "error": self.error,
            "total_items": self.total_items,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "details": _load_json(self.details, None),
            "triggered_by": self.triggered_by,
        }

    def __repr__(self):
        return f"<TaskExecution(id={self.id}, task_id={self.task_id}, status={self.status})>"
