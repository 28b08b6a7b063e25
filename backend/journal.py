"""
Audit and statistics sink.

emit() records structured lifecycle events (rule evaluations, action
executions, queue transitions); increment_daily() maintains the per-day
aggregate counters. Both are best-effort: a failure to record is logged and
never interrupts the pass that produced the event.
"""
import json
import logging
from datetime import datetime, timedelta, date
from typing import Optional, Any
from sqlalchemy import func, desc
from sqlalchemy.orm import Session

from database import get_session
from models import JournalEntry, StatsDaily, utcnow

logger = logging.getLogger(__name__)

DAILY_COUNTERS = (
    "requests_count",
    "deletions_count",
    "restorations_count",
    "storage_saved_bytes",
    "rules_run",
)


def emit(
    category: str,
    action_type: str,
    entity_name: str,
    description: str,
    entity_id: Optional[Any] = None,
    details: Optional[dict] = None,
    dry_run: bool = False,
) -> Optional[JournalEntry]:
    """
    Record an audit event.

    Args:
        category: Event source ("rule", "action", "queue", "smart", "task")
        action_type: What happened ("evaluate", "enqueue", "delete", "cancel", ...)
        entity_name: Human-readable name (rule name or media title)
        description: Human-readable description of the event
        entity_id: ID of the affected entity (optional)
        details: Structured event data (optional)
        dry_run: True when the event describes a preview

    Returns:
        The created JournalEntry or None if recording failed
    """
    session: Session = None
    try:
        session = get_session()
        entry = JournalEntry(
            timestamp=utcnow(),
            category=category,
            action_type=action_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            entity_name=entity_name or "",
            description=description,
            details=json.dumps(details, default=str) if details else None,
            dry_run=dry_run,
        )
        session.add(entry)
        session.commit()
        logger.debug(f"Journal entry logged: {category}/{action_type} - {entity_name}")
        return entry
    except Exception as e:
        logger.error(f"Failed to log journal entry: {e}")
        return None
    finally:
        if session is not None:
            session.close()


def increment_daily(day: Optional[date] = None, **counters: int) -> bool:
    """
    Add to today's aggregate counters (deletions_count=1, storage_saved_bytes=n, ...).

    Returns True if the counters were stored.
    """
    unknown = [name for name in counters if name not in DAILY_COUNTERS]
    if unknown:
        logger.warning(f"Ignoring unknown daily counters: {unknown}")
    day = day or utcnow().date()

    session: Session = None
    try:
        session = get_session()
        row = session.query(StatsDaily).filter(StatsDaily.date == day).first()
        if row is None:
            row = StatsDaily(date=day)
            session.add(row)
            session.flush()
        for name, amount in counters.items():
            if name in DAILY_COUNTERS and amount:
                setattr(row, name, (getattr(row, name) or 0) + int(amount))
        session.commit()
        return True
    except Exception as e:
        logger.error(f"Failed to update daily stats: {e}")
        return False
    finally:
        if session is not None:
            session.close()


def set_daily_queue_size(queue_size: int, day: Optional[date] = None) -> bool:
    """Store the pending queue size snapshot for the day."""
    day = day or utcnow().date()

    session: Session = None
    try:
        session = get_session()
        row = session.query(StatsDaily).filter(StatsDaily.date == day).first()
        if row is None:
            row = StatsDaily(date=day)
            session.add(row)
        row.queue_size = queue_size
        session.commit()
        return True
    except Exception as e:
        logger.error(f"Failed to update daily queue size: {e}")
        return False
    finally:
        if session is not None:
            session.close()


def get_daily_stats(days: int = 30) -> list[dict]:
    """Daily counters for the last N days, newest first."""
    session: Session = get_session()
    try:
        cutoff = utcnow().date() - timedelta(days=days)
        rows = (
            session.query(StatsDaily)
            .filter(StatsDaily.date >= cutoff)
            .order_by(desc(StatsDaily.date))
            .all()
        )
        return [row.to_dict() for row in rows]
    finally:
        session.close()


def get_entries(
    page: int = 1,
    page_size: int = 50,
    category: Optional[str] = None,
    action_type: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    dry_run: Optional[bool] = None,
) -> dict[str, Any]:
    """
    Query journal entries with filtering and pagination.

    Returns:
        Dict with count, page, page_size, total_pages, and results
    """
    session: Session = get_session()
    try:
        query = session.query(JournalEntry)

        if category:
            query = query.filter(JournalEntry.category == category)
        if action_type:
            query = query.filter(JournalEntry.action_type == action_type)
        if date_from:
            query = query.filter(JournalEntry.timestamp >= date_from)
        if date_to:
            query = query.filter(JournalEntry.timestamp <= date_to)
        if search:
            search_pattern = f"%{search}%"
            query = query.filter(
                (JournalEntry.entity_name.ilike(search_pattern)) |
                (JournalEntry.description.ilike(search_pattern))
            )
        if dry_run is not None:
            query = query.filter(JournalEntry.dry_run == dry_run)

        total_count = query.count()
        total_pages = (total_count + page_size - 1) // page_size if total_count > 0 else 1
        offset = (page - 1) * page_size

        # Newest first; id breaks ties between events in the same instant
        entries = (
            query.order_by(desc(JournalEntry.timestamp), desc(JournalEntry.id))
            .offset(offset).limit(page_size).all()
        )

        return {
            "count": total_count,
            "page": page,
            "page_size": page_size,
            "total_pages": total_pages,
            "results": [entry.to_dict() for entry in entries],
        }
    finally:
        session.close()


def get_stats() -> dict[str, Any]:
    """
    Get summary statistics for the journal.

    Returns:
        Dict with total_entries, by_category, by_action_type, and date_range
    """
    session: Session = get_session()
    try:
        total_count = session.query(func.count(JournalEntry.id)).scalar() or 0

        category_counts = (
            session.query(JournalEntry.category, func.count(JournalEntry.id))
            .group_by(JournalEntry.category)
            .all()
        )
        action_counts = (
            session.query(JournalEntry.action_type, func.count(JournalEntry.id))
            .group_by(JournalEntry.action_type)
            .all()
        )

        oldest = session.query(func.min(JournalEntry.timestamp)).scalar()
        newest = session.query(func.max(JournalEntry.timestamp)).scalar()

        return {
            "total_entries": total_count,
            "by_category": {cat: count for cat, count in category_counts},
            "by_action_type": {action: count for action, count in action_counts},
            "date_range": {
                "oldest": oldest.isoformat() + "Z" if oldest else None,
                "newest": newest.isoformat() + "Z" if newest else None,
            },
        }
    finally:
        session.close()


def purge_old_entries(days: int = 30) -> int:
    """
    Delete journal entries older than the specified number of days.

    Returns:
        Number of entries deleted
    """
    session: Session = get_session()
    try:
        cutoff_date = utcnow() - timedelta(days=days)
        deleted_count = (
            session.query(JournalEntry)
            .filter(JournalEntry.timestamp < cutoff_date)
            .delete()
        )
        session.commit()
        logger.info(f"Purged {deleted_count} journal entries older than {days} days")
        return deleted_count
    finally:
        session.close()
