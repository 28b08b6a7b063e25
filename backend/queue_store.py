"""
Persistent store for deferred queue entries.

Every transition out of "pending" is a single conditional UPDATE
(compare-and-set on status and claim token), so an entry's destructive
actions can run at most once even if two passes overlap. Insertion keeps at
most one pending row per media item and dry-run flag, backed by a partial
unique index.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError

from database import get_session
from models import QueueItem, utcnow

logger = logging.getLogger(__name__)

PENDING = "pending"
COMPLETED = "completed"
CANCELLED = "cancelled"
ERROR = "error"

TERMINAL_STATUSES = (COMPLETED, CANCELLED, ERROR)


@dataclass
class EnqueueResult:
    """Outcome of an insertion attempt."""
    outcome: str  # "inserted", "replaced", "already_queued"
    item: Optional[QueueItem] = None

    @property
    def inserted(self) -> bool:
        return self.outcome in ("inserted", "replaced")


class QueueStore:

    def get(self, queue_id: int) -> Optional[QueueItem]:
        session = get_session()
        try:
            return session.query(QueueItem).filter(QueueItem.id == queue_id).first()
        finally:
            session.close()

    def find_live_pending(self, media_item_id: str) -> Optional[QueueItem]:
        session = get_session()
        try:
            return (
                session.query(QueueItem)
                .filter(
                    QueueItem.media_item_id == str(media_item_id),
                    QueueItem.status == PENDING,
                    QueueItem.is_dry_run == False,  # noqa: E712
                )
                .first()
            )
        finally:
            session.close()

    def enqueue(self, *, media_item_id: str, media_type: str, action_at: datetime,
                dry_run: bool, rule_id: Optional[int] = None, tmdb_id: Optional[str] = None,
                title: Optional[str] = None, year: Optional[int] = None,
                metadata: Optional[dict] = None) -> EnqueueResult:
        """
        Insert a pending entry for an item.

        A live pending entry for the item makes this a no-op. Otherwise any
        dry-run placeholders for the item are replaced by the new row.
        """
        media_item_id = str(media_item_id)
        session = get_session()
        try:
            existing_live = (
                session.query(QueueItem.id)
                .filter(
                    QueueItem.media_item_id == media_item_id,
                    QueueItem.status == PENDING,
                    QueueItem.is_dry_run == False,  # noqa: E712
                )
                .first()
            )
            if existing_live is not None:
                return EnqueueResult("already_queued")

            replaced = (
                session.query(QueueItem)
                .filter(QueueItem.media_item_id == media_item_id, QueueItem.is_dry_run == True)  # noqa: E712
                .delete(synchronize_session=False)
            )

            row = QueueItem(
                rule_id=rule_id,
                media_item_id=media_item_id,
                tmdb_id=str(tmdb_id) if tmdb_id else None,
                media_type=media_type,
                title=title,
                year=year,
                added_at=utcnow(),
                action_at=action_at,
                status=PENDING,
                is_dry_run=dry_run,
            )
            row.set_metadata(metadata or {})
            session.add(row)
            session.commit()
            session.refresh(row)
            return EnqueueResult("replaced" if replaced else "inserted", row)
        except IntegrityError:
            # A concurrent pass inserted the same item first
            session.rollback()
            logger.debug(f"[QUEUE] Concurrent insert for item {media_item_id}, keeping existing entry")
            return EnqueueResult("already_queued")
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def due_items(self, now: datetime, limit: int) -> list[QueueItem]:
        """Live pending entries whose buffer has elapsed, oldest due first."""
        session = get_session()
        try:
            return (
                session.query(QueueItem)
                .filter(
                    QueueItem.status == PENDING,
                    QueueItem.is_dry_run == False,  # noqa: E712
                    QueueItem.claim_token.is_(None),
                    QueueItem.action_at <= now,
                )
                .order_by(QueueItem.action_at.asc(), QueueItem.id.asc())
                .limit(limit)
                .all()
            )
        finally:
            session.close()

    def pending_live(self) -> list[QueueItem]:
        session = get_session()
        try:
            return (
                session.query(QueueItem)
                .filter(
                    QueueItem.status == PENDING,
                    QueueItem.is_dry_run == False,  # noqa: E712
                    QueueItem.claim_token.is_(None),
                )
                .order_by(QueueItem.action_at.asc(), QueueItem.id.asc())
                .all()
            )
        finally:
            session.close()

    def count_pending(self, dry_run: bool = False) -> int:
        session = get_session()
        try:
            return (
                session.query(QueueItem)
                .filter(QueueItem.status == PENDING, QueueItem.is_dry_run == dry_run)
                .count()
            )
        finally:
            session.close()

    def list_items(self, status: Optional[str] = None, dry_run: Optional[bool] = None,
                   limit: int = 200) -> list[QueueItem]:
        session = get_session()
        try:
            query = session.query(QueueItem)
            if status:
                query = query.filter(QueueItem.status == status)
            if dry_run is not None:
                query = query.filter(QueueItem.is_dry_run == dry_run)
            return query.order_by(QueueItem.action_at.asc(), QueueItem.id.asc()).limit(limit).all()
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Compare-and-set transitions
    # -------------------------------------------------------------------------

    def claim(self, queue_id: int, now: Optional[datetime] = None) -> Optional[str]:
        """Take ownership of a pending entry. Returns the claim token, or None if lost."""
        token = str(uuid.uuid4())
        session = get_session()
        try:
            updated = (
                session.query(QueueItem)
                .filter(
                    QueueItem.id == queue_id,
                    QueueItem.status == PENDING,
                    QueueItem.claim_token.is_(None),
                )
                .update(
                    {QueueItem.claim_token: token, QueueItem.claimed_at: now or utcnow()},
                    synchronize_session=False,
                )
            )
            session.commit()
            return token if updated == 1 else None
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def release(self, queue_id: int, token: str) -> bool:
        """Give up a claim without changing status."""
        session = get_session()
        try:
            updated = (
                session.query(QueueItem)
                .filter(QueueItem.id == queue_id, QueueItem.claim_token == token)
                .update({QueueItem.claim_token: None, QueueItem.claimed_at: None}, synchronize_session=False)
            )
            session.commit()
            return updated == 1
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def transition(self, queue_id: int, to_status: str, error_message: Optional[str] = None,
                   token: Optional[str] = None, now: Optional[datetime] = None) -> bool:
        """
        Move a pending entry to a terminal status.

        With a token, only the claim holder may transition; without one, only
        an unclaimed entry may. Returns False if the entry was not pending
        (or the claim did not match).
        """
        if to_status not in TERMINAL_STATUSES:
            raise ValueError(f"Invalid terminal status: {to_status}")
        session = get_session()
        try:
            criteria = [QueueItem.id == queue_id, QueueItem.status == PENDING]
            if token is None:
                criteria.append(QueueItem.claim_token.is_(None))
            else:
                criteria.append(QueueItem.claim_token == token)
            updated = (
                session.query(QueueItem)
                .filter(*criteria)
                .update(
                    {
                        QueueItem.status: to_status,
                        QueueItem.error_message: error_message,
                        QueueItem.processed_at: now or utcnow(),
                        QueueItem.claim_token: None,
                        QueueItem.claimed_at: None,
                    },
                    synchronize_session=False,
                )
            )
            session.commit()
            if updated != 1:
                logger.debug(f"[QUEUE] Transition of {queue_id} to {to_status} lost (no longer pending)")
            return updated == 1
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def delete_pending(self, queue_id: int) -> bool:
        """Remove an unclaimed pending entry (backing item vanished)."""
        session = get_session()
        try:
            deleted = (
                session.query(QueueItem)
                .filter(
                    QueueItem.id == queue_id,
                    QueueItem.status == PENDING,
                    QueueItem.claim_token.is_(None),
                )
                .delete(synchronize_session=False)
            )
            session.commit()
            return deleted == 1
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def reset_for_retry(self, queue_id: int, action_at: Optional[datetime] = None) -> bool:
        """Operator retry: error -> pending, due at action_at (default now)."""
        session = get_session()
        try:
            row = session.query(QueueItem).filter(QueueItem.id == queue_id).first()
            if row is None or row.status != ERROR or row.is_dry_run:
                return False
            # Another pending entry for the item would violate the one-pending rule
            live_pending = (
                session.query(QueueItem.id)
                .filter(
                    QueueItem.media_item_id == row.media_item_id,
                    QueueItem.status == PENDING,
                    QueueItem.is_dry_run == False,  # noqa: E712
                )
                .first()
            )
            if live_pending is not None:
                return False
            updated = (
                session.query(QueueItem)
                .filter(QueueItem.id == queue_id, QueueItem.status == ERROR)
                .update(
                    {
                        QueueItem.status: PENDING,
                        QueueItem.error_message: None,
                        QueueItem.processed_at: None,
                        QueueItem.action_at: action_at or utcnow(),
                    },
                    synchronize_session=False,
                )
            )
            session.commit()
            return updated == 1
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def release_stale_claims(self, older_than: timedelta) -> int:
        """Clear claims left behind by a pass that died mid-flight."""
        cutoff = utcnow() - older_than
        session = get_session()
        try:
            released = (
                session.query(QueueItem)
                .filter(QueueItem.claim_token.isnot(None), QueueItem.claimed_at < cutoff)
                .update({QueueItem.claim_token: None, QueueItem.claimed_at: None}, synchronize_session=False)
            )
            session.commit()
            if released:
                logger.warning(f"[QUEUE] Released {released} stale queue claims")
            return released
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def purge_terminal(self, older_than_days: int) -> int:
        """Delete finished entries (and stale dry-run previews) older than N days."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        session = get_session()
        try:
            deleted = (
                session.query(QueueItem)
                .filter(
                    or_(
                        and_(QueueItem.status.in_(TERMINAL_STATUSES), QueueItem.processed_at < cutoff),
                        and_(QueueItem.is_dry_run == True, QueueItem.added_at < cutoff),  # noqa: E712
                    )
                )
                .delete(synchronize_session=False)
            )
            session.commit()
            logger.info(f"[QUEUE] Purged {deleted} queue entries older than {older_than_days} days")
            return deleted
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
