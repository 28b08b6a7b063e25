"""
Read-side stores for rules, exclusions, watchlist entries and viewer velocity.

These tables are written by the API layer and the watch-history sync; the
lifecycle core only reads them, apart from recording rule run statistics.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_

from database import get_session
from exceptions import RuleNotFoundError
from models import Rule, Exclusion, WatchlistEntry, UserVelocity, utcnow
from rule_schema import media_type_variants

logger = logging.getLogger(__name__)


def _media_type_in(model, media_type: str):
    """Match any stored spelling of a media type ("tv" rows match "show")."""
    return func.lower(model.media_type).in_(media_type_variants(media_type))


class RuleRepository:
    """Rule lookups and run statistics."""

    def list_active(self) -> list[Rule]:
        """Active rules, highest priority first, then oldest first."""
        session = get_session()
        try:
            return (
                session.query(Rule)
                .filter(Rule.is_active == True)  # noqa: E712
                .order_by(Rule.priority.desc(), Rule.created_at.asc(), Rule.id.asc())
                .all()
            )
        finally:
            session.close()

    def get(self, rule_id: int) -> Rule:
        session = get_session()
        try:
            rule = session.query(Rule).filter(Rule.id == rule_id).first()
            if rule is None:
                raise RuleNotFoundError(rule_id)
            return rule
        finally:
            session.close()

    def find(self, rule_id: Optional[int]) -> Optional[Rule]:
        """Like get(), but returns None for a missing or null id."""
        if rule_id is None:
            return None
        try:
            return self.get(rule_id)
        except RuleNotFoundError:
            return None

    def record_run(self, rule_id: int, match_count: int, ran_at: Optional[datetime] = None) -> None:
        session = get_session()
        try:
            updated = (
                session.query(Rule)
                .filter(Rule.id == rule_id)
                .update(
                    {Rule.last_run: ran_at or utcnow(), Rule.last_run_matches: match_count},
                    synchronize_session=False,
                )
            )
            session.commit()
            if not updated:
                logger.warning(f"[RULES] Cannot record run for missing rule {rule_id}")
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


class ExclusionStore:
    """Standing protection records."""

    def list_active(self, now: Optional[datetime] = None) -> list[Exclusion]:
        """Exclusions that have not expired."""
        now = now or utcnow()
        session = get_session()
        try:
            return (
                session.query(Exclusion)
                .filter(or_(Exclusion.expires_at.is_(None), Exclusion.expires_at > now))
                .all()
            )
        finally:
            session.close()

    def find_manual_protection(self, tmdb_id: Optional[str], media_type: Optional[str],
                               now: Optional[datetime] = None) -> Optional[Exclusion]:
        """Active manual protection for a tmdb id and media type."""
        if not tmdb_id:
            return None
        now = now or utcnow()
        session = get_session()
        try:
            query = session.query(Exclusion).filter(
                Exclusion.type == "manual_protection",
                Exclusion.tmdb_id == str(tmdb_id),
                or_(Exclusion.expires_at.is_(None), Exclusion.expires_at > now),
            )
            if media_type:
                query = query.filter(or_(Exclusion.media_type.is_(None), _media_type_in(Exclusion, media_type)))
            return query.first()
        finally:
            session.close()


class WatchlistStore:
    """Internal watchlist lookups. Only active entries are returned."""

    def _first(self, *criteria) -> Optional[WatchlistEntry]:
        session = get_session()
        try:
            return (
                session.query(WatchlistEntry)
                .filter(WatchlistEntry.is_active == True, *criteria)  # noqa: E712
                .order_by(WatchlistEntry.added_at.asc(), WatchlistEntry.id.asc())
                .first()
            )
        finally:
            session.close()

    def find_by_tmdb(self, tmdb_id: Optional[str], media_type: Optional[str] = None) -> Optional[WatchlistEntry]:
        if not tmdb_id:
            return None
        criteria = [WatchlistEntry.tmdb_id == str(tmdb_id)]
        if media_type:
            criteria.append(_media_type_in(WatchlistEntry, media_type))
        return self._first(*criteria)

    def find_by_imdb(self, imdb_id: Optional[str]) -> Optional[WatchlistEntry]:
        if not imdb_id:
            return None
        return self._first(WatchlistEntry.imdb_id == imdb_id)

    def find_by_title_year(self, title: Optional[str], year: Optional[int],
                           media_type: Optional[str] = None) -> Optional[WatchlistEntry]:
        if not title or not year:
            return None
        criteria = [WatchlistEntry.title == title, WatchlistEntry.year == year]
        if media_type:
            criteria.append(_media_type_in(WatchlistEntry, media_type))
        return self._first(*criteria)

    def find_by_title(self, title: Optional[str], media_type: Optional[str] = None) -> Optional[WatchlistEntry]:
        """Case-insensitive title match, ignoring year."""
        if not title:
            return None
        criteria = [func.lower(func.trim(WatchlistEntry.title)) == title.strip().lower()]
        if media_type:
            criteria.append(_media_type_in(WatchlistEntry, media_type))
        return self._first(*criteria)


class VelocityStore:
    """Per (user, show) velocity records from watch-history ingestion."""

    def for_show(self, show_id: str) -> list[UserVelocity]:
        session = get_session()
        try:
            return (
                session.query(UserVelocity)
                .filter(UserVelocity.show_id == str(show_id))
                .order_by(UserVelocity.user_id.asc())
                .all()
            )
        finally:
            session.close()
