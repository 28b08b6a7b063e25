"""
Exclusion Guard

Standing protection records are checked before any rule condition is
evaluated, so a matching rule can never outvote an exclusion. Manual
protection is checked once more, against fresh data, right before any
destructive action runs.
"""
import logging
import re
from datetime import datetime
from typing import Optional

from condition_evaluator import EvaluationContext
from media_adapters import MediaItem
from models import Exclusion, utcnow
from repositories import ExclusionStore
from rule_schema import normalize_media_type

logger = logging.getLogger(__name__)


class ExclusionGuard:
    def __init__(self, store: Optional[ExclusionStore] = None):
        self.store = store or ExclusionStore()
        self._exclusions: Optional[list[Exclusion]] = None
        self._bad_patterns: set[str] = set()

    def refresh(self, now: Optional[datetime] = None) -> int:
        """Load the active exclusions for a pass. Returns how many are active."""
        self._exclusions = self.store.list_active(now)
        return len(self._exclusions)

    def _active(self, now: datetime) -> list[Exclusion]:
        if self._exclusions is None:
            self.refresh(now)
        return [e for e in self._exclusions if not e.is_expired(now)]

    def is_excluded(self, item: MediaItem, context: EvaluationContext) -> bool:
        return self.find_exclusion(item, context) is not None

    def find_exclusion(self, item: MediaItem, context: EvaluationContext) -> Optional[Exclusion]:
        """The first active exclusion covering the item, if any."""
        for exclusion in self._active(context.now):
            if self._matches(exclusion, item, context):
                logger.debug(f"[EXCLUSION] '{item.display_title}' excluded by {exclusion.type} exclusion {exclusion.id}")
                return exclusion
        return None

    def _matches(self, exclusion: Exclusion, item: MediaItem, context: EvaluationContext) -> bool:
        kind = exclusion.type
        value = exclusion.value

        if kind == "media":
            target = exclusion.media_item_id or value
            return bool(target) and str(target) in (item.id, item.show_id)

        if kind == "user":
            user = exclusion.user_id or value
            return bool(user) and str(user) in [str(u) for u in item.watched_by]

        if kind == "collection":
            return bool(value) and value in item.collections

        if kind == "genre":
            return bool(value) and any(g.lower() == value.lower() for g in item.genres)

        if kind == "tag":
            record = context.orchestrator_record
            if not value or record is None:
                return False
            return value.lower() in [str(t).lower() for t in record.tags]

        if kind == "regex":
            return self._regex_matches(value, item)

        if kind == "manual_protection":
            return self._protection_matches(exclusion, item)

        logger.warning(f"[EXCLUSION] Unknown exclusion type: {kind}")
        return False

    def _regex_matches(self, pattern: Optional[str], item: MediaItem) -> bool:
        if not pattern:
            return False
        try:
            regex = re.compile(pattern, re.IGNORECASE)
        except re.error:
            if pattern not in self._bad_patterns:
                self._bad_patterns.add(pattern)
                logger.warning(f"Invalid regex exclusion: {pattern}")
            return False
        titles = [item.title]
        if item.show_title:
            titles.append(item.show_title)
        return any(regex.search(t or "") for t in titles)

    @staticmethod
    def _protection_matches(exclusion: Exclusion, item: MediaItem) -> bool:
        if not exclusion.tmdb_id or str(exclusion.tmdb_id) != str(item.tmdb_id or ""):
            return False
        protected_type = normalize_media_type(exclusion.media_type)
        return protected_type is None or protected_type == normalize_media_type(item.type)

    def is_manually_protected(self, item: MediaItem, subject: Optional[MediaItem] = None,
                              now: Optional[datetime] = None) -> Optional[str]:
        """
        Fresh manual-protection check for an item (and its parent show).

        Returns the protection reason, or None if the item is not protected.
        """
        now = now or utcnow()
        for candidate in (item, subject):
            if candidate is None or not candidate.tmdb_id:
                continue
            media_type = normalize_media_type(candidate.type)
            protection = self.store.find_manual_protection(candidate.tmdb_id, media_type, now)
            if protection is not None:
                return protection.reason or "Manually protected from deletion"
        return None
