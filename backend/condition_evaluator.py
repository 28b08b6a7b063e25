"""
Condition Evaluator

Evaluates a rule's condition tree against a media item snapshot and the
context derived for it. Evaluation is a pure function of (item, context):
every field value comes from a resolver in FIELD_RESOLVERS, and "now" is
carried on the context.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, date
from typing import Any, Callable, Optional

from media_adapters import MediaItem, OrchestratorRecord
from models import utcnow
from rule_schema import (
    ConditionField,
    ConditionGroup,
    ConditionLeaf,
    GroupOperator,
    Operator,
    parse_condition_tree,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
BYTES_PER_GB = 1024 ** 3
HDR_TYPES = ("hdr", "hdr10", "hdr10+", "dolby vision", "dv", "hlg")
CONTINUING_STATUSES = ("continuing", "returning series")


@dataclass
class EvaluationContext:
    """
    Derived facts about an item, built by the ContextBuilder.

    on_watchlist/wanted_by/wanted_reason describe watchlist protection;
    orchestrator_record is the linked movie or series, if any.
    """
    now: datetime = field(default_factory=utcnow)
    on_watchlist: bool = False
    wanted_by: Optional[str] = None
    wanted_reason: Optional[str] = None
    last_activity: Optional[datetime] = None
    orchestrator_record: Optional[OrchestratorRecord] = None
    file_size: int = 0
    resolution: Optional[str] = None
    has_request: bool = False
    requested_by: Optional[str] = None
    request_date: Optional[datetime] = None
    smart_analysis: Optional[dict] = None

    def to_dict(self) -> dict:
        record = self.orchestrator_record
        return {
            "on_watchlist": self.on_watchlist,
            "wanted_by": self.wanted_by,
            "wanted_reason": self.wanted_reason,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "orchestrator": {"kind": record.kind, "id": record.id} if record else None,
            "file_size": self.file_size,
            "has_request": self.has_request,
            "requested_by": self.requested_by,
            "smart_analysis": self.smart_analysis,
        }


class _UnknownField:
    """Resolution result for a field identifier with no registered resolver."""

    def __repr__(self):
        return "UNKNOWN_FIELD"


UNKNOWN_FIELD = _UnknownField()


# =============================================================================
# Field Resolvers
# =============================================================================

def days_between(then, now: datetime) -> float:
    """Whole days elapsed since then; +inf when then is unknown."""
    if then is None:
        return math.inf
    if isinstance(then, date) and not isinstance(then, datetime):
        then = datetime(then.year, then.month, then.day)
    return math.floor((now - then).total_seconds() / SECONDS_PER_DAY)


def _record(ctx: EvaluationContext) -> Optional[OrchestratorRecord]:
    return ctx.orchestrator_record


def _resolution(item: MediaItem, ctx: EvaluationContext) -> str:
    return ctx.resolution or item.resolution or ""


def _days_since_release(item: MediaItem, ctx: EvaluationContext):
    if item.originally_available_at:
        return days_between(item.originally_available_at, ctx.now)
    if item.year:
        return days_between(datetime(item.year, 1, 1), ctx.now)
    return math.inf


def _watch_progress(item: MediaItem, ctx: EvaluationContext) -> float:
    if not item.duration:
        return 0
    return ((item.view_offset or 0) / item.duration) * 100


def _is_4k(item: MediaItem, ctx: EvaluationContext) -> bool:
    res = str(_resolution(item, ctx)).lower()
    if res in ("4k", "2160"):
        return True
    digits = "".join(ch for ch in res if ch.isdigit())
    return bool(digits) and int(digits) >= 2160


def _is_hdr(item: MediaItem, ctx: EvaluationContext) -> bool:
    record = _record(ctx)
    ranges = [
        (item.video_dynamic_range or "").lower(),
        ((record.video_dynamic_range if record else None) or "").lower(),
    ]
    return any(h in r for h in HDR_TYPES for r in ranges if r)


def _is_continuing(item: MediaItem, ctx: EvaluationContext) -> bool:
    record = _record(ctx)
    status = ((record.status if record else None) or "").lower()
    return status in CONTINUING_STATUSES


def _video_codec(item: MediaItem, ctx: EvaluationContext) -> str:
    record = _record(ctx)
    return item.video_codec or (record.video_codec if record else None) or ""


def _audio_codec(item: MediaItem, ctx: EvaluationContext) -> str:
    record = _record(ctx)
    return item.audio_codec or (record.audio_codec if record else None) or ""


FieldResolver = Callable[[MediaItem, EvaluationContext], Any]

FIELD_RESOLVERS: dict[ConditionField, FieldResolver] = {
    # Watch state
    ConditionField.WATCHED: lambda item, ctx: (item.view_count or 0) > 0,
    ConditionField.VIEW_COUNT: lambda item, ctx: item.view_count or 0,
    ConditionField.DAYS_SINCE_WATCHED: lambda item, ctx: days_between(item.last_viewed_at, ctx.now),
    ConditionField.WATCH_PROGRESS: _watch_progress,
    ConditionField.DAYS_SINCE_ACTIVITY: lambda item, ctx: days_between(ctx.last_activity, ctx.now),
    ConditionField.ON_WATCHLIST: lambda item, ctx: bool(ctx.on_watchlist),

    # Dates
    ConditionField.DAYS_SINCE_ADDED: lambda item, ctx: days_between(item.added_at, ctx.now) if item.added_at else 0,
    ConditionField.DAYS_SINCE_RELEASE: _days_since_release,
    ConditionField.YEAR: lambda item, ctx: item.year or 0,

    # Metadata
    ConditionField.DURATION_MINUTES: lambda item, ctx: round(item.duration / 60000) if item.duration else 0,
    ConditionField.RATING: lambda item, ctx: item.rating or item.audience_rating or 0,
    ConditionField.GENRE: lambda item, ctx: list(item.genres or []),
    ConditionField.CONTENT_RATING: lambda item, ctx: item.content_rating or "",
    ConditionField.STUDIO: lambda item, ctx: item.studio or "",
    ConditionField.LANGUAGE: lambda item, ctx: item.language or "",
    ConditionField.SEASON_COUNT: lambda item, ctx: item.child_count or 0,
    ConditionField.EPISODE_COUNT: lambda item, ctx: item.leaf_count or 0,

    # File / quality
    ConditionField.RESOLUTION: _resolution,
    ConditionField.FILE_SIZE_GB: lambda item, ctx: (ctx.file_size or 0) / BYTES_PER_GB,
    ConditionField.VIDEO_CODEC: _video_codec,
    ConditionField.AUDIO_CODEC: _audio_codec,
    ConditionField.IS_4K: _is_4k,
    ConditionField.IS_HDR: _is_hdr,

    # Download orchestrator
    ConditionField.IS_CONTINUING: _is_continuing,
    ConditionField.MONITORED: lambda item, ctx: ctx.orchestrator_record.monitored if ctx.orchestrator_record else True,
    ConditionField.QUALITY_PROFILE: lambda item, ctx: (_record(ctx).quality_profile if _record(ctx) else None) or "",
    ConditionField.TAGS: lambda item, ctx: list(_record(ctx).tags) if _record(ctx) else [],
    ConditionField.ROOT_FOLDER: lambda item, ctx: (_record(ctx).root_folder if _record(ctx) else None) or "",

    # Requests
    ConditionField.HAS_REQUEST: lambda item, ctx: bool(ctx.has_request),
    ConditionField.REQUESTED_BY: lambda item, ctx: ctx.requested_by or "",
    ConditionField.DAYS_SINCE_REQUESTED: lambda item, ctx: days_between(ctx.request_date, ctx.now),
}


def resolve_field(field_name: str, item: MediaItem, ctx: EvaluationContext) -> Any:
    """Resolve a field identifier to its value, or UNKNOWN_FIELD."""
    try:
        key = ConditionField(field_name)
    except ValueError:
        return UNKNOWN_FIELD
    resolver = FIELD_RESOLVERS.get(key)
    if resolver is None:
        return UNKNOWN_FIELD
    return resolver(item, ctx)


# =============================================================================
# Operators
# =============================================================================

def _as_number(value) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _ordered(item_value, compare_value, op) -> bool:
    left, right = _as_number(item_value), _as_number(compare_value)
    if left is not None and right is not None:
        return op(left, right)
    try:
        return op(item_value, compare_value)
    except TypeError:
        return False


def _contains(item_value, compare_value) -> bool:
    needle = str(compare_value).lower()
    if isinstance(item_value, (list, tuple, set)):
        return any(needle in str(v).lower() for v in item_value)
    return needle in str(item_value).lower()


def _is_empty(item_value) -> bool:
    if isinstance(item_value, (list, tuple, set)):
        return len(item_value) == 0
    return not item_value


def evaluate_operator(item_value: Any, operator: str, compare_value: Any) -> bool:
    """Apply a comparison operator. Unknown operators warn and pass."""
    try:
        op = Operator(operator)
    except ValueError:
        logger.warning(f"Unknown operator: {operator}")
        return True

    if op == Operator.EQUALS:
        return item_value == compare_value
    if op == Operator.NOT_EQUALS:
        return item_value != compare_value
    if op == Operator.GREATER_THAN:
        return _ordered(item_value, compare_value, lambda a, b: a > b)
    if op == Operator.LESS_THAN:
        return _ordered(item_value, compare_value, lambda a, b: a < b)
    if op == Operator.GREATER_THAN_OR_EQUALS:
        return _ordered(item_value, compare_value, lambda a, b: a >= b)
    if op == Operator.LESS_THAN_OR_EQUALS:
        return _ordered(item_value, compare_value, lambda a, b: a <= b)
    if op == Operator.CONTAINS:
        return _contains(item_value, compare_value)
    if op == Operator.NOT_CONTAINS:
        return not _contains(item_value, compare_value)
    if op == Operator.IN:
        if isinstance(compare_value, list):
            return item_value in compare_value
        return False
    if op == Operator.NOT_IN:
        if isinstance(compare_value, list):
            return item_value not in compare_value
        return True
    if op == Operator.IS_EMPTY:
        return _is_empty(item_value)
    if op == Operator.IS_NOT_EMPTY:
        return not _is_empty(item_value)

    logger.warning(f"Unhandled operator: {operator}")
    return True


# =============================================================================
# Evaluator
# =============================================================================

class ConditionEvaluator:
    """
    Evaluates condition trees.

    Groups: AND stops at the first false child, OR at the first true child;
    an empty group is true. Leaves: unknown fields and operators pass with a
    warning so that one malformed condition cannot block a whole rule.
    """

    def evaluate(self, tree, item: MediaItem, context: EvaluationContext) -> bool:
        node = parse_condition_tree(tree)
        if isinstance(node, ConditionGroup):
            return self._evaluate_group(node, item, context)
        return self._evaluate_leaf(node, item, context)

    def _evaluate_group(self, group: ConditionGroup, item: MediaItem, context: EvaluationContext) -> bool:
        if not group.conditions:
            return True

        if str(group.operator).upper() == GroupOperator.OR.value:
            return any(self._evaluate_node(child, item, context) for child in group.conditions)
        return all(self._evaluate_node(child, item, context) for child in group.conditions)

    def _evaluate_node(self, node, item: MediaItem, context: EvaluationContext) -> bool:
        if isinstance(node, ConditionGroup):
            return self._evaluate_group(node, item, context)
        return self._evaluate_leaf(node, item, context)

    def _evaluate_leaf(self, leaf: ConditionLeaf, item: MediaItem, context: EvaluationContext) -> bool:
        value = resolve_field(leaf.field, item, context)
        if value is UNKNOWN_FIELD:
            logger.warning(f"Unknown condition field: {leaf.field}")
            return True

        matched = evaluate_operator(value, leaf.operator, leaf.value)
        logger.debug(
            f"[CONDITION] {leaf.field}={value!r} {leaf.operator} {leaf.value!r} -> {matched} "
            f"({item.display_title})"
        )
        return matched


_default_evaluator = ConditionEvaluator()


def evaluate(tree, item: MediaItem, context: EvaluationContext) -> bool:
    """Convenience function: evaluate a condition tree (dict, list or parsed node)."""
    return _default_evaluator.evaluate(tree, item, context)
