"""
Lifecycle Rule Schema Definitions

Defines the condition tree, action list and smart-mode options that make up a
lifecycle rule. Includes validation, parsing, and serialization utilities.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union
import json


# =============================================================================
# Targets
# =============================================================================

class TargetType(str, Enum):
    """Granularity a rule operates on."""
    MOVIES = "movies"
    SHOWS = "shows"
    SEASONS = "seasons"
    EPISODES = "episodes"


# Target type -> media-server library kind that holds it
LIBRARY_KIND_FOR_TARGET = {
    TargetType.MOVIES: "movie",
    TargetType.SHOWS: "show",
    TargetType.SEASONS: "show",
    TargetType.EPISODES: "show",
}

SMART_TARGETS = (TargetType.EPISODES, TargetType.SHOWS, TargetType.SEASONS)


# =============================================================================
# Condition Fields and Operators
# =============================================================================

class ConditionField(str, Enum):
    """Fields a leaf condition can compare. Each has a resolver in the evaluator."""

    # Watch state
    DAYS_SINCE_WATCHED = "days_since_watched"
    DAYS_SINCE_ACTIVITY = "days_since_activity"
    WATCHED = "watched"
    VIEW_COUNT = "view_count"
    WATCH_PROGRESS = "watch_progress"
    ON_WATCHLIST = "on_watchlist"

    # Dates
    DAYS_SINCE_ADDED = "days_since_added"
    DAYS_SINCE_RELEASE = "days_since_release"
    YEAR = "year"

    # Metadata
    DURATION_MINUTES = "duration_minutes"
    RATING = "rating"
    GENRE = "genre"
    CONTENT_RATING = "content_rating"
    STUDIO = "studio"
    LANGUAGE = "language"
    SEASON_COUNT = "season_count"
    EPISODE_COUNT = "episode_count"

    # File / quality
    RESOLUTION = "resolution"
    FILE_SIZE_GB = "file_size_gb"
    VIDEO_CODEC = "video_codec"
    AUDIO_CODEC = "audio_codec"
    IS_4K = "is_4k"
    IS_HDR = "is_hdr"

    # Download orchestrator
    IS_CONTINUING = "is_continuing"
    MONITORED = "monitored"
    QUALITY_PROFILE = "quality_profile"
    TAGS = "tags"
    ROOT_FOLDER = "root_folder"

    # Requests
    HAS_REQUEST = "has_request"
    REQUESTED_BY = "requested_by"
    DAYS_SINCE_REQUESTED = "days_since_requested"


class Operator(str, Enum):
    """Comparison operators for leaf conditions."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUALS = "greater_than_or_equals"
    LESS_THAN_OR_EQUALS = "less_than_or_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IN = "in"
    NOT_IN = "not_in"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


# Operators that ignore the comparison value
VALUELESS_OPERATORS = (Operator.IS_EMPTY, Operator.IS_NOT_EMPTY)


class GroupOperator(str, Enum):
    """Logical connectives for condition groups."""
    AND = "AND"
    OR = "OR"


@dataclass
class ConditionLeaf:
    """
    A single field comparison.

        ConditionLeaf(field="days_since_watched", operator="greater_than", value=30)
    """
    field: str
    operator: str
    value: Any = None

    def to_dict(self) -> dict:
        result = {"field": self.field, "operator": self.operator}
        if self.value is not None:
            result["value"] = self.value
        return result

    def validate(self) -> list[str]:
        errors = []
        try:
            ConditionField(self.field)
        except ValueError:
            errors.append(f"Unknown condition field: {self.field}")
        try:
            op = Operator(self.operator)
        except ValueError:
            errors.append(f"Unknown operator: {self.operator}")
            return errors
        if op in (Operator.IN, Operator.NOT_IN) and not isinstance(self.value, list):
            errors.append(f"{self.operator} requires a list value")
        return errors


@dataclass
class ConditionGroup:
    """
    Logical group of conditions; groups nest arbitrarily.

        ConditionGroup(operator="OR", conditions=[
            ConditionLeaf(field="watched", operator="equals", value=True),
            ConditionGroup(operator="AND", conditions=[...]),
        ])

    An empty group matches everything.
    """
    operator: str = GroupOperator.AND.value
    conditions: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "operator": self.operator,
            "conditions": [c.to_dict() for c in self.conditions],
        }

    def validate(self) -> list[str]:
        errors = []
        if str(self.operator).upper() not in (GroupOperator.AND.value, GroupOperator.OR.value):
            errors.append(f"Unknown group operator: {self.operator}")
        for i, child in enumerate(self.conditions):
            errors.extend([f"{self.operator}[{i}]: {e}" for e in child.validate()])
        return errors

    def is_empty(self) -> bool:
        return not self.conditions


ConditionNode = Union[ConditionLeaf, ConditionGroup]


def parse_condition_tree(data: Any) -> ConditionNode:
    """
    Build a condition tree from its JSON form.

    Groups are recognized by a "conditions" (or "children") key; a bare list is
    an AND group; None/empty is an empty AND group.
    """
    if isinstance(data, (ConditionLeaf, ConditionGroup)):
        return data
    if not data:
        return ConditionGroup()
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid conditions JSON: {e}")
        return parse_condition_tree(data)
    if isinstance(data, list):
        return ConditionGroup(conditions=[parse_condition_tree(c) for c in data])
    if not isinstance(data, dict):
        raise ValueError(f"Invalid condition node: {data!r}")

    if "conditions" in data or "children" in data:
        children = data.get("conditions")
        if children is None:
            children = data.get("children")
        return ConditionGroup(
            operator=str(data.get("operator") or GroupOperator.AND.value).upper(),
            conditions=[parse_condition_tree(c) for c in (children or [])],
        )

    return ConditionLeaf(
        field=data.get("field", ""),
        operator=data.get("operator", Operator.EQUALS.value),
        value=data.get("value"),
    )


# =============================================================================
# Action Types
# =============================================================================

class ActionType(str, Enum):
    """Types of actions a rule can run on a match."""

    # Preview phase
    ADD_TO_QUEUE = "add_to_queue"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    UNMONITOR = "unmonitor"

    # Commit phase
    REMOVE_FROM_LIBRARY = "remove_from_library"
    REMOVE_FROM_ORCHESTRATOR = "remove_from_orchestrator"
    DELETE_FILES = "delete_files"


DESTRUCTIVE_ACTIONS = frozenset({
    ActionType.REMOVE_FROM_LIBRARY,
    ActionType.REMOVE_FROM_ORCHESTRATOR,
    ActionType.DELETE_FILES,
})

# Names accepted from stored rules for the canonical types
ACTION_ALIASES = {
    "add_to_collection": ActionType.ADD_TO_QUEUE,
    "enqueue": ActionType.ADD_TO_QUEUE,
    "tag": ActionType.ADD_TAG,
    "delete_from_plex": ActionType.REMOVE_FROM_LIBRARY,
    "delete_from_sonarr": ActionType.REMOVE_FROM_ORCHESTRATOR,
    "delete_from_radarr": ActionType.REMOVE_FROM_ORCHESTRATOR,
    "unmonitor_sonarr": ActionType.UNMONITOR,
    "unmonitor_radarr": ActionType.UNMONITOR,
}


def resolve_action_type(name: str) -> Optional[ActionType]:
    """Map a stored action name (canonical or alias) to its ActionType."""
    if name in ACTION_ALIASES:
        return ACTION_ALIASES[name]
    try:
        return ActionType(name)
    except ValueError:
        return None


@dataclass
class Action:
    """
    A single action, with optional parameters.

        Action(type="add_to_queue")
        Action(type="add_tag", params={"tag": "leaving"})
        Action(type="remove_from_orchestrator", params={"add_exclusion": False})
    """
    type: str
    params: dict = field(default_factory=dict)

    @property
    def action_type(self) -> Optional[ActionType]:
        return resolve_action_type(self.type)

    @property
    def is_destructive(self) -> bool:
        return self.action_type in DESTRUCTIVE_ACTIONS

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        result = {"type": self.type}
        result.update(self.params)
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "Action":
        """Create Action from dictionary."""
        if isinstance(data, Action):
            return data
        action_type = data.get("type", "")
        params = {k: v for k, v in data.items() if k != "type"}
        return cls(type=action_type, params=params)

    def validate(self) -> list[str]:
        """
        Validate the action structure.
        Returns list of error messages (empty if valid).
        """
        errors = []
        action_type = self.action_type
        if action_type is None:
            errors.append(f"Unknown action type: {self.type}")
            return errors

        if action_type in (ActionType.ADD_TAG, ActionType.REMOVE_TAG):
            tag = self.params.get("tag")
            if not tag or not isinstance(tag, str):
                errors.append(f"{self.type} requires a 'tag' (string)")

        elif action_type == ActionType.ADD_TO_QUEUE:
            collection = self.params.get("collection_name")
            if collection is not None and not isinstance(collection, str):
                errors.append("add_to_queue.collection_name must be a string")

        return errors


def parse_actions(actions_json: Union[str, list, None]) -> list[Action]:
    """Parse JSON string (or list) into Action objects."""
    if not actions_json:
        return []
    try:
        data = json.loads(actions_json) if isinstance(actions_json, str) else actions_json
        return [Action.from_dict(a) for a in data]
    except (json.JSONDecodeError, TypeError, AttributeError) as e:
        raise ValueError(f"Invalid actions JSON: {e}")


def split_actions(actions: list[Action]) -> tuple[list[Action], list[Action]]:
    """Partition actions into (preview, commit) phases, preserving order."""
    preview = [a for a in actions if not a.is_destructive]
    commit = [a for a in actions if a.is_destructive]
    return preview, commit


# =============================================================================
# Smart Mode
# =============================================================================

@dataclass
class SmartOptions:
    """
    Velocity-aware retention parameters for a smart rule.

    require_all_users_watched is kept only so stored rules round-trip. The
    analyzer never reads it: a candidate must already be behind every active
    viewer, which is the strict form of the option.
    """
    min_days_since_watch: int = 15
    velocity_buffer_days: int = 7
    protect_episodes_ahead: int = 3
    active_viewer_days: int = 30
    require_all_users_watched: bool = True
    proactive_redownload: bool = True
    redownload_lead_days: int = 3

    @classmethod
    def from_rule(cls, rule, settings=None) -> "SmartOptions":
        """
        Build options from a Rule row. Unset columns fall back to the
        settings defaults, then to the class defaults.
        """
        def pick(column: str, default):
            value = getattr(rule, column, None)
            if value is not None:
                return value
            if settings is not None:
                return getattr(settings, column, default)
            return default

        require_all = getattr(rule, "smart_require_all_users_watched", None)
        proactive = getattr(rule, "smart_proactive_redownload", None)
        return cls(
            min_days_since_watch=pick("smart_min_days_since_watch", cls.min_days_since_watch),
            velocity_buffer_days=pick("smart_velocity_buffer_days", cls.velocity_buffer_days),
            protect_episodes_ahead=pick("smart_protect_episodes_ahead", cls.protect_episodes_ahead),
            active_viewer_days=pick("smart_active_viewer_days", cls.active_viewer_days),
            require_all_users_watched=True if require_all is None else bool(require_all),
            proactive_redownload=True if proactive is None else bool(proactive),
            redownload_lead_days=pick("smart_redownload_lead_days", cls.redownload_lead_days),
        )

    def to_dict(self) -> dict:
        return {
            "min_days_since_watch": self.min_days_since_watch,
            "velocity_buffer_days": self.velocity_buffer_days,
            "protect_episodes_ahead": self.protect_episodes_ahead,
            "active_viewer_days": self.active_viewer_days,
            "require_all_users_watched": self.require_all_users_watched,
            "proactive_redownload": self.proactive_redownload,
            "redownload_lead_days": self.redownload_lead_days,
        }


# =============================================================================
# Validation
# =============================================================================

def validate_rule(target_type: str, conditions: Any, actions: list,
                  smart_enabled: bool = False) -> dict:
    """
    Validate a complete rule.

    Returns dict with "valid", "errors" and "warnings". An empty condition
    tree is allowed but reported as a warning: it matches every item in the
    target libraries.
    """
    errors = []
    warnings = []

    try:
        target = TargetType(target_type)
    except ValueError:
        errors.append(f"Unknown target type: {target_type}")
        target = None

    if smart_enabled and target is not None and target not in SMART_TARGETS:
        errors.append(f"Smart mode is only available for {', '.join(t.value for t in SMART_TARGETS)}")

    try:
        tree = parse_condition_tree(conditions)
    except ValueError as e:
        errors.append(str(e))
        tree = None

    if tree is not None:
        errors.extend([f"conditions: {e}" for e in tree.validate()])
        if isinstance(tree, ConditionGroup) and tree.is_empty() and not smart_enabled:
            warnings.append(
                "Rule has no conditions and will match every item in its target libraries"
            )

    if not actions:
        errors.append("Rule must have at least one action")
    else:
        parsed = [Action.from_dict(a) for a in actions]
        for i, action in enumerate(parsed):
            errors.extend([f"actions[{i}]: {e}" for e in action.validate()])
        _, commit = split_actions(parsed)
        if commit and not any(a.action_type == ActionType.ADD_TO_QUEUE for a in parsed):
            warnings.append(
                "Destructive actions only run from the queue; add an add_to_queue action"
            )

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
    }


# =============================================================================
# Media Types
# =============================================================================

# Stored spellings on watchlist and protection rows ("tv" and "series" mean show)
MEDIA_TYPE_ALIASES = {"tv": "show", "series": "show"}


def normalize_media_type(media_type: Optional[str]) -> Optional[str]:
    if not media_type:
        return None
    media_type = media_type.strip().lower()
    return MEDIA_TYPE_ALIASES.get(media_type, media_type)


def media_type_variants(media_type: str) -> list[str]:
    """Every stored spelling that normalizes to the same media type."""
    canonical = normalize_media_type(media_type)
    return [canonical] + [alias for alias, target in MEDIA_TYPE_ALIASES.items() if target == canonical]


def is_smart_rule(rule) -> bool:
    """A rule runs in smart mode only when the flag is set on a target smart mode supports."""
    if not getattr(rule, "smart_enabled", False):
        return False
    return rule.target_type in [t.value for t in SMART_TARGETS]
