"""
Domain exceptions for the lifecycle core.
"""


class MediarrError(Exception):
    """Base class for lifecycle errors."""


class RuleNotFoundError(MediarrError):
    """Raised when a rule id does not exist."""

    def __init__(self, rule_id):
        self.rule_id = rule_id
        super().__init__(f"Rule {rule_id} not found")


class RunInProgressError(MediarrError):
    """Raised when a pass is requested while another holds the same run key."""

    def __init__(self, key: str, holder: str | None = None):
        self.key = key
        self.holder = holder
        message = "A task is already running"
        if holder:
            message = f"{message} ({holder})"
        super().__init__(message)


class MediaItemNotFoundError(MediarrError):
    """The media server no longer has the requested item."""

    def __init__(self, item_id):
        self.item_id = item_id
        super().__init__(f"Media item {item_id} not found")


class OrchestratorNotFoundError(MediarrError):
    """The download orchestrator has no record for a previously linked id."""

    def __init__(self, kind: str, orchestrator_id):
        self.kind = kind
        self.orchestrator_id = orchestrator_id
        super().__init__(f"{kind} {orchestrator_id} not found in orchestrator")


class ActionError(MediarrError):
    """An action could not be carried out."""
