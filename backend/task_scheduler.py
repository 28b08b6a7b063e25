"""
Task Scheduler Framework.

Provides an abstract base class for scheduled tasks with support for:
- Interval-based scheduling (every N seconds)
- Cron-based scheduling (croniter expressions)
- Run-key coordination, so lifecycle passes never overlap
- Progress tracking, cancellation and in-memory history
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from exceptions import RunInProgressError
from models import utcnow
from run_coordinator import RunCoordinator, get_run_coordinator

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    """Status of a scheduled task."""
    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


class ScheduleType(str, Enum):
    """Type of schedule for a task."""
    INTERVAL = "interval"  # Run every N seconds
    CRON = "cron"  # Cron expression
    MANUAL = "manual"  # Only run on demand


@dataclass
class TaskProgress:
    """Progress information for a running task."""
    total: int = 0
    current: int = 0
    status: str = "idle"
    current_item: str = ""
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    started_at: Optional[datetime] = None

    @property
    def percentage(self) -> float:
        """Get completion percentage (0-100)."""
        if self.total == 0:
            return 0.0
        return (self.current / self.total) * 100.0

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "current": self.current,
            "percentage": round(self.percentage, 1),
            "status": self.status,
            "current_item": self.current_item,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "started_at": self.started_at.isoformat() + "Z" if self.started_at else None,
        }


@dataclass
class TaskResult:
    """Result of a task execution."""
    success: bool
    message: str = ""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_items: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    error: Optional[str] = None
    details: dict = field(default_factory=dict)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get execution duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "started_at": self.started_at.isoformat() + "Z" if self.started_at else None,
            "completed_at": self.completed_at.isoformat() + "Z" if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "total_items": self.total_items,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "error": self.error,
            "details": self.details,
        }


@dataclass
class ScheduleConfig:
    """Configuration for task scheduling."""
    schedule_type: ScheduleType = ScheduleType.MANUAL
    # For interval scheduling
    interval_seconds: int = 0
    # For cron scheduling
    cron_expression: str = ""
    # Timezone for cron calculations
    timezone: str = ""  # IANA timezone name, empty = UTC

    @classmethod
    def cron(cls, expression: str, timezone: str = "") -> "ScheduleConfig":
        if not expression:
            return cls()
        return cls(schedule_type=ScheduleType.CRON, cron_expression=expression, timezone=timezone)

    def to_dict(self) -> dict:
        return {
            "schedule_type": self.schedule_type.value,
            "interval_seconds": self.interval_seconds,
            "cron_expression": self.cron_expression,
            "timezone": self.timezone,
        }


class TaskScheduler(ABC):
    """
    Abstract base class for scheduled tasks.

    Subclasses must implement:
    - task_id: Unique identifier for the task type
    - task_name: Human-readable name for the task
    - execute(): The actual task logic

    Subclasses that mutate library state set run_key; run() then holds that
    key on the RunCoordinator and refuses to start while another pass has it.
    """

    # Subclasses must define these
    task_id: str = ""
    task_name: str = ""
    task_description: str = ""
    run_key: Optional[str] = None

    def __init__(self, schedule_config: Optional[ScheduleConfig] = None,
                 coordinator: Optional[RunCoordinator] = None):
        self.schedule_config = schedule_config or ScheduleConfig()
        self.coordinator = coordinator
        self._status = TaskStatus.IDLE
        self._progress = TaskProgress()
        self._cancel_requested = False
        self._last_run: Optional[datetime] = None
        self._next_run: Optional[datetime] = None
        self._history: list[TaskResult] = []
        self._max_history = 50
        self._enabled = True
        if self.schedule_config.schedule_type != ScheduleType.MANUAL:
            self._calculate_next_run()

    @abstractmethod
    async def execute(self) -> TaskResult:
        """
        Execute the task logic.

        Should periodically check self._cancel_requested and exit early if True.
        """

    # -------------------------------------------------------------------------
    # Status and Progress
    # -------------------------------------------------------------------------

    @property
    def status(self) -> TaskStatus:
        return self._status

    @property
    def progress(self) -> TaskProgress:
        return self._progress

    @property
    def is_running(self) -> bool:
        return self._status == TaskStatus.RUNNING

    @property
    def last_run(self) -> Optional[datetime]:
        return self._last_run

    @property
    def next_run(self) -> Optional[datetime]:
        return self._next_run

    @property
    def history(self) -> list[TaskResult]:
        return list(self._history)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        if not self._enabled or self._next_run is None or self.is_running:
            return False
        return self._next_run <= (now or utcnow())

    # -------------------------------------------------------------------------
    # Progress Tracking (for use by subclasses)
    # -------------------------------------------------------------------------

    def _reset_progress(self):
        self._progress = TaskProgress()
        self._cancel_requested = False

    def _set_progress(
        self,
        total: Optional[int] = None,
        current: Optional[int] = None,
        status: Optional[str] = None,
        current_item: Optional[str] = None,
    ):
        """Update progress values. Only provided values are updated."""
        if total is not None:
            self._progress.total = total
        if current is not None:
            self._progress.current = current
        if status is not None:
            self._progress.status = status
        if current_item is not None:
            self._progress.current_item = current_item

    def _increment_progress(self, current: int = 0, success_count: int = 0,
                            failed_count: int = 0, skipped_count: int = 0):
        self._progress.current += current
        self._progress.success_count += success_count
        self._progress.failed_count += failed_count
        self._progress.skipped_count += skipped_count

    # -------------------------------------------------------------------------
    # Task Execution
    # -------------------------------------------------------------------------

    async def run(self) -> TaskResult:
        """
        Run the task immediately.

        Handles status, run-key coordination, history and error capture.
        """
        if self._status == TaskStatus.RUNNING:
            return TaskResult(
                success=False,
                message="Task is already running",
                error="ALREADY_RUNNING",
            )

        self._reset_progress()
        self._status = TaskStatus.RUNNING
        self._progress.started_at = utcnow()
        self._progress.status = "starting"
        result = TaskResult(success=False, started_at=self._progress.started_at)

        try:
            logger.info(f"[{self.task_id}] Starting task: {self.task_name}")
            if self.run_key:
                coordinator = self.coordinator or get_run_coordinator()
                async with coordinator.hold(self.run_key, self.task_id):
                    result = await self.execute()
            else:
                result = await self.execute()
            result.started_at = self._progress.started_at
            result.completed_at = utcnow()

            if self._cancel_requested:
                self._status = TaskStatus.CANCELLED
                result.success = False
                result.message = "Task was cancelled"
                result.error = "CANCELLED"
                logger.info(f"[{self.task_id}] Task cancelled")
            elif result.success:
                self._status = TaskStatus.COMPLETED
                logger.info(f"[{self.task_id}] Task completed successfully: {result.message}")
            else:
                self._status = TaskStatus.FAILED
                logger.warning(f"[{self.task_id}] Task failed: {result.message}")

        except RunInProgressError as e:
            self._status = TaskStatus.FAILED
            result.success = False
            result.message = str(e)
            result.error = "ALREADY_RUNNING"
            result.completed_at = utcnow()
            logger.info(f"[{self.task_id}] Skipped: {e}")
        except Exception as e:
            self._status = TaskStatus.FAILED
            result.success = False
            result.message = f"Task failed with error: {str(e)}"
            result.error = str(e)
            result.completed_at = utcnow()
            logger.exception(f"[{self.task_id}] Task error: {e}")
        finally:
            self._add_to_history(result)
            self._last_run = result.completed_at or utcnow()
            self._progress.status = "completed" if result.success else "failed"

            if self._enabled and self.schedule_config.schedule_type != ScheduleType.MANUAL:
                self._calculate_next_run()

            # Reset to idle after a brief delay
            await asyncio.sleep(0.1)
            if self._status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED):
                self._status = TaskStatus.IDLE

        return result

    def cancel(self) -> dict:
        """Request cancellation of the running task."""
        if self._status != TaskStatus.RUNNING:
            return {
                "status": "not_running",
                "message": "Task is not currently running",
            }

        logger.info(f"[{self.task_id}] Cancellation requested")
        self._cancel_requested = True
        self._progress.status = "cancelling"

        return {
            "status": "cancelling",
            "message": "Cancellation requested",
        }

    def disable(self):
        self._enabled = False
        self._next_run = None
        logger.info(f"[{self.task_id}] Task disabled")

    # -------------------------------------------------------------------------
    # Schedule Calculation
    # -------------------------------------------------------------------------

    def _calculate_next_run(self, now: Optional[datetime] = None):
        """Calculate the next scheduled run time."""
        now = now or utcnow()

        if self.schedule_config.schedule_type == ScheduleType.INTERVAL:
            self._next_run = now + timedelta(seconds=self.schedule_config.interval_seconds)
        elif self.schedule_config.schedule_type == ScheduleType.CRON:
            self._next_run = self._calculate_next_cron_run(now)
        else:
            self._next_run = None

    def _calculate_next_cron_run(self, now: datetime) -> Optional[datetime]:
        """Calculate next run time (naive UTC) from the cron expression."""
        if not self.schedule_config.cron_expression:
            return None

        try:
            base = now
            tz = None
            if self.schedule_config.timezone:
                try:
                    tz = ZoneInfo(self.schedule_config.timezone)
                    base = now.replace(tzinfo=ZoneInfo("UTC")).astimezone(tz)
                except Exception as e:
                    logger.warning(f"[{self.task_id}] Failed to use timezone {self.schedule_config.timezone}: {e}")
                    tz = None

            next_time = croniter(self.schedule_config.cron_expression, base).get_next(datetime)

            if tz is not None and next_time.tzinfo:
                next_time = next_time.astimezone(ZoneInfo("UTC")).replace(tzinfo=None)
            return next_time
        except Exception as e:
            logger.error(f"[{self.task_id}] Failed to parse cron expression: {e}")
            return None

    # -------------------------------------------------------------------------
    # History Management
    # -------------------------------------------------------------------------

    def _add_to_history(self, result: TaskResult):
        """Add a result to history, maintaining max size."""
        self._history.insert(0, result)
        if len(self._history) > self._max_history:
            self._history = self._history[:self._max_history]

    def update_schedule(self, schedule_config: ScheduleConfig):
        """Update the schedule configuration."""
        self.schedule_config = schedule_config
        if self._enabled and schedule_config.schedule_type != ScheduleType.MANUAL:
            self._calculate_next_run()
        else:
            self._next_run = None
        logger.info(f"[{self.task_id}] Schedule updated: {schedule_config.to_dict()}")
