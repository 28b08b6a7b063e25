"""
Queue Processing Task.

Processes deferred queue entries whose buffer has elapsed: re-validates
each against fresh data, then commits or cancels it.
"""
import logging
from typing import Optional

from config import get_settings
from rules_engine import get_rules_engine
from run_coordinator import LIFECYCLE_KEY
from task_registry import register_task
from task_scheduler import ScheduleConfig, TaskResult, TaskScheduler

logger = logging.getLogger(__name__)


@register_task
class QueueProcessingTask(TaskScheduler):
    task_id = "queue_processing"
    task_name = "Process Deletion Queue"
    task_description = "Execute due queue entries after re-checking watchlists and rule conditions"
    schedule_setting = "queue_schedule"
    run_key = LIFECYCLE_KEY

    def __init__(self, schedule_config: Optional[ScheduleConfig] = None, engine=None):
        super().__init__(schedule_config)
        self.engine = engine

    async def execute(self) -> TaskResult:
        engine = self.engine or get_rules_engine()
        if engine is None:
            return TaskResult(success=False, message="Rules engine not initialized", error="NOT_INITIALIZED")

        dry_run = get_settings().dry_run
        self._set_progress(status="processing")
        summary = await engine.queue.process_due(dry_run=dry_run)

        self._set_progress(status="completed", total=summary.processed, current=summary.processed)
        return TaskResult(
            success=True,
            message=(
                f"Processed {summary.processed} entries: {summary.completed} completed, "
                f"{summary.cancelled} cancelled, {summary.errors} errors"
            ),
            total_items=summary.processed + summary.skipped,
            success_count=summary.completed,
            failed_count=summary.errors,
            skipped_count=summary.cancelled + summary.skipped,
            details={"dry_run": dry_run, "results": [o.to_dict() for o in summary.outcomes]},
        )
