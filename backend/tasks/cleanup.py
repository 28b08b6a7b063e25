"""
Cleanup Task.

Scheduled task to clean up old data:
- Stale queue claims left by a crashed pass
- Finished queue entries and old dry-run previews
- Journal entries
- Task execution history
"""
import logging
from typing import Optional

import journal
from action_queue import STALE_CLAIM_AGE
from config import get_settings
from queue_store import QueueStore
from run_coordinator import LIFECYCLE_KEY
from task_engine import purge_old_history
from task_registry import register_task
from task_scheduler import ScheduleConfig, TaskResult, TaskScheduler

logger = logging.getLogger(__name__)


@register_task
class CleanupTask(TaskScheduler):
    """
    Retention periods come from settings: queue_retention_days for queue
    entries, log_retention_days for journal entries and task history.
    """

    task_id = "cleanup"
    task_name = "Database Cleanup"
    task_description = "Purge finished queue entries, old journal entries and task history"
    schedule_setting = "cleanup_schedule"
    run_key = LIFECYCLE_KEY

    def __init__(self, schedule_config: Optional[ScheduleConfig] = None, store: Optional[QueueStore] = None):
        super().__init__(schedule_config)
        self.store = store or QueueStore()

    async def execute(self) -> TaskResult:
        settings = get_settings()
        steps = [
            ("stale_claims", "Releasing stale queue claims", lambda: self.store.release_stale_claims(STALE_CLAIM_AGE)),
            ("queue_entries", "Purging finished queue entries",
             lambda: self.store.purge_terminal(settings.queue_retention_days)),
            ("journal_entries", "Purging journal entries",
             lambda: journal.purge_old_entries(settings.log_retention_days)),
            ("task_executions", "Purging task history",
             lambda: purge_old_history(settings.log_retention_days)),
        ]
        counts = {}
        errors = []
        self._set_progress(total=len(steps), current=0, status="cleaning")

        for index, (key, label, step) in enumerate(steps, start=1):
            if self._cancel_requested:
                return TaskResult(
                    success=False,
                    message="Cleanup cancelled",
                    error="CANCELLED",
                    details={"counts": counts},
                )
            self._set_progress(current=index, current_item=label)
            try:
                counts[key] = step()
                self._increment_progress(success_count=1)
            except Exception as e:
                logger.error(f"[{self.task_id}] {label} failed: {e}")
                errors.append(f"{key}: {e}")
                self._increment_progress(failed_count=1)

        total = sum(counts.values())
        self._set_progress(status="completed")
        if errors:
            return TaskResult(
                success=len(errors) < len(steps),
                message=f"Cleanup completed with {len(errors)} errors. Removed {total} records.",
                total_items=len(steps),
                success_count=len(steps) - len(errors),
                failed_count=len(errors),
                details={"counts": counts, "errors": errors},
            )
        return TaskResult(
            success=True,
            message=f"Cleanup completed. Removed {total} records.",
            total_items=len(steps),
            success_count=len(steps),
            details={"counts": counts},
        )
