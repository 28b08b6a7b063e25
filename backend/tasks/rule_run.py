"""
Rule Run Task.

Scheduled task that evaluates every active lifecycle rule, previews the
matches (enqueueing them behind their buffer) and processes due queue
entries.
"""
import logging
from typing import Optional

from config import get_settings
from rules_engine import get_rules_engine
from task_registry import register_task
from task_scheduler import ScheduleConfig, TaskResult, TaskScheduler

logger = logging.getLogger(__name__)


@register_task
class RuleRunTask(TaskScheduler):
    """
    Runs RulesEngine.run_all_rules. The engine holds the lifecycle run key
    itself, so this task does not take it.

    Configuration:
    - dry_run: None follows the global dry_run setting
    """

    task_id = "rule_run"
    task_name = "Run Lifecycle Rules"
    task_description = "Evaluate active rules, queue matches and process due queue entries"
    schedule_setting = "rules_schedule"

    def __init__(self, schedule_config: Optional[ScheduleConfig] = None, engine=None):
        super().__init__(schedule_config)
        self.engine = engine
        self.dry_run: Optional[bool] = None

    async def execute(self) -> TaskResult:
        engine = self.engine or get_rules_engine()
        if engine is None:
            return TaskResult(success=False, message="Rules engine not initialized", error="NOT_INITIALIZED")

        dry_run = self.dry_run if self.dry_run is not None else get_settings().dry_run
        self._set_progress(status="running_rules")
        summary = await engine.run_all_rules(dry_run=dry_run)

        errors = summary["errors"]
        queue = summary["queue"]
        mode = "Dry-run" if dry_run else "Live"
        message = (
            f"{mode}: {summary['rules_run']} rules, {summary['matches']} matches, "
            f"{summary['queue_processed']} queue entries processed"
        )
        if errors:
            message += f", {len(errors)} rule errors"

        self._set_progress(status="completed", total=summary["rules_run"], current=summary["rules_run"])
        return TaskResult(
            success=not errors or len(errors) < summary["rules_run"],
            message=message,
            total_items=summary["matches"],
            success_count=queue["completed"],
            failed_count=queue["errors"] + len(errors),
            skipped_count=queue["cancelled"],
            details={"errors": errors, "stale_cleanup": summary["stale_cleanup"]},
        )
