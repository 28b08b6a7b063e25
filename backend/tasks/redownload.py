"""
Proactive Redownload Task.

Looks ahead of every active viewer of the smart-rule shows and asks the
download orchestrator for episodes they will reach soon but that no longer
have a file. Emergencies (needed within the emergency window) come first.
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
class RedownloadTask(TaskScheduler):
    task_id = "redownload"
    task_name = "Proactive Redownload"
    task_description = "Re-download episodes that active viewers will reach soon"
    schedule_setting = "redownload_schedule"
    run_key = LIFECYCLE_KEY

    def __init__(self, schedule_config: Optional[ScheduleConfig] = None, engine=None):
        super().__init__(schedule_config)
        self.engine = engine

    async def execute(self) -> TaskResult:
        engine = self.engine or get_rules_engine()
        if engine is None:
            return TaskResult(success=False, message="Rules engine not initialized", error="NOT_INITIALIZED")

        dry_run = get_settings().dry_run
        self._set_progress(status="checking")
        summary = await engine.run_redownload_pass(dry_run=dry_run)

        self._set_progress(status="completed", total=summary["missing"], current=summary["missing"])
        mode = "Dry-run" if dry_run else "Live"
        return TaskResult(
            success=not summary["errors"],
            message=(
                f"{mode}: {summary['shows_checked']} shows checked, {summary['missing']} missing episodes, "
                f"{summary['triggered']} triggered, {summary['emergencies']} emergencies"
            ),
            error="; ".join(e["error"] for e in summary["errors"]) or None,
            total_items=summary["missing"],
            success_count=summary["triggered"],
            failed_count=len(summary["errors"]),
            skipped_count=summary["missing"] - summary["triggered"],
            details=summary,
        )
