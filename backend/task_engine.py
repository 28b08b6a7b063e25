"""
Task Execution Engine.

Background service that runs scheduled tasks:
- Runs a scheduler loop that starts due tasks
- Enforces a concurrent task limit
- Records each execution as a TaskExecution row
- Writes task start/finish events to the journal
"""
import asyncio
import json
import logging
from datetime import timedelta
from typing import Optional

import journal
from database import get_session
from models import TaskExecution, utcnow
from task_registry import get_registry
from task_scheduler import TaskResult

logger = logging.getLogger(__name__)

# Configuration
DEFAULT_CHECK_INTERVAL = 60  # Check for due tasks every 60 seconds
MAX_CONCURRENT_TASKS = 3  # Maximum tasks running simultaneously


class TaskEngine:
    """
    Background execution engine for scheduled tasks.
    """

    def __init__(
        self,
        check_interval: int = DEFAULT_CHECK_INTERVAL,
        max_concurrent: int = MAX_CONCURRENT_TASKS,
    ):
        self.check_interval = check_interval
        self.max_concurrent = max_concurrent
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._active_tasks: set[str] = set()
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        if self._running:
            logger.warning("Task engine already running")
            return

        logger.info("Starting task execution engine")
        self._running = True
        get_registry().apply_settings()
        self._task = asyncio.create_task(self._scheduler_loop())
        logger.info(f"Task engine started (check_interval={self.check_interval}s, max_concurrent={self.max_concurrent})")

    async def stop(self) -> None:
        if not self._running:
            return

        logger.info("Stopping task execution engine")
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        # Wait for active tasks to complete (with timeout)
        if self._active_tasks:
            logger.info(f"Waiting for {len(self._active_tasks)} active tasks to complete...")
            deadline = utcnow() + timedelta(seconds=30)
            while self._active_tasks and utcnow() < deadline:
                await asyncio.sleep(1)

        logger.info("Task engine stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _scheduler_loop(self) -> None:
        """Main scheduler loop - checks for due tasks and executes them."""
        logger.info("Scheduler loop started")
        while self._running:
            try:
                await self.check_and_run_due_tasks()
            except Exception as e:
                logger.exception(f"Error in scheduler loop: {e}")

            try:
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                break

        logger.info("Scheduler loop stopped")

    async def check_and_run_due_tasks(self) -> list[str]:
        """Start every due task, up to the concurrency limit. Returns the started task IDs."""
        registry = get_registry()
        now = utcnow()
        started = []

        for task_id in registry.list_task_ids():
            if len(self._active_tasks) + len(started) >= self.max_concurrent:
                logger.debug(f"Max concurrent tasks reached ({self.max_concurrent}), skipping check")
                break
            if task_id in self._active_tasks:
                continue

            instance = registry.get_task_instance(task_id)
            if instance is None or not instance.is_due(now):
                continue

            logger.info(f"Task {task_id} is due, scheduling execution")
            asyncio.create_task(self._execute_task(task_id, triggered_by="scheduled"))
            started.append(task_id)
        return started

    async def _execute_task(self, task_id: str, triggered_by: str = "manual") -> Optional[TaskResult]:
        """Execute a task and record the result."""
        registry = get_registry()
        instance = registry.get_task_instance(task_id)

        if not instance:
            logger.error(f"Task {task_id} not found")
            return None

        async with self._lock:
            if task_id in self._active_tasks:
                logger.warning(f"Task {task_id} is already running")
                return TaskResult(
                    success=False,
                    message="Task is already running",
                    error="ALREADY_RUNNING",
                )
            self._active_tasks.add(task_id)

        try:
            execution_id = self._create_execution(task_id, triggered_by)
            journal.emit(
                "task", "start", instance.task_name,
                f"Started {instance.task_name} ({triggered_by})",
                entity_id=execution_id,
                details={"task_id": task_id, "triggered_by": triggered_by},
            )

            result = await instance.run()
            self._finish_execution(execution_id, result)

            if result.error == "CANCELLED":
                action_type = "cancel"
                description = f"Cancelled {instance.task_name}: {result.success_count} completed before cancellation"
            elif result.success:
                action_type = "complete"
                description = f"Completed {instance.task_name}: {result.message}"
            else:
                action_type = "fail"
                description = f"Failed {instance.task_name}: {result.message or result.error}"
            journal.emit(
                "task", action_type, instance.task_name, description,
                entity_id=execution_id,
                details={
                    "task_id": task_id,
                    "success": result.success,
                    "duration_seconds": result.duration_seconds,
                    "total_items": result.total_items,
                    "success_count": result.success_count,
                    "failed_count": result.failed_count,
                },
            )
            return result
        finally:
            async with self._lock:
                self._active_tasks.discard(task_id)

    def _create_execution(self, task_id: str, triggered_by: str) -> Optional[int]:
        session = get_session()
        try:
            execution = TaskExecution(
                task_id=task_id,
                started_at=utcnow(),
                status="running",
                triggered_by=triggered_by,
            )
            session.add(execution)
            session.commit()
            return execution.id
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to create execution record: {e}")
            return None
        finally:
            session.close()

    def _finish_execution(self, execution_id: Optional[int], result: TaskResult) -> None:
        if not execution_id:
            return
        session = get_session()
        try:
            execution = session.get(TaskExecution, execution_id)
            if execution is None:
                return
            execution.completed_at = result.completed_at
            execution.duration_seconds = result.duration_seconds
            if result.error == "CANCELLED":
                execution.status = "cancelled"
            elif result.success:
                execution.status = "completed"
            else:
                execution.status = "failed"
            execution.success = result.success
            execution.message = result.message
            execution.error = result.error
            execution.total_items = result.total_items
            execution.success_count = result.success_count
            execution.failed_count = result.failed_count
            execution.skipped_count = result.skipped_count
            if result.details:
                execution.details = json.dumps(result.details, default=str)
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to update execution record: {e}")
        finally:
            session.close()

    async def run_task(self, task_id: str) -> Optional[TaskResult]:
        """Manually run a task."""
        return await self._execute_task(task_id, triggered_by="manual")

    def get_task_history(self, task_id: Optional[str] = None, limit: int = 50, offset: int = 0) -> list[dict]:
        """Execution history from the database, newest first."""
        session = get_session()
        try:
            query = session.query(TaskExecution).order_by(TaskExecution.started_at.desc())
            if task_id:
                query = query.filter(TaskExecution.task_id == task_id)
            return [e.to_dict() for e in query.offset(offset).limit(limit).all()]
        finally:
            session.close()


def purge_old_history(days: int = 30) -> int:
    """Delete TaskExecution rows older than the given number of days."""
    session = get_session()
    try:
        cutoff = utcnow() - timedelta(days=days)
        result = session.query(TaskExecution).filter(
            TaskExecution.started_at < cutoff
        ).delete(synchronize_session=False)
        session.commit()
        logger.info(f"Purged {result} task execution records older than {days} days")
        return result
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# Global engine instance
_engine: Optional[TaskEngine] = None


def get_engine() -> TaskEngine:
    """Get the global task engine instance."""
    global _engine
    if _engine is None:
        _engine = TaskEngine()
    return _engine


async def start_engine() -> None:
    await get_engine().start()


async def stop_engine() -> None:
    await get_engine().stop()
