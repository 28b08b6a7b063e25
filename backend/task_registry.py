"""
Task Registry System.

Central registry for scheduled tasks: registration, lookup, and applying
the configured schedules to task instances.
"""
import logging
from typing import Optional, Type

from config import MediarrSettings, get_settings
from task_scheduler import ScheduleConfig, TaskScheduler

logger = logging.getLogger(__name__)


class TaskRegistry:
    """
    Central registry for all scheduled task types.

    Tasks are registered by their task_id and instantiated lazily.
    """

    def __init__(self):
        self._tasks: dict[str, Type[TaskScheduler]] = {}
        self._instances: dict[str, TaskScheduler] = {}

    def register(self, task_class: Type[TaskScheduler]) -> None:
        if not task_class.task_id:
            raise ValueError(f"Task class {task_class.__name__} has no task_id defined")

        if task_class.task_id in self._tasks:
            logger.warning(f"Task {task_class.task_id} already registered, replacing")

        self._tasks[task_class.task_id] = task_class
        self._instances.pop(task_class.task_id, None)
        logger.debug(f"Registered task: {task_class.task_id} ({task_class.task_name})")

    def get_task_instance(self, task_id: str) -> Optional[TaskScheduler]:
        """Get a task instance by ID (creates if needed)."""
        if task_id not in self._instances and task_id in self._tasks:
            self._instances[task_id] = self._tasks[task_id]()
        return self._instances.get(task_id)

    def set_task_instance(self, instance: TaskScheduler) -> None:
        """Install a pre-built instance, e.g. one wired with test collaborators."""
        if instance.task_id not in self._tasks:
            self.register(type(instance))
        self._instances[instance.task_id] = instance

    def list_tasks(self) -> list[dict]:
        return [
            {
                "task_id": task_class.task_id,
                "task_name": task_class.task_name,
                "description": task_class.task_description,
            }
            for task_class in self._tasks.values()
        ]

    def list_task_ids(self) -> list[str]:
        return list(self._tasks.keys())

    def is_registered(self, task_id: str) -> bool:
        return task_id in self._tasks

    # -------------------------------------------------------------------------
    # Schedules
    # -------------------------------------------------------------------------

    def apply_settings(self, settings: Optional[MediarrSettings] = None) -> None:
        """
        Apply the cron schedules from settings to every registered task.

        A task class names its settings field in schedule_setting; an empty
        expression leaves the task manual-only.
        """
        settings = settings or get_settings()
        for task_id, task_class in self._tasks.items():
            field_name = getattr(task_class, "schedule_setting", None)
            if not field_name:
                continue
            expression = getattr(settings, field_name, "") or ""
            instance = self.get_task_instance(task_id)
            instance.update_schedule(ScheduleConfig.cron(expression))


# Global registry instance
_registry: Optional[TaskRegistry] = None


def get_registry() -> TaskRegistry:
    """Get the global task registry instance."""
    global _registry
    if _registry is None:
        _registry = TaskRegistry()
    return _registry


def register_task(task_class: Type[TaskScheduler]) -> Type[TaskScheduler]:
    """
    Decorator to register a task class with the global registry.

    Usage:
        @register_task
        class MyTask(TaskScheduler):
            task_id = "my_task"
            ...
    """
    get_registry().register(task_class)
    return task_class
