"""
Scheduled Tasks Package.

Importing this package registers every lifecycle task with the task
registry.
"""

from tasks.rule_run import RuleRunTask
from tasks.queue_processing import QueueProcessingTask
from tasks.cleanup import CleanupTask
from tasks.redownload import RedownloadTask

__all__ = [
    "RuleRunTask",
    "QueueProcessingTask",
    "CleanupTask",
    "RedownloadTask",
]
