"""
Reminder feature module: per-task triggers that email the owner at the target instant
"""
from .scheduler import SUCCESS_MESSAGE, TaskScheduler

__all__ = ["TaskScheduler", "SUCCESS_MESSAGE"]
