"""
Error taxonomy shared by the stores, the notification senders and the scheduler.
"""


class TaskmailError(Exception):
    """Base class for all service errors."""


class InvalidScheduleError(TaskmailError):
    """Target time is malformed or cannot be resolved to a real calendar instant."""


class NotFoundError(TaskmailError):
    """Task or user does not exist for the given identity."""


class SendError(TaskmailError):
    """Notification channel failed to deliver a reminder."""


class StoreError(TaskmailError):
    """Persistence failure."""
