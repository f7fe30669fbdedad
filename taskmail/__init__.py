"""Scheduled task reminders: register a task, get an email at its target time."""

__version__ = "1.0.0"
