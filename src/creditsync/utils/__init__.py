"""Utility modules for CreditSync."""

from creditsync.utils.tasks import IntervalTimer, TaskSet

__all__ = ["IntervalTimer", "TaskSet"]
