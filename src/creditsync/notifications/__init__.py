"""Operator notifications."""

from creditsync.notifications.telegram import OperatorAlerts, close_bot

__all__ = ["OperatorAlerts", "close_bot"]
