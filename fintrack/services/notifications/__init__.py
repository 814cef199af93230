"""Notification services package."""

from fintrack.services.notifications.email_service import (
    BudgetAlert,
    BudgetNotifierInterface,
    LoggingBudgetNotifier,
    NotificationError,
    SMTPBudgetNotifier,
)

__all__ = [
    "BudgetAlert",
    "BudgetNotifierInterface",
    "LoggingBudgetNotifier",
    "NotificationError",
    "SMTPBudgetNotifier",
]
