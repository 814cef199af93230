"""
Budget Alert Notifications

DESIGN DECISION: Delivery is best-effort.
A notifier either returns True (delivered) or raises NotificationError.
The budget evaluator only latches `alert_sent` after a successful
delivery, so a failed alert is simply retried on the next evaluation.

Two implementations:
- SMTPBudgetNotifier: plain SMTP (+STARTTLS), run in a worker thread
- LoggingBudgetNotifier: writes the alert to the structured log, used
  when no SMTP server is configured
"""

import asyncio
import smtplib
from abc import ABC, abstractmethod
from decimal import Decimal
from email.message import EmailMessage
from typing import Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fintrack.config import SMTPSettings, get_settings


logger = structlog.get_logger(__name__)


class NotificationError(Exception):
    """An alert could not be delivered."""
    pass


class BudgetAlert(BaseModel):
    """Everything an alert message needs."""

    budget_id: UUID
    user_id: UUID
    recipient: str
    first_name: str = ""
    category_name: str
    spent: Decimal
    budget_amount: Decimal
    percentage: float = Field(..., ge=0.0)
    currency: str = "EUR"

    @property
    def remaining(self) -> Decimal:
        return self.budget_amount - self.spent

    @property
    def subject(self) -> str:
        return f"Budget alert: {self.category_name} at {round(self.percentage)}%"

    def body(self) -> str:
        greeting = f"Hello {self.first_name}," if self.first_name else "Hello,"
        return "\n".join([
            greeting,
            "",
            f"You have used {round(self.percentage)}% of your {self.category_name} budget.",
            "",
            f"Spent:     {self.spent:.2f} {self.currency}",
            f"Budget:    {self.budget_amount:.2f} {self.currency}",
            f"Remaining: {self.remaining:.2f} {self.currency}",
        ])


class BudgetNotifierInterface(ABC):
    """Delivers budget alerts to a user."""

    @abstractmethod
    async def send_budget_alert(self, alert: BudgetAlert) -> bool:
        """
        Deliver one alert.

        Returns:
            True when delivered

        Raises:
            NotificationError: If delivery failed
        """
        pass


class SMTPBudgetNotifier(BudgetNotifierInterface):
    """Sends alerts as plain-text e-mail over SMTP."""

    def __init__(self, smtp_settings: Optional[SMTPSettings] = None):
        self._settings = smtp_settings or get_settings().smtp

    def _build_message(self, alert: BudgetAlert) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self._settings.sender
        message["To"] = alert.recipient
        message["Subject"] = alert.subject
        message.set_content(alert.body())
        return message

    @retry(
        retry=retry_if_exception_type((smtplib.SMTPException, OSError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(
            self._settings.host,
            self._settings.port,
            timeout=self._settings.timeout_seconds,
        ) as server:
            if self._settings.use_tls:
                server.starttls()
            if self._settings.username:
                server.login(self._settings.username, self._settings.password or "")
            server.send_message(message)

    async def send_budget_alert(self, alert: BudgetAlert) -> bool:
        message = self._build_message(alert)
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"SMTP delivery failed: {e}") from e

        logger.info(
            "budget_alert_emailed",
            budget_id=str(alert.budget_id),
            recipient=alert.recipient,
        )
        return True


class LoggingBudgetNotifier(BudgetNotifierInterface):
    """Fallback notifier that only logs the alert."""

    async def send_budget_alert(self, alert: BudgetAlert) -> bool:
        logger.warning(
            "budget_alert",
            budget_id=str(alert.budget_id),
            user_id=str(alert.user_id),
            recipient=alert.recipient,
            subject=alert.subject,
            spent=str(alert.spent),
            budget=str(alert.budget_amount),
            remaining=str(alert.remaining),
        )
        return True
