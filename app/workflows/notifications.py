"""Capabilities the engine consumes: notification sending and record intents."""

import uuid
from abc import ABC, abstractmethod
from typing import List, Literal, Optional

from loguru import logger

from ..models.workflow import NotificationResult, RecordIntent

Channel = Literal["email", "sms"]


class NotificationSender(ABC):
    """Provider-agnostic outbound email/SMS sender."""

    @abstractmethod
    async def send(
        self,
        channel: Channel,
        recipient: str,
        subject: Optional[str],
        body: str,
    ) -> NotificationResult:
        """Send one message and report the provider's message id."""


class LoggingNotificationSender(NotificationSender):
    """Sender used when no provider is wired in: logs and records messages."""

    def __init__(self) -> None:
        self.sent: List[dict] = []

    async def send(
        self,
        channel: Channel,
        recipient: str,
        subject: Optional[str],
        body: str,
    ) -> NotificationResult:
        message_id = f"log-{uuid.uuid4()}"
        self.sent.append(
            {
                "channel": channel,
                "recipient": recipient,
                "subject": subject,
                "body": body,
                "provider_message_id": message_id,
            }
        )
        logger.info(f"Would send {channel} to {recipient}: {subject or body[:40]!r}")
        return NotificationResult(success=True, provider_message_id=message_id)


class RecordIntentSink(ABC):
    """Record owner that applies ``create_task``/``update_field`` intents.

    The engine never writes business records itself; it hands the intent to
    the record-type-aware service and must not move on until ``emit`` returns.
    """

    @abstractmethod
    async def emit(self, intent: RecordIntent) -> str:
        """Apply the intent durably and return the id of the affected row."""


class InMemoryIntentSink(RecordIntentSink):
    """Collects intents in memory; used for tests and local runs."""

    def __init__(self) -> None:
        self.intents: List[RecordIntent] = []

    async def emit(self, intent: RecordIntent) -> str:
        self.intents.append(intent)
        logger.debug(
            f"Recorded {intent.kind} intent for {intent.record_type}:{intent.record_id}"
        )
        return intent.id
