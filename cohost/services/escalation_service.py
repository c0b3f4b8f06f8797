"""Human handover notifications.

Notification is fire-and-forget: the processing path commits the escalation
first, then schedules the notice and moves on. A failed notice is logged and
never rolls the escalation back.
"""

import asyncio
import random
from abc import ABC, abstractmethod
from typing import Optional, Set

from cohost.logging_config import get_logger
from cohost.schemas.message import GuestMessage
from cohost.services.classifier_service import EscalationSignal
from cohost.services.dispatch_service import jittered_backoff
from cohost.services.state_service import ConversationSnapshot
from cohost.services.telegram_service import TelegramService, format_handover_message

logger = get_logger("escalation_service")


class EscalationNotifier(ABC):
    @abstractmethod
    async def notify_human(
        self,
        conversation_id: str,
        signal: EscalationSignal,
        snapshot: ConversationSnapshot,
        *,
        message: Optional[GuestMessage] = None,
        property_name: Optional[str] = None,
    ) -> bool:
        """Deliver one handover notice. Returns False if the channel refused it."""

    async def aclose(self) -> None:
        return None


class LoggingEscalationNotifier(EscalationNotifier):
    """Default when no chat channel is configured: the handover lands in the logs."""

    async def notify_human(self, conversation_id, signal, snapshot, *, message=None, property_name=None) -> bool:
        logger.warning(
            "Human handover required",
            extra={
                "context": {
                    "conversation_id": conversation_id,
                    "severity": signal.severity.label,
                    "reasons": signal.reason_values,
                    "state": snapshot.state.value,
                    "property": property_name,
                    "text": message.raw_text if message else None,
                }
            },
        )
        return True


class TelegramEscalationNotifier(EscalationNotifier):
    """Posts handovers to a Telegram chat, retrying rate limits and outages with jittered backoff."""

    def __init__(
        self,
        telegram: TelegramService,
        chat_id: str,
        message_thread_id: Optional[int] = None,
        *,
        max_attempts: int = 4,
        backoff_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        sleep=asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.telegram = telegram
        self.chat_id = chat_id
        self.message_thread_id = message_thread_id
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.sleep = sleep
        self.rng = rng or random.Random()

    def _retry_delay(self, attempt: int, result: dict) -> float:
        # Telegram says how long to wait on 429
        retry_after = (result.get("parameters") or {}).get("retry_after")
        if isinstance(retry_after, (int, float)) and retry_after >= 0:
            return min(float(retry_after), self.backoff_max_seconds)
        return jittered_backoff(attempt, self.backoff_seconds, self.backoff_max_seconds, self.rng)

    async def _send(self, conversation_id: str, text: str) -> dict:
        for attempt in range(1, self.max_attempts + 1):
            result = await self.telegram.send_message(
                chat_id=self.chat_id,
                text=text,
                message_thread_id=self.message_thread_id,
            )
            if result.get("ok") or not result.get("transient") or attempt >= self.max_attempts:
                return result
            delay = self._retry_delay(attempt, result)
            logger.warning(
                "Telegram send retry",
                extra={
                    "context": {
                        "conversation_id": conversation_id,
                        "attempt": attempt,
                        "error": result.get("description") or result.get("error"),
                        "delay": round(delay, 3),
                    }
                },
            )
            await self.sleep(delay)
        return result

    async def notify_human(self, conversation_id, signal, snapshot, *, message=None, property_name=None) -> bool:
        text = format_handover_message(
            conversation_id=conversation_id,
            platform=message.platform.value if message else None,
            property_name=property_name,
            severity=signal.severity.label,
            reasons=signal.reason_values,
            message=message.raw_text if message else "",
        )
        result = await self._send(conversation_id, text)
        if not result.get("ok"):
            logger.error(f"Telegram send error: {result}")
            return False

        message_id = result["result"]["message_id"]
        if signal.severity.label == "emergency":
            await self.telegram.pin_message(self.chat_id, message_id)
        logger.info(f"Sent handover to Telegram: conversation={conversation_id}, message_id={message_id}")
        return True

    async def aclose(self) -> None:
        await self.telegram.aclose()


class HumanNotifier:
    """Schedules notices as background tasks and keeps them alive until they finish."""

    def __init__(self, notifier: EscalationNotifier):
        self.notifier = notifier
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def notify(
        self,
        conversation_id: str,
        signal: EscalationSignal,
        snapshot: ConversationSnapshot,
        *,
        message: Optional[GuestMessage] = None,
        property_name: Optional[str] = None,
    ) -> asyncio.Task:
        task = asyncio.create_task(
            self._deliver(conversation_id, signal, snapshot, message=message, property_name=property_name)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, conversation_id, signal, snapshot, *, message, property_name) -> bool:
        try:
            delivered = await self.notifier.notify_human(
                conversation_id,
                signal,
                snapshot,
                message=message,
                property_name=property_name,
            )
        except Exception as exc:
            logger.error(
                "Handover notification failed",
                extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
                exc_info=True,
            )
            return False
        if not delivered:
            logger.warning("Handover notification not delivered", extra={"context": {"conversation_id": conversation_id}})
        return delivered

    async def drain(self) -> None:
        """Wait for outstanding notices, e.g. on shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        await self.notifier.aclose()
