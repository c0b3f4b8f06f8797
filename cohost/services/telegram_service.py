from html import escape
from typing import Iterable, Optional

import httpx

from cohost.logging_config import get_logger

logger = get_logger("telegram_service")


class TelegramService:
    """Service for sending messages to Telegram."""

    BASE_URL = "https://api.telegram.org/bot{token}"

    def __init__(self, bot_token: str, client: Optional[httpx.AsyncClient] = None, timeout_seconds: float = 30.0):
        self.bot_token = bot_token
        self.base_url = self.BASE_URL.format(token=bot_token)
        self.timeout_seconds = timeout_seconds
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def _make_request(self, method: str, data: Optional[dict] = None) -> dict:
        """Make request to Telegram API.

        Failures come back as ``ok: False``; ``transient: True`` marks the ones
        worth retrying (network errors, 429 and 5xx).
        """
        url = f"{self.base_url}/{method}"
        try:
            response = await self._get_client().post(url, json=data or {})
        except httpx.HTTPError as e:
            logger.error(f"Telegram API error: {e}")
            return {"ok": False, "error": str(e), "transient": True}

        try:
            result = response.json()
        except ValueError as e:
            logger.error(f"Telegram API error: {e}")
            result = {"ok": False, "error": str(e)}
        if response.status_code == 429 or response.status_code >= 500:
            result["transient"] = True
        return result

    async def send_message(
        self,
        chat_id: str,
        text: str,
        parse_mode: str = "HTML",
        message_thread_id: Optional[int] = None,
    ) -> dict:
        """Send message to Telegram chat."""
        data = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": parse_mode,
        }
        if message_thread_id:
            data["message_thread_id"] = message_thread_id

        return await self._make_request("sendMessage", data)

    async def pin_message(self, chat_id: str, message_id: int) -> dict:
        """Pin message in chat."""
        data = {
            "chat_id": chat_id,
            "message_id": message_id,
            "disable_notification": True,
        }
        return await self._make_request("pinChatMessage", data)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


REASON_LABELS = {
    "safety": "Safety emergency",
    "security": "Security emergency",
    "damage": "Property damage",
    "refund": "Refund request",
    "legal": "Legal threat",
    "access": "Guest cannot get in",
    "human_request": "Guest asked for a person",
    "complaint": "Complaint",
    "negative_sentiment": "Upset guest",
    "context_unavailable": "Booking data unavailable",
    "policy_commitment": "Reply needed a policy exception",
    "delivery_failed": "Reply could not be delivered",
    "composition_failed": "No reply could be composed",
    "flagged_history": "Follow-up to an earlier safety issue or complaint",
}


def format_handover_message(
    conversation_id: str,
    platform: Optional[str],
    property_name: Optional[str],
    severity: str,
    reasons: Iterable[str],
    message: str,
) -> str:
    """Format handover notification message."""
    labels = ", ".join(REASON_LABELS.get(reason, reason) for reason in reasons) or "Needs attention"
    icon = "🚨" if severity == "emergency" else "🔔"

    return f"""{icon} <b>Guest needs a human</b> ({escape(severity, quote=False)})

<b>Conversation:</b> {escape(conversation_id, quote=False)}
<b>Platform:</b> {escape(platform or "unknown", quote=False)}
<b>Property:</b> {escape(property_name or "unknown", quote=False)}
<b>Reason:</b> {escape(labels, quote=False)}

<b>Message:</b>
{escape(message, quote=False)}"""
