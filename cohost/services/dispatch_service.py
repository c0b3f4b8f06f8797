import asyncio
import hashlib
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from cohost.logging_config import get_logger
from cohost.services.errors import DispatchError, PermanentDispatchError, TransientDispatchError

logger = get_logger("dispatch_service")

TRANSIENT_STATUSES = {408, 425, 429}
PERMANENT_STATUSES = {400, 401, 403, 404, 410, 422}


def jittered_backoff(attempt: int, base: float, cap: float, rng: random.Random) -> float:
    """Exponential delay before retry ``attempt + 1``, capped, plus up to ``base`` of jitter."""
    return min(base * 2 ** (attempt - 1), cap) + rng.uniform(0, base)


@dataclass(frozen=True)
class OutboundDispatch:
    platform: str
    conversation_ref: str
    text: str
    idempotency_key: str


@dataclass(frozen=True)
class DeliveryReceipt:
    status: str  # sent, failed
    platform_message_id: Optional[str]
    attempts: int
    idempotency_key: str


def build_idempotency_key(conversation_id: str, platform_event_id: Optional[str], purpose: str = "reply") -> str:
    """Stable per inbound event, so a redelivered reply reuses the key the platform already saw."""
    raw = f"{conversation_id}\x1f{platform_event_id or ''}\x1f{purpose}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class PlatformAdapter(ABC):
    """One booking platform's outbound messaging capability."""

    @abstractmethod
    async def send(self, dispatch: OutboundDispatch) -> Optional[str]:
        """Deliver the message, returning the platform message id if the platform reports one.

        Raises ``TransientDispatchError`` or ``PermanentDispatchError``.
        """

    async def aclose(self) -> None:
        return None


class ChannelApiAdapter(PlatformAdapter):
    """REST messaging API: ``POST {base_url}/conversations/{ref}/messages``."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def send(self, dispatch: OutboundDispatch) -> Optional[str]:
        url = f"{self.base_url}/conversations/{dispatch.conversation_ref}/messages"
        headers = {"Idempotency-Key": dispatch.idempotency_key, "Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = await self._get_client().post(url, json={"text": dispatch.text}, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientDispatchError(f"{dispatch.platform} timeout: {exc}", "platform_timeout")
        except httpx.TransportError as exc:
            raise TransientDispatchError(f"{dispatch.platform} transport error: {exc}", "platform_unreachable")

        status = response.status_code
        if status in TRANSIENT_STATUSES or status >= 500:
            raise TransientDispatchError(f"{dispatch.platform} returned {status}", f"http_{status}")
        if status in PERMANENT_STATUSES or status >= 400:
            raise PermanentDispatchError(f"{dispatch.platform} rejected message: {status} {response.text[:200]}", f"http_{status}")

        try:
            data = response.json()
        except ValueError:
            return None
        message_id = data.get("id") or data.get("message_id") or data.get("messageId")
        return str(message_id) if message_id is not None else None

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class DispatchGateway:
    """Sends through the originating platform with bounded, jittered retries."""

    def __init__(
        self,
        adapters: Dict[str, PlatformAdapter],
        *,
        max_attempts: int = 4,
        backoff_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        timeout_seconds: float = 10.0,
        sleep=asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.adapters = adapters
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.timeout_seconds = timeout_seconds
        self.sleep = sleep
        self.rng = rng or random.Random()

    def backoff(self, attempt: int) -> float:
        return jittered_backoff(attempt, self.backoff_seconds, self.backoff_max_seconds, self.rng)

    async def send(
        self,
        platform: str,
        conversation_id: str,
        text: str,
        *,
        idempotency_key: str,
    ) -> DeliveryReceipt:
        platform = getattr(platform, "value", platform)
        adapter = self.adapters.get(platform)
        if adapter is None:
            raise PermanentDispatchError(f"No adapter registered for platform {platform}", "unknown_platform")

        dispatch = OutboundDispatch(
            platform=platform,
            conversation_ref=conversation_id,
            text=text,
            idempotency_key=idempotency_key,
        )
        log_context = {"platform": platform, "conversation_id": conversation_id, "idempotency_key": idempotency_key[:12]}

        for attempt in range(1, self.max_attempts + 1):
            try:
                message_id = await asyncio.wait_for(adapter.send(dispatch), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                error: DispatchError = TransientDispatchError(f"{platform} send timed out", "dispatch_timeout")
            except TransientDispatchError as exc:
                error = exc
            except PermanentDispatchError as exc:
                exc.attempts = attempt
                logger.error("Dispatch rejected", extra={"context": {**log_context, "attempt": attempt, "code": exc.code}})
                raise
            else:
                logger.info("Message dispatched", extra={"context": {**log_context, "attempts": attempt}})
                return DeliveryReceipt(
                    status="sent",
                    platform_message_id=message_id,
                    attempts=attempt,
                    idempotency_key=idempotency_key,
                )

            if attempt >= self.max_attempts:
                error.attempts = attempt
                logger.error(
                    "Dispatch retries exhausted",
                    extra={"context": {**log_context, "attempts": attempt, "code": error.code}},
                )
                raise error

            delay = self.backoff(attempt)
            logger.warning(
                "Dispatch retry",
                extra={"context": {**log_context, "attempt": attempt, "code": error.code, "delay": round(delay, 3)}},
            )
            await self.sleep(delay)

        raise TransientDispatchError("Dispatch not attempted", attempts=0)

    async def aclose(self) -> None:
        for adapter in self.adapters.values():
            await adapter.aclose()
