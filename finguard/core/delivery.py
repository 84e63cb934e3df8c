"""Out-of-band delivery of MFA codes (email/SMS).

The actual senders live outside the engine. A backend reports failure
through ``DeliveryResult.delivered``; it never raises into the challenge
machine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from finguard.core.logging import get_logger

logger = get_logger(__name__)


class DeliveryChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


@dataclass
class DeliveryPayload:
    """What to send. ``code`` is never logged."""

    subject: str
    code: str
    expires_in_minutes: int
    operation: str = "login"
    extra: dict[str, Any] = field(default_factory=dict)

    def render(self) -> str:
        return (
            f"Your verification code is {self.code}. "
            f"It expires in {self.expires_in_minutes} minutes."
        )


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    channel: DeliveryChannel
    error: str | None = None


class DeliveryBackend(ABC):
    """Abstract sender."""

    @abstractmethod
    async def send(
        self,
        channel: DeliveryChannel,
        recipient: str,
        payload: DeliveryPayload,
    ) -> DeliveryResult:
        """Send ``payload`` to ``recipient`` over ``channel``."""

    async def close(self) -> None:
        """Release backend resources."""


class LoggingDeliveryBackend(DeliveryBackend):
    """Development backend: logs that a code was sent, without the code."""

    async def send(
        self,
        channel: DeliveryChannel,
        recipient: str,
        payload: DeliveryPayload,
    ) -> DeliveryResult:
        logger.info(
            "Verification code issued",
            channel=channel.value,
            recipient=_mask_recipient(recipient),
            operation=payload.operation,
            expires_in_minutes=payload.expires_in_minutes,
        )
        return DeliveryResult(delivered=True, channel=channel)


class WebhookDeliveryBackend(DeliveryBackend):
    """POSTs delivery requests to an SMS/email gateway."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(
        self,
        channel: DeliveryChannel,
        recipient: str,
        payload: DeliveryPayload,
    ) -> DeliveryResult:
        try:
            response = await self._client.post(
                self.url,
                json={
                    "channel": channel.value,
                    "recipient": recipient,
                    "subject": payload.subject,
                    "body": payload.render(),
                    "operation": payload.operation,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.warning(
                "Delivery request failed",
                channel=channel.value,
                recipient=_mask_recipient(recipient),
                error=type(e).__name__,
            )
            return DeliveryResult(delivered=False, channel=channel, error=type(e).__name__)

        if response.status_code >= 400:
            logger.warning(
                "Delivery gateway rejected request",
                channel=channel.value,
                recipient=_mask_recipient(recipient),
                status_code=response.status_code,
            )
            return DeliveryResult(
                delivered=False,
                channel=channel,
                error=f"HTTP {response.status_code}",
            )

        return DeliveryResult(delivered=True, channel=channel)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _mask_recipient(recipient: str) -> str:
    """``jane@bank.test`` -> ``ja***@bank.test``; phone numbers keep the last 4 digits."""
    if "@" in recipient:
        local, _, domain = recipient.partition("@")
        return f"{local[:2]}***@{domain}"
    return f"***{recipient[-4:]}" if len(recipient) > 4 else "***"
