"""
signal_auth/signal_client.py

Outbound message delivery over a signal-cli REST API
(https://github.com/bbernhard/signal-cli-rest-api).

Contract used by the authorization flow:

    await channel.send(message, recipients) -> DeliveryReceipt

Recipients may be direct identifiers (phone number or username) or group ids.
Any transport, HTTP or payload failure raises MessageDeliveryError; the caller
decides what to abort. The client never retries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Protocol

import httpx

from .config import Settings

logger = logging.getLogger("signal-auth.signal")


class MessageDeliveryError(Exception):
    """Raised when the Signal service did not accept a message."""


@dataclass(frozen=True)
class DeliveryReceipt:
    timestamp: datetime


class MessageChannel(Protocol):
    async def send(self, message: str, recipients: List[str]) -> DeliveryReceipt: ...


class SignalClient:
    def __init__(self, settings: Settings, http: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self.http = http or httpx.AsyncClient(
            base_url=settings.SIGNAL_SERVICE_BASE_URL,
            timeout=httpx.Timeout(settings.SIGNAL_TIMEOUT_SECONDS),
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    async def send(self, message: str, recipients: List[str]) -> DeliveryReceipt:
        body = {
            "message": message,
            "number": self.settings.FROM_NUMBER,
            "recipients": list(recipients),
        }
        try:
            response = await self.http.post("/v2/send", json=body)
        except httpx.HTTPError as exc:
            raise MessageDeliveryError(f"signal service unreachable: {exc}") from exc

        if response.status_code >= 400:
            raise MessageDeliveryError(
                f"signal service returned {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
            millis = int(data["timestamp"])
            receipt = DeliveryReceipt(timestamp=datetime.fromtimestamp(millis / 1000, tz=timezone.utc))
        except (ValueError, KeyError, TypeError, OverflowError, OSError) as exc:
            raise MessageDeliveryError(f"unexpected signal service response: {exc}") from exc

        logger.debug("signal message delivered recipients=%d ts=%s", len(recipients), receipt.timestamp)
        return receipt
