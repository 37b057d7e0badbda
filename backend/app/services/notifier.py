"""Outbound dunning messages.

``HttpNotifier`` posts rendered messages to the notification gateway at
``NOTIFIER_URL``. When no URL is configured, ``LoggingNotifier`` logs the
message instead of delivering it.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from app.core.config import settings
from app.core.exceptions import UpstreamError
from app.services.campaign_templates import message_body, render

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReceipt:
    accepted: bool
    message_id: str | None = None
    error: str | None = None


class Notifier(ABC):
    @abstractmethod
    def send(
        self, channel: str, template_key: str, personalization: dict[str, Any]
    ) -> DeliveryReceipt:
        """Send one message. Raises UpstreamError once transport retries are exhausted."""
        pass  # pragma: no cover


class HttpNotifier(Notifier):
    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        retries: int | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = url or settings.NOTIFIER_URL
        self.api_key = api_key or settings.NOTIFIER_API_KEY
        self.timeout = timeout if timeout is not None else settings.NOTIFIER_TIMEOUT_SECONDS
        self.retries = retries if retries is not None else settings.NOTIFIER_TRANSPORT_RETRIES
        self._transport = transport

    def send(
        self, channel: str, template_key: str, personalization: dict[str, Any]
    ) -> DeliveryReceipt:
        payload = {
            "channel": channel,
            "template_key": template_key,
            "recipient": {
                "email": personalization.get("customer_email"),
                "phone": personalization.get("customer_phone"),
                "customer_id": personalization.get("customer_id"),
            },
            "body": render(message_body(template_key, channel), personalization),
            "personalization": personalization,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        last_error = ""
        for attempt in range(self.retries + 1):
            try:
                with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                    resp = client.post(self.url, json=payload, headers=headers)
            except httpx.HTTPError as exc:
                last_error = str(exc)
                logger.warning(
                    "Notifier request failed for %s (attempt %d/%d): %s",
                    template_key,
                    attempt + 1,
                    self.retries + 1,
                    exc,
                )
                continue

            if resp.status_code >= 500:
                last_error = f"HTTP {resp.status_code}"
                continue
            if 200 <= resp.status_code < 300:
                return DeliveryReceipt(accepted=True, message_id=_message_id(resp))
            return DeliveryReceipt(
                accepted=False, error=f"HTTP {resp.status_code}: {resp.text[:500]}"
            )

        raise UpstreamError(f"Notifier unavailable: {last_error}")


def _message_id(resp: httpx.Response) -> str | None:
    # gateways may acknowledge with a plain-text body
    try:
        data = resp.json() if resp.content else {}
    except ValueError:
        return None
    return data.get("message_id") if isinstance(data, dict) else None


class LoggingNotifier(Notifier):
    def send(
        self, channel: str, template_key: str, personalization: dict[str, Any]
    ) -> DeliveryReceipt:
        body = render(message_body(template_key, channel), personalization)
        logger.info(
            "Notifier not configured, logging %s message %s for customer %s: %s",
            channel,
            template_key,
            personalization.get("customer_id"),
            body,
        )
        return DeliveryReceipt(accepted=True, message_id=None)


def get_notifier() -> Notifier:
    if not settings.NOTIFIER_URL:
        return LoggingNotifier()
    return HttpNotifier()
