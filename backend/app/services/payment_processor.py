"""Payment processor abstraction used to re-charge failed payments.

Supports an HTTP gateway and Stripe PaymentIntents. Transport-level retries
live here and are separate from the business retry schedule.
"""

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx

from app.core.config import settings
from app.core.exceptions import UpstreamError

logger = logging.getLogger(__name__)


@dataclass
class ChargeResult:
    """Outcome of a charge attempt."""

    success: bool
    transaction_id: str | None = None
    error_code: str | None = None


def to_minor_units(amount_cents: Decimal | int | float) -> int:
    return int(Decimal(str(amount_cents)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def verify_signature(payload: bytes, signature: str | None, secret: str) -> bool:
    """Check an HMAC-SHA256 hex signature over the raw payload."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


class PaymentProcessor(ABC):
    """Abstract base class for payment processors."""

    @abstractmethod
    def charge_payment(
        self,
        payment_method_id: str,
        amount_cents: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult:
        """Charge the payment method.

        Raises UpstreamError once transport retries are exhausted.
        """
        pass  # pragma: no cover


class HttpPaymentProcessor(PaymentProcessor):
    """Gateway reached over HTTP at ``PAYMENT_PROCESSOR_URL``."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        retries: int | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.PAYMENT_PROCESSOR_URL).rstrip("/")
        self.api_key = api_key or settings.PAYMENT_PROCESSOR_API_KEY
        self.timeout = timeout if timeout is not None else settings.PROCESSOR_TIMEOUT_SECONDS
        self.retries = retries if retries is not None else settings.PROCESSOR_TRANSPORT_RETRIES
        self._transport = transport

    def charge_payment(
        self,
        payment_method_id: str,
        amount_cents: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult:
        if not self.base_url:
            raise UpstreamError("Payment processor URL is not configured")

        body = {
            "payment_method_id": payment_method_id,
            "amount": to_minor_units(amount_cents),
            "currency": currency.lower(),
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "Idempotency-Key": idempotency_key,
        }

        last_error = ""
        for attempt in range(self.retries + 1):
            try:
                with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                    resp = client.post(f"{self.base_url}/charges", json=body, headers=headers)
            except httpx.HTTPError as exc:
                last_error = str(exc)
                logger.warning(
                    "Payment processor request failed (attempt %d/%d): %s",
                    attempt + 1,
                    self.retries + 1,
                    exc,
                )
                continue

            if resp.status_code >= 500:
                last_error = f"HTTP {resp.status_code}"
                logger.warning(
                    "Payment processor returned %d (attempt %d/%d)",
                    resp.status_code,
                    attempt + 1,
                    self.retries + 1,
                )
                continue

            data = _decode_body(resp)
            if 200 <= resp.status_code < 300:
                if data is None:
                    # the charge outcome is unknown, so it must not be read as a decline
                    raise UpstreamError(
                        f"Payment processor returned an unreadable {resp.status_code} response"
                    )
                if data.get("status", "succeeded") == "succeeded":
                    return ChargeResult(success=True, transaction_id=data.get("id"))
            data = data or {}
            return ChargeResult(
                success=False,
                transaction_id=data.get("id"),
                error_code=data.get("error_code") or data.get("code") or "card_declined",
            )

        raise UpstreamError(f"Payment processor unavailable: {last_error}")


def _decode_body(resp: httpx.Response) -> dict[str, Any] | None:
    """JSON object body, ``{}`` when empty, None when it is not a JSON object."""
    if not resp.content:
        return {}
    try:
        data = resp.json()
    except ValueError:
        logger.warning(
            "Payment processor returned a non-JSON %d body: %s",
            resp.status_code,
            resp.text[:200],
        )
        return None
    return data if isinstance(data, dict) else None


class StripePaymentProcessor(PaymentProcessor):
    """Stripe PaymentIntents, confirmed off-session."""

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key or settings.stripe_api_key
        self._stripe: Any = None

    @property
    def stripe(self) -> Any:
        """Lazy-load stripe module."""
        if self._stripe is None:
            try:
                import stripe

                stripe.api_key = self.api_key
                stripe.max_network_retries = settings.PROCESSOR_TRANSPORT_RETRIES
                self._stripe = stripe
            except ImportError as e:
                raise ImportError("stripe package not installed. Run: pip install stripe") from e
        return self._stripe

    def charge_payment(
        self,
        payment_method_id: str,
        amount_cents: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult:
        stripe = self.stripe
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount_cents),
                currency=currency.lower(),
                payment_method=payment_method_id,
                confirm=True,
                off_session=True,
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            return ChargeResult(success=False, error_code=e.code or "card_declined")
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise UpstreamError(f"Stripe unavailable: {e}") from e
        except stripe.StripeError as e:
            logger.warning("Stripe charge failed: %s", e)
            return ChargeResult(success=False, error_code=getattr(e, "code", None) or "stripe_error")

        if intent.status == "succeeded":
            return ChargeResult(success=True, transaction_id=intent.id)
        return ChargeResult(success=False, transaction_id=intent.id, error_code=intent.status)


def get_payment_processor(name: str | None = None) -> PaymentProcessor:
    """Get the configured payment processor instance."""
    processor = name or settings.PAYMENT_PROCESSOR
    processors: dict[str, type[PaymentProcessor]] = {
        "http": HttpPaymentProcessor,
        "stripe": StripePaymentProcessor,
    }
    processor_class = processors.get(processor)
    if not processor_class:
        raise ValueError(f"Unsupported payment processor: {processor}")
    return processor_class()
