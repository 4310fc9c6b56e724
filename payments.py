"""
payments.py
Payment gateway interface plus Stripe and sandbox implementations.

Amounts cross this boundary in minor units (cents). Every failure is raised
as PaymentError; provider messages are logged, not passed on.
"""

from __future__ import annotations

import itertools
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

import stripe

import config
from errors import PaymentError
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PaymentAuthorization:
    reference: str
    client_secret: str


@dataclass(frozen=True)
class RefundReceipt:
    refund_reference: str
    status: str


class PaymentGateway(ABC):
    @abstractmethod
    def authorize(self, amount_minor: int, currency: str, metadata: dict | None = None) -> PaymentAuthorization:
        ...

    @abstractmethod
    def refund(self, reference: str, amount_minor: int) -> RefundReceipt:
        ...

    @abstractmethod
    def confirm_status(self, reference: str) -> str:
        ...


class StripeGateway(PaymentGateway):
    """PaymentIntent based card payments."""

    def __init__(self, api_key: str, payment_method_types: tuple[str, ...] = ("card",)):
        stripe.api_key = api_key
        self.payment_method_types = list(payment_method_types)

    def authorize(self, amount_minor: int, currency: str, metadata: dict | None = None) -> PaymentAuthorization:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_minor,
                currency=currency,
                metadata={k: str(v) for k, v in (metadata or {}).items()},
                payment_method_types=self.payment_method_types,
            )
        except stripe.StripeError as exc:
            logger.warning("stripe_authorize_failed", amount_minor=amount_minor, error=str(exc))
            raise PaymentError("Payment authorization failed.") from exc
        return PaymentAuthorization(reference=intent.id, client_secret=intent.client_secret)

    def refund(self, reference: str, amount_minor: int) -> RefundReceipt:
        try:
            refund = stripe.Refund.create(payment_intent=reference, amount=amount_minor)
        except stripe.StripeError as exc:
            logger.warning("stripe_refund_failed", reference=reference, amount_minor=amount_minor, error=str(exc))
            raise PaymentError("Refund could not be issued.") from exc
        return RefundReceipt(refund_reference=refund.id, status=refund.status)

    def confirm_status(self, reference: str) -> str:
        try:
            intent = stripe.PaymentIntent.retrieve(reference)
        except stripe.StripeError as exc:
            logger.warning("stripe_status_failed", reference=reference, error=str(exc))
            raise PaymentError("Payment status unavailable.") from exc
        return intent.status


class SandboxGateway(PaymentGateway):
    """
    In-process gateway for local runs and tests.

    Intents start as 'requires_payment_method'; mark_succeeded() plays the
    part of the client completing payment. Refunds are limited to the
    intent's unrefunded amount, as a real processor would.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.fail_authorize = False
        self.fail_refund = False
        self.intents: dict[str, dict] = {}
        self.refunds: list[dict] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _pause(self) -> None:
        if self.latency:
            time.sleep(self.latency)

    def authorize(self, amount_minor: int, currency: str, metadata: dict | None = None) -> PaymentAuthorization:
        self._pause()
        if self.fail_authorize:
            raise PaymentError("Payment authorization failed.")
        if amount_minor <= 0:
            raise PaymentError("Payment amount must be positive.")
        with self._lock:
            reference = f"pi_sandbox_{next(self._ids)}"
            self.intents[reference] = {
                "amount": amount_minor,
                "currency": currency,
                "metadata": dict(metadata or {}),
                "status": "requires_payment_method",
                "refunded": 0,
            }
        return PaymentAuthorization(reference=reference, client_secret=f"{reference}_secret")

    def refund(self, reference: str, amount_minor: int) -> RefundReceipt:
        self._pause()
        if self.fail_refund:
            raise PaymentError("Refund could not be issued.")
        with self._lock:
            intent = self.intents.get(reference)
            if intent is None:
                raise PaymentError("Unknown payment reference.")
            if amount_minor <= 0 or intent["refunded"] + amount_minor > intent["amount"]:
                raise PaymentError("Refund amount exceeds the original charge.")
            intent["refunded"] += amount_minor
            refund_reference = f"re_sandbox_{next(self._ids)}"
            self.refunds.append({"reference": reference, "amount": amount_minor, "id": refund_reference})
        return RefundReceipt(refund_reference=refund_reference, status="succeeded")

    def confirm_status(self, reference: str) -> str:
        self._pause()
        intent = self.intents.get(reference)
        if intent is None:
            raise PaymentError("Unknown payment reference.")
        return intent["status"]

    def mark_succeeded(self, reference: str) -> None:
        self.intents[reference]["status"] = "succeeded"


def build_gateway() -> PaymentGateway:
    if config.STRIPE_SECRET_KEY:
        return StripeGateway(config.STRIPE_SECRET_KEY)
    logger.info("payment_gateway_sandbox", reason="STRIPE_SECRET_KEY not set")
    return SandboxGateway()
