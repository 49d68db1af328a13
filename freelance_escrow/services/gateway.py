"""Payment gateway adapters.

The state machine only talks to the :class:`PaymentGateway` protocol. Every call is
treated as failing I/O: implementations translate provider errors into
:class:`GatewayError` / :class:`TransferFailed` and never touch the database.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, Protocol

import stripe

from freelance_escrow.config import Settings, get_settings
from freelance_escrow.utils.errors import GatewayError, TransferFailed

logger = logging.getLogger(__name__)


def _to_cents(amount: Decimal) -> int:
    """Convert a decimal amount to the smallest currency unit expected by the PSP."""

    normalized = Decimal(str(amount)).quantize(Decimal("0.01"))
    return int((normalized * 100).to_integral_value())


@dataclass(frozen=True)
class GatewayOrder:
    order_id: str
    amount: Decimal
    currency: str
    client_secret: str | None = None


class PaymentGateway(Protocol):
    def create_order(self, amount: Decimal, currency: str, milestone_id: int) -> GatewayOrder:
        ...

    def verify_payment(self, order_id: str, provider_signature: str) -> bool:
        ...

    def transfer_to_freelancer(
        self,
        escrow_id: int,
        amount: Decimal,
        *,
        currency: str,
        destination: str | None,
        idempotency_key: str,
    ) -> str:
        ...

    def refund_to_client(
        self,
        escrow_id: int,
        amount: Decimal,
        *,
        currency: str,
        order_id: str | None,
        idempotency_key: str,
    ) -> str:
        ...


@dataclass
class SandboxGateway:
    """Local gateway for dev and tests.

    Orders are HMAC-signed with the application secret; the client echoes the
    signature back as payment proof. Transfers and refunds are recorded in memory
    and deduplicated by idempotency key, like a real PSP would.
    """

    secret: str
    transfers: Dict[str, dict[str, Any]] = field(default_factory=dict)
    refunds: Dict[str, dict[str, Any]] = field(default_factory=dict)

    def sign(self, order_id: str) -> str:
        return hmac.new(self.secret.encode(), order_id.encode(), hashlib.sha256).hexdigest()

    def create_order(self, amount: Decimal, currency: str, milestone_id: int) -> GatewayOrder:
        order_id = f"order_{milestone_id}_{secrets.token_hex(8)}"
        logger.info("Sandbox order created", extra={"order_id": order_id, "milestone_id": milestone_id})
        return GatewayOrder(order_id=order_id, amount=amount, currency=currency, client_secret=self.sign(order_id))

    def verify_payment(self, order_id: str, provider_signature: str) -> bool:
        return hmac.compare_digest(self.sign(order_id), provider_signature)

    def transfer_to_freelancer(
        self,
        escrow_id: int,
        amount: Decimal,
        *,
        currency: str,
        destination: str | None,
        idempotency_key: str,
    ) -> str:
        existing = self.transfers.get(idempotency_key)
        if existing is not None:
            return existing["id"]
        transfer_id = f"tr_sandbox_{secrets.token_hex(8)}"
        self.transfers[idempotency_key] = {
            "id": transfer_id,
            "escrow_id": escrow_id,
            "amount": amount,
            "currency": currency,
            "destination": destination,
        }
        return transfer_id

    def refund_to_client(
        self,
        escrow_id: int,
        amount: Decimal,
        *,
        currency: str,
        order_id: str | None,
        idempotency_key: str,
    ) -> str:
        existing = self.refunds.get(idempotency_key)
        if existing is not None:
            return existing["id"]
        refund_id = f"re_sandbox_{secrets.token_hex(8)}"
        self.refunds[idempotency_key] = {
            "id": refund_id,
            "escrow_id": escrow_id,
            "amount": amount,
            "currency": currency,
            "order_id": order_id,
        }
        return refund_id


class StripeGateway:
    """Wrapper around the Stripe Python SDK to isolate PSP concerns.

    Orders are PaymentIntents on the platform account. Payouts are Transfers to
    the freelancer's connected account, refunds go against the funding intent.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        if not settings.STRIPE_SECRET_KEY:
            raise RuntimeError("Stripe secret key is missing; configure STRIPE_SECRET_KEY.")
        stripe.api_key = settings.STRIPE_SECRET_KEY

    def create_order(self, amount: Decimal, currency: str, milestone_id: int) -> GatewayOrder:
        try:
            intent = stripe.PaymentIntent.create(
                amount=_to_cents(amount),
                currency=currency.lower(),
                metadata={"milestone_id": str(milestone_id), "escrow": "true"},
            )
        except stripe.StripeError as exc:
            logger.warning("Stripe order creation failed", extra={"milestone_id": milestone_id})
            raise GatewayError("Could not create payment order.", details={"provider_error": str(exc)}) from exc
        return GatewayOrder(
            order_id=intent.id,
            amount=amount,
            currency=currency,
            client_secret=intent.client_secret,
        )

    def verify_payment(self, order_id: str, provider_signature: str) -> bool:
        try:
            intent = stripe.PaymentIntent.retrieve(order_id)
        except stripe.StripeError as exc:
            raise GatewayError("Could not verify payment.", details={"provider_error": str(exc)}) from exc
        if intent.status != "succeeded":
            logger.info("Stripe intent not settled", extra={"order_id": order_id, "status": intent.status})
            return False
        return hmac.compare_digest(intent.client_secret or "", provider_signature)

    def transfer_to_freelancer(
        self,
        escrow_id: int,
        amount: Decimal,
        *,
        currency: str,
        destination: str | None,
        idempotency_key: str,
    ) -> str:
        if not destination:
            raise TransferFailed(
                "Freelancer has no connected payout account.",
                details={"escrow_id": escrow_id},
            )
        try:
            transfer = stripe.Transfer.create(
                amount=_to_cents(amount),
                currency=currency.lower(),
                destination=destination,
                metadata={"escrow_id": str(escrow_id)},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            logger.warning("Stripe transfer failed", extra={"escrow_id": escrow_id})
            raise TransferFailed("Transfer to freelancer failed.", details={"provider_error": str(exc)}) from exc
        return transfer.id

    def refund_to_client(
        self,
        escrow_id: int,
        amount: Decimal,
        *,
        currency: str,
        order_id: str | None,
        idempotency_key: str,
    ) -> str:
        if not order_id:
            raise GatewayError("Escrow has no funding order to refund.", details={"escrow_id": escrow_id})
        try:
            refund = stripe.Refund.create(
                payment_intent=order_id,
                amount=_to_cents(amount),
                metadata={"escrow_id": str(escrow_id)},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            logger.warning("Stripe refund failed", extra={"escrow_id": escrow_id})
            raise GatewayError("Refund to client failed.", details={"provider_error": str(exc)}) from exc
        return refund.id

    def construct_webhook_event(self, payload: bytes, sig_header: str) -> stripe.Event:
        """Verify and construct a Stripe webhook event."""

        if not self.settings.STRIPE_WEBHOOK_SECRET:
            raise RuntimeError(
                "Stripe webhook secret is missing; configure STRIPE_WEBHOOK_SECRET for verification."
            )
        return stripe.Webhook.construct_event(payload, sig_header, self.settings.STRIPE_WEBHOOK_SECRET)


@lru_cache
def _gateway_for(kind: str) -> PaymentGateway:
    settings = get_settings()
    if kind == "stripe":
        return StripeGateway(settings)
    return SandboxGateway(secret=settings.SECRET_KEY)


def get_payment_gateway() -> PaymentGateway:
    """Return the process-wide gateway selected by ``PAYMENT_GATEWAY``."""

    return _gateway_for(get_settings().PAYMENT_GATEWAY)


__all__ = [
    "GatewayOrder",
    "PaymentGateway",
    "SandboxGateway",
    "StripeGateway",
    "get_payment_gateway",
]
