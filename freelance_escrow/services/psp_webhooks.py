"""Services handling PSP webhook callbacks."""
from __future__ import annotations

import json
import logging
from typing import Any

import stripe
from fastapi import HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from freelance_escrow.config import get_settings
from freelance_escrow.core.actors import PAYMENT_GATEWAY_ACTOR
from freelance_escrow.models.psp_webhook import PSPWebhookEvent
from freelance_escrow.services import state_machine
from freelance_escrow.services.gateway import StripeGateway
from freelance_escrow.utils.audit import log_audit
from freelance_escrow.utils.errors import error_response
from freelance_escrow.utils.time import utcnow

logger = logging.getLogger(__name__)

STRIPE_PROVIDER = "stripe"


def _stripe_gateway() -> StripeGateway:
    settings = get_settings()
    if settings.PAYMENT_GATEWAY != "stripe":
        logger.warning("Stripe webhook received while Stripe is disabled")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response("STRIPE_DISABLED", "Stripe integration is disabled."),
        )
    try:
        return StripeGateway(settings)
    except RuntimeError as exc:
        logger.error("Stripe webhook configuration error", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response("STRIPE_NOT_CONFIGURED", str(exc)),
        ) from exc


async def handle_stripe_webhook(request: Request, db: Session) -> dict[str, bool]:
    """Verify a Stripe callback and apply it to the matching escrow."""

    gateway = _stripe_gateway()
    payload = await request.body()
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("STRIPE_SIGNATURE_MISSING", "Stripe-Signature header is required."),
        )

    try:
        gateway.construct_webhook_event(payload, sig_header)
        event = json.loads(payload)
    except RuntimeError as exc:
        logger.error("Stripe webhook configuration error", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response("STRIPE_NOT_CONFIGURED", str(exc)),
        ) from exc
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe signature verification failed")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("STRIPE_SIGNATURE_INVALID", "Invalid Stripe signature."),
        ) from exc
    except ValueError as exc:
        logger.warning("Failed to parse Stripe webhook event")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("STRIPE_EVENT_INVALID", "Invalid Stripe webhook payload."),
        ) from exc

    return process_stripe_event(db, event)


def process_stripe_event(db: Session, event: dict[str, Any]) -> dict[str, bool]:
    """Record a verified Stripe event once and act on it.

    Replayed event ids are acknowledged without side effects so Stripe stops
    retrying them.
    """

    event_id = event.get("id")
    event_type = event.get("type") or ""
    if not event_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("MISSING_EVENT_ID", "PSP webhook event_id is missing."),
        )
    obj = (event.get("data") or {}).get("object") or {}
    logger.info("Stripe webhook received", extra={"event_type": event_type, "event_id": event_id})

    existing = db.scalars(
        select(PSPWebhookEvent).where(
            PSPWebhookEvent.provider == STRIPE_PROVIDER,
            PSPWebhookEvent.event_id == event_id,
        )
    ).first()
    if existing is not None:
        logger.info("Replay detected for PSP webhook", extra={"event_id": event_id, "provider": STRIPE_PROVIDER})
        return {"received": True, "duplicate": True}

    record = PSPWebhookEvent(
        provider=STRIPE_PROVIDER,
        event_id=event_id,
        kind=event_type,
        psp_ref=obj.get("id"),
        raw_json=event,
    )
    try:
        db.add(record)
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info("Replay detected for PSP webhook", extra={"event_id": event_id, "provider": STRIPE_PROVIDER})
        return {"received": True, "duplicate": True}

    if event_type == "payment_intent.succeeded":
        pi_id = obj.get("id")
        if not pi_id:
            db.rollback()
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=error_response("STRIPE_PAYLOAD_INCOMPLETE", "PaymentIntent is missing required fields."),
            )
        # Commits the webhook record together with the activation.
        state_machine.activate_escrow_from_webhook(db, order_id=pi_id, payment_ref=obj.get("latest_charge") or pi_id)
    elif event_type == "payment_intent.payment_failed":
        logger.info("Stripe payment_intent.payment_failed", extra={"pi_id": obj.get("id")})
        log_audit(
            db,
            actor=PAYMENT_GATEWAY_ACTOR.tag,
            action="PAYMENT_FAILED",
            entity="PaymentIntent",
            entity_id=None,
            data={"order_id": obj.get("id"), "reason": (obj.get("last_payment_error") or {}).get("message")},
        )
    elif event_type in {"transfer.failed", "transfer.reversed"}:
        metadata = obj.get("metadata") or {}
        escrow_id = metadata.get("escrow_id")
        logger.error(
            "Stripe transfer did not reach the freelancer",
            extra={"escrow_id": escrow_id, "transfer_id": obj.get("id"), "event_type": event_type},
        )
        log_audit(
            db,
            actor=PAYMENT_GATEWAY_ACTOR.tag,
            action="TRANSFER_REVERSED_AT_PSP",
            entity="Escrow",
            entity_id=int(escrow_id) if escrow_id and str(escrow_id).isdigit() else None,
            data={"transfer_id": obj.get("id"), "event_type": event_type},
        )
    else:
        logger.info("Unhandled Stripe event type", extra={"event_type": event_type})

    record.processed_at = utcnow()
    db.add(record)
    db.commit()
    logger.info(
        "PSP webhook processed",
        extra={"provider": STRIPE_PROVIDER, "event_id": event_id, "kind": event_type},
    )
    return {"received": True}


__all__ = ["STRIPE_PROVIDER", "handle_stripe_webhook", "process_stripe_event"]
