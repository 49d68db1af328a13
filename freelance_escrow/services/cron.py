"""Background cron jobs run by the in-process scheduler.

Every job first confirms this replica holds the scheduler lease; a replica that
lost it to another runner skips the run instead of sweeping in parallel.
"""
from __future__ import annotations

import logging

from freelance_escrow.config import get_settings
from freelance_escrow.db import session_scope
from freelance_escrow.services.auto_release import mark_overdue_payments, run_auto_release_sweep
from freelance_escrow.services.gateway import get_payment_gateway
from freelance_escrow.services.outbox import dispatch_outbox_once, publisher_from_settings
from freelance_escrow.services.scheduler_lock import refresh_scheduler_lock, try_acquire_scheduler_lock

logger = logging.getLogger(__name__)


def _holds_lease(job: str) -> bool:
    if try_acquire_scheduler_lock():
        return True
    logger.info("Scheduler lease held by another runner; skipping job", extra={"job": job})
    return False


def auto_release_once() -> None:
    """Release escrows whose auto-release deadline has passed."""

    if not _holds_lease("auto-release"):
        return
    with session_scope() as db:
        result = run_auto_release_sweep(db, gateway=get_payment_gateway())
    if result.skipped:
        logger.warning("Auto-release sweep skipped escrows", extra=result.as_dict())


def mark_overdue_once() -> None:
    if not _holds_lease("payment-overdue"):
        return
    with session_scope() as db:
        mark_overdue_payments(db)


def dispatch_outbox_job() -> None:
    if not _holds_lease("outbox-dispatch"):
        return
    settings = get_settings()
    with session_scope() as db:
        dispatch_outbox_once(db, publisher_from_settings(settings), batch_size=settings.OUTBOX_BATCH_SIZE)


def heartbeat_scheduler_lock() -> None:
    """Extend the lease, or take it back once another runner's lease expired."""

    if refresh_scheduler_lock():
        return
    if try_acquire_scheduler_lock():
        logger.info("Scheduler lease re-acquired")
        return
    logger.warning("Scheduler lease lost to another runner")


__all__ = ["auto_release_once", "dispatch_outbox_job", "heartbeat_scheduler_lock", "mark_overdue_once"]
