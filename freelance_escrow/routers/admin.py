"""Operator endpoints to trigger the periodic sweeps on demand."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from freelance_escrow.db import get_db
from freelance_escrow.models.api_key import ApiKey, ApiScope
from freelance_escrow.schemas.escrow import AutoReleaseRunRead, OverdueRunRead
from freelance_escrow.security import require_scope
from freelance_escrow.services.auto_release import mark_overdue_payments, run_auto_release_sweep
from freelance_escrow.services.gateway import PaymentGateway, get_payment_gateway

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/auto-release/run", response_model=AutoReleaseRunRead)
def run_auto_release(
    db: Session = Depends(get_db),
    _: ApiKey = Depends(require_scope({ApiScope.admin})),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> dict:
    return run_auto_release_sweep(db, gateway=gateway).as_dict()


@router.post("/overdue/run", response_model=OverdueRunRead)
def run_overdue_sweep(
    db: Session = Depends(get_db),
    _: ApiKey = Depends(require_scope({ApiScope.admin})),
) -> dict:
    result = mark_overdue_payments(db)
    return {"marked_count": result.marked_count, "milestone_ids": result.milestone_ids}
