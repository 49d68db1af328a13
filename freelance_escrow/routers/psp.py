"""Routes for PSP webhook handling."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from freelance_escrow.db import get_db
from freelance_escrow.services import psp_webhooks

router = APIRouter(prefix="/psp", tags=["psp"])


@router.post("/stripe/webhook", status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
) -> dict[str, bool]:
    return await psp_webhooks.handle_stripe_webhook(request, db)


__all__ = ["router"]
