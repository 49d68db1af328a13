"""Workspace services."""
from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from freelance_escrow.core.actors import Actor, ActorRole
from freelance_escrow.models import User, Workspace
from freelance_escrow.schemas.workspace import WorkspaceCreate
from freelance_escrow.utils.audit import log_audit
from freelance_escrow.utils.errors import NotFound, Unauthorized, ValidationError

logger = logging.getLogger(__name__)


def _active_user(db: Session, user_id: int, field: str) -> User:
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise ValidationError(f"Unknown or inactive user for '{field}'.", details={"field": field})
    return user


def create_workspace(db: Session, payload: WorkspaceCreate, *, actor: Actor) -> Workspace:
    """Open a workspace between a client and the freelancer they hired."""

    if payload.client_id == payload.freelancer_id:
        raise ValidationError("Client and freelancer must be different users.", details={"field": "freelancer_id"})
    if actor.role is ActorRole.CLIENT and actor.user_id != payload.client_id:
        raise Unauthorized("Clients can only open workspaces for themselves.")
    if actor.role not in {ActorRole.CLIENT, ActorRole.ADMIN}:
        raise Unauthorized("Only clients or admins can open workspaces.")
    _active_user(db, payload.client_id, "client_id")
    _active_user(db, payload.freelancer_id, "freelancer_id")

    workspace = Workspace(
        title=payload.title,
        client_id=payload.client_id,
        freelancer_id=payload.freelancer_id,
        project_budget=payload.project_budget,
        currency=payload.currency,
    )
    db.add(workspace)
    db.flush()
    log_audit(
        db,
        actor=actor.tag,
        action="WORKSPACE_CREATED",
        entity="Workspace",
        entity_id=workspace.id,
        data={"client_id": workspace.client_id, "freelancer_id": workspace.freelancer_id},
    )
    db.commit()
    db.refresh(workspace)
    logger.info("Workspace created", extra={"workspace_id": workspace.id})
    return workspace


def ensure_participant(actor: Actor, workspace: Workspace) -> None:
    """Reads are limited to the two parties and admins."""

    if actor.role in {ActorRole.ADMIN, ActorRole.SYSTEM}:
        return
    if actor.role is ActorRole.CLIENT and actor.user_id == workspace.client_id:
        return
    if actor.role is ActorRole.FREELANCER and actor.user_id == workspace.freelancer_id:
        return
    raise Unauthorized("Not a participant of this workspace.")


def get_workspace(db: Session, workspace_id: int, *, actor: Actor) -> Workspace:
    workspace = db.get(Workspace, workspace_id)
    if workspace is None:
        raise NotFound("Workspace not found.", code="WORKSPACE_NOT_FOUND", details={"workspace_id": workspace_id})
    ensure_participant(actor, workspace)
    return workspace


__all__ = ["create_workspace", "ensure_participant", "get_workspace"]
