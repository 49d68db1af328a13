"""Workspace and milestone-planning endpoints."""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from freelance_escrow.core.actors import Actor
from freelance_escrow.db import get_db
from freelance_escrow.models import Milestone, Workspace
from freelance_escrow.schemas.milestone import MilestoneCreate, MilestoneRead
from freelance_escrow.schemas.workspace import WorkspaceCreate, WorkspaceRead
from freelance_escrow.security import get_actor
from freelance_escrow.services import milestones as milestones_service
from freelance_escrow.services import workspaces as workspaces_service

router = APIRouter(prefix="/workspaces", tags=["workspaces"])


@router.post("", response_model=WorkspaceRead, status_code=status.HTTP_201_CREATED)
def create_workspace(
    payload: WorkspaceCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> Workspace:
    return workspaces_service.create_workspace(db, payload, actor=actor)


@router.get("/{workspace_id}", response_model=WorkspaceRead)
def read_workspace(
    workspace_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> Workspace:
    return workspaces_service.get_workspace(db, workspace_id, actor=actor)


@router.post("/{workspace_id}/milestones", response_model=MilestoneRead, status_code=status.HTTP_201_CREATED)
def create_milestone(
    workspace_id: int,
    payload: MilestoneCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> Milestone:
    return milestones_service.create_milestone(db, workspace_id, payload, actor=actor)


@router.get("/{workspace_id}/milestones", response_model=list[MilestoneRead])
def list_milestones(
    workspace_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
) -> list[Milestone]:
    return milestones_service.list_milestones(db, workspace_id, actor=actor)
