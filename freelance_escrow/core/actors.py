"""Actors issuing commands against the escrow state machine."""
from __future__ import annotations

import enum
from dataclasses import dataclass


class ActorRole(str, enum.Enum):
    CLIENT = "client"
    FREELANCER = "freelancer"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """Role-tagged identity attached to every transition.

    ``user_id`` is required for clients and freelancers because ownership of the
    workspace is checked against it. Admins may carry one; system actors never do.
    """

    role: ActorRole
    user_id: int | None = None
    name: str | None = None

    @classmethod
    def system(cls, name: str) -> "Actor":
        return cls(role=ActorRole.SYSTEM, name=name)

    @property
    def tag(self) -> str:
        if self.role is ActorRole.SYSTEM:
            return f"system:{self.name or 'unknown'}"
        if self.user_id is not None:
            return f"{self.role.value}:{self.user_id}"
        return f"{self.role.value}:{self.name or 'anonymous'}"


AUTO_RELEASE_ACTOR = Actor.system("auto-release")
PAYMENT_GATEWAY_ACTOR = Actor.system("payment-gateway")
OVERDUE_SWEEP_ACTOR = Actor.system("overdue-sweep")


__all__ = [
    "AUTO_RELEASE_ACTOR",
    "Actor",
    "ActorRole",
    "OVERDUE_SWEEP_ACTOR",
    "PAYMENT_GATEWAY_ACTOR",
]
