"""Standardized error payloads and the escrow domain error taxonomy."""
from typing import Any


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class EscrowDomainError(Exception):
    """Base class for typed errors surfaced by the escrow services."""

    code = "ESCROW_ERROR"
    status_code = 400

    def __init__(self, message: str, *, details: dict[str, Any] | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if code is not None:
            self.code = code

    def to_response(self) -> dict[str, Any]:
        return error_response(self.code, self.message, self.details)


class InvalidTransition(EscrowDomainError):
    """The requested status change is not legal from the current state."""

    code = "INVALID_TRANSITION"
    status_code = 409


class Unauthorized(EscrowDomainError):
    """The actor's role or identity does not allow the transition."""

    code = "UNAUTHORIZED_ACTOR"
    status_code = 403


class ValidationError(EscrowDomainError):
    """A field required by the transition is missing or malformed."""

    code = "VALIDATION_ERROR"
    status_code = 422


class ConcurrentModification(EscrowDomainError):
    """Another transition won the compare-and-swap race."""

    code = "CONCURRENT_MODIFICATION"
    status_code = 409


class NotFound(EscrowDomainError):
    code = "NOT_FOUND"
    status_code = 404


class GatewayError(EscrowDomainError):
    """The payment gateway call failed; nothing was persisted."""

    code = "GATEWAY_ERROR"
    status_code = 502


class TransferFailed(GatewayError):
    code = "TRANSFER_FAILED"


__all__ = [
    "ConcurrentModification",
    "EscrowDomainError",
    "GatewayError",
    "InvalidTransition",
    "NotFound",
    "TransferFailed",
    "Unauthorized",
    "ValidationError",
    "error_response",
]
