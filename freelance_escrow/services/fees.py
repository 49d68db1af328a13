"""Platform service-charge rules applied when an escrow order is created."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable

from freelance_escrow.config import Settings, get_settings

_CENT = Decimal("0.01")

# (exclusive upper bound of the project budget, percentage)
BUDGET_TIERS: tuple[tuple[Decimal, Decimal], ...] = (
    (Decimal("5000"), Decimal("8")),
    (Decimal("20000"), Decimal("6")),
    (Decimal("50000"), Decimal("5")),
    (Decimal("100000"), Decimal("4")),
)
TOP_TIER_PERCENTAGE = Decimal("3")
DEFAULT_PERCENTAGE = Decimal("5")


def to_money(value: Any) -> Decimal:
    """Convert an amount to a two-decimal ``Decimal``; raise ValueError when invalid."""

    if isinstance(value, Decimal):
        d = value
    else:
        try:
            # str() avoids binary float artefacts
            d = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError) as e:
            raise ValueError(f"Invalid money amount: {value!r}") from e
    if not d.is_finite():
        raise ValueError(f"Invalid money amount: {value!r}")
    return d.quantize(_CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class FeeBreakdown:
    milestone_amount: Decimal
    service_charge: Decimal
    service_charge_percentage: Decimal
    total_amount: Decimal
    amount_to_freelancer: Decimal


FeePolicy = Callable[[Decimal, Decimal | None], FeeBreakdown]


def tier_percentage(project_budget: Decimal | None) -> Decimal:
    if project_budget is None:
        return DEFAULT_PERCENTAGE
    for upper_bound, percentage in BUDGET_TIERS:
        if project_budget < upper_bound:
            return percentage
    return TOP_TIER_PERCENTAGE


def _breakdown(milestone_amount: Decimal, percentage: Decimal) -> FeeBreakdown:
    amount = to_money(milestone_amount)
    charge = to_money(amount * percentage / Decimal("100"))
    return FeeBreakdown(
        milestone_amount=amount,
        service_charge=charge,
        service_charge_percentage=percentage,
        total_amount=amount + charge,
        # The client pays the charge on top; the freelancer receives the full milestone amount.
        amount_to_freelancer=amount,
    )


def tiered_fee_policy(milestone_amount: Decimal, project_budget: Decimal | None) -> FeeBreakdown:
    """Charge a percentage that shrinks as the project budget grows."""

    return _breakdown(milestone_amount, tier_percentage(project_budget))


def flat_fee_policy(percentage: Decimal) -> FeePolicy:
    def _policy(milestone_amount: Decimal, project_budget: Decimal | None) -> FeeBreakdown:
        return _breakdown(milestone_amount, Decimal(percentage))

    return _policy


def fee_policy_from_settings(settings: Settings | None = None) -> FeePolicy:
    settings = settings or get_settings()
    if settings.SERVICE_CHARGE_PERCENT is not None:
        return flat_fee_policy(settings.SERVICE_CHARGE_PERCENT)
    return tiered_fee_policy


__all__ = [
    "FeeBreakdown",
    "FeePolicy",
    "fee_policy_from_settings",
    "flat_fee_policy",
    "tier_percentage",
    "tiered_fee_policy",
    "to_money",
]
