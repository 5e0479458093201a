"""Membership plan catalog.

Plan identifiers, display names, monthly prices and the amount-matching policy
used when plans have to be inferred from processor amounts.
Pure domain code, no processor or DB access.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum


class PlanType(StrEnum):
    """Global membership plans, identified the way processor metadata tags them."""

    MONTHLY_37 = "cca_monthly_37"
    NO_FEES_60 = "cca_no_fees_60"
    ALL_ACCESS_87 = "cca_membership_87"


PLAN_DISPLAY_NAMES: dict[PlanType, str] = {
    PlanType.MONTHLY_37: "Monthly Membership",
    PlanType.NO_FEES_60: "No-Fees Membership",
    PlanType.ALL_ACCESS_87: "All-Access Membership",
}

# Monthly price per plan in cents (policy, overridable through Settings.plan_prices_cents)
DEFAULT_PLAN_PRICES_CENTS: dict[str, int] = {
    PlanType.MONTHLY_37.value: 3700,
    PlanType.NO_FEES_60.value: 6000,
    PlanType.ALL_ACCESS_87.value: 8700,
}

# Amounts strictly closer than this (cents) to a plan price are taken to mean that plan
DEFAULT_PLAN_PRICE_TOLERANCE_CENTS = 500

# Plans whose buyers pay no marketplace platform fee
NO_FEES_PLANS: frozenset[PlanType] = frozenset({PlanType.NO_FEES_60, PlanType.ALL_ACCESS_87})

DEFAULT_ALL_ACCESS_PLANS: tuple[str, ...] = (PlanType.ALL_ACCESS_87.value,)


def parse_plan_type(value: str | None) -> PlanType | None:
    """Return the PlanType for a raw identifier, or None if it is not a membership plan."""
    if not value:
        return None
    try:
        return PlanType(value.strip())
    except ValueError:
        return None


def plan_display_name(plan_type: PlanType | str | None) -> str:
    """Human-readable plan name; unknown identifiers are returned as-is."""
    plan = parse_plan_type(plan_type) if isinstance(plan_type, str) else plan_type
    if plan is None:
        return str(plan_type or "Unknown Plan")
    return PLAN_DISPLAY_NAMES[plan]


@dataclass(frozen=True)
class PlanCatalog:
    """Prices per plan plus the tolerance used for amount matching."""

    prices_cents: Mapping[PlanType, int]
    tolerance_cents: int = DEFAULT_PLAN_PRICE_TOLERANCE_CENTS
    all_access_plans: frozenset[PlanType] = field(
        default_factory=lambda: frozenset({PlanType.ALL_ACCESS_87})
    )

    @classmethod
    def from_settings_values(
        cls,
        prices_cents: Mapping[str, int],
        tolerance_cents: int = DEFAULT_PLAN_PRICE_TOLERANCE_CENTS,
        all_access_plans: list[str] | tuple[str, ...] = DEFAULT_ALL_ACCESS_PLANS,
    ) -> "PlanCatalog":
        prices = {}
        for raw, amount in prices_cents.items():
            plan = parse_plan_type(raw)
            if plan is not None:
                prices[plan] = int(amount)
        all_access = frozenset(p for p in (parse_plan_type(raw) for raw in all_access_plans) if p)
        return cls(prices_cents=prices, tolerance_cents=tolerance_cents, all_access_plans=all_access)

    def price_of(self, plan_type: PlanType) -> int:
        return self.prices_cents[plan_type]

    def closest_plan(self, amount_cents: int) -> PlanType | None:
        """Return the plan whose price is nearest to amount, if strictly within tolerance.

        Ties resolve to the cheaper plan so the result is deterministic.
        """
        amount = abs(amount_cents)
        best: PlanType | None = None
        best_diff: int | None = None
        for plan, price in sorted(self.prices_cents.items(), key=lambda item: item[1]):
            diff = abs(price - amount)
            if diff >= self.tolerance_cents:
                continue
            if best_diff is None or diff < best_diff:
                best, best_diff = plan, diff
        return best

    def matches_any_plan(self, amount_cents: int) -> bool:
        return self.closest_plan(amount_cents) is not None

    def is_all_access(self, plan_type: PlanType | str | None) -> bool:
        plan = parse_plan_type(plan_type) if isinstance(plan_type, str) else plan_type
        return plan is not None and plan in self.all_access_plans


def default_catalog() -> PlanCatalog:
    return PlanCatalog.from_settings_values(DEFAULT_PLAN_PRICES_CENTS)
