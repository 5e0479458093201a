"""Forensic rules for recognising subscription changes recorded as marketplace sales.

Pure domain functions: plan-transition inference from credit invoices, order
titles, and the amount/title heuristics. No processor or DB access.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from billing_recon.domain.plans import PlanCatalog, PlanType, plan_display_name
from billing_recon.domain.proration import split_proration

GENERIC_CHANGE_TITLE = "Subscription Change"
CREDIT_DOWNGRADE_TITLE = "Subscription Downgrade (Credit)"
PLACEHOLDER_TITLE = "Listing -"


class Confidence(StrEnum):
    EXPLICIT = "explicit"
    HEURISTIC = "heuristic"


class ReclassificationMethod(StrEnum):
    """How an Order was recognised, in the order the methods are attempted."""

    CHECKOUT_METADATA = "checkout_metadata"
    PAYMENT_INTENT_METADATA = "payment_intent_metadata"
    INVOICE_PRORATION = "invoice_proration"
    AMOUNT_PATTERN = "amount_pattern"

    @property
    def confidence(self) -> Confidence:
        if self in (ReclassificationMethod.CHECKOUT_METADATA, ReclassificationMethod.PAYMENT_INTENT_METADATA):
            return Confidence.EXPLICIT
        return Confidence.HEURISTIC


@dataclass(frozen=True)
class PlanTransition:
    current: PlanType
    new: PlanType


def transition_title(current: PlanType, new: PlanType, catalog: PlanCatalog) -> str:
    """Order title for a known transition, e.g. 'Subscription Upgrade: A → B'."""
    direction = "Upgrade" if catalog.price_of(new) > catalog.price_of(current) else "Downgrade"
    return f"Subscription {direction}: {plan_display_name(current)} → {plan_display_name(new)}"


def is_credit_invoice(invoice: dict[str, Any]) -> bool:
    return int(invoice.get("total") or 0) < 0 or int(invoice.get("amount_due") or 0) < 0


def infer_transition_from_invoice(invoice: dict[str, Any], catalog: PlanCatalog) -> PlanTransition | None:
    """Recover (current, new) from a credit invoice's proration lines.

    The credited amount ("unused time on" the old plan) is matched to the closest
    plan price and the charged amount to the closest other plan price, each within
    the catalog tolerance.
    """
    if not is_credit_invoice(invoice):
        return None
    charge, credit, had_lines = split_proration(invoice)
    if not had_lines or credit <= 0 or charge <= 0:
        return None
    current = catalog.closest_plan(credit)
    new = catalog.closest_plan(charge)
    if current is None or new is None or current == new:
        return None
    return PlanTransition(current=current, new=new)


def infer_transition_from_invoices(
    invoices: list[dict[str, Any]],
    catalog: PlanCatalog,
) -> tuple[PlanTransition, dict[str, Any]] | None:
    """First credit invoice (newest first) that yields a full plan transition."""
    for invoice in invoices:
        transition = infer_transition_from_invoice(invoice, catalog)
        if transition is not None:
            return transition, invoice
    return None


def suggests_subscription_title(title: str | None) -> bool:
    if not title:
        return False
    return "Subscription" in title or title == PLACEHOLDER_TITLE or title.startswith("Listing ")


def heuristic_title(existing_title: str | None, amount: int) -> str:
    """Title for an inferred change whose plan pair cannot be named."""
    if existing_title and "Subscription" in existing_title:
        return existing_title
    if amount < 0:
        return CREDIT_DOWNGRADE_TITLE
    return GENERIC_CHANGE_TITLE


def looks_like_subscription_change(
    amount: int,
    title: str | None,
    listing_id: str | None,
    catalog: PlanCatalog,
) -> bool:
    """Amount-pattern fallback: a plan-priced amount or placeholder title, and no listing."""
    if listing_id:
        return False
    return catalog.matches_any_plan(amount) or suggests_subscription_title(title)
