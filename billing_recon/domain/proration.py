"""Proration arithmetic over processor invoice payloads.

Pure functions over plain dicts as returned by the processor (both the legacy
``line.proration`` shape and the newer ``line.parent.*_details.proration`` shape).
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ProrationQuote:
    """Cost delta of swapping a subscription to another price mid-cycle."""

    amount: int  # absolute net, smallest currency unit
    charge: int  # sum of positive proration lines
    credit: int  # absolute sum of negative proration lines
    is_upgrade: bool
    requires_payment: bool


def is_proration_line(line: dict[str, Any]) -> bool:
    if line.get("proration"):
        return True
    parent = line.get("parent") or {}
    for details_key in ("subscription_item_details", "invoice_item_details"):
        details = parent.get(details_key) or {}
        if details.get("proration"):
            return True
    return False


def invoice_lines(invoice: dict[str, Any]) -> list[dict[str, Any]]:
    lines = invoice.get("lines") or {}
    if isinstance(lines, list):
        return lines
    return list(lines.get("data") or [])


def proration_lines(invoice: dict[str, Any]) -> list[dict[str, Any]]:
    return [line for line in invoice_lines(invoice) if is_proration_line(line)]


def invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    """Subscription an invoice belongs to, across processor API versions."""
    subscription = invoice.get("subscription")
    if isinstance(subscription, dict):
        return subscription.get("id")
    if subscription:
        return subscription
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    sub = details.get("subscription")
    if isinstance(sub, dict):
        return sub.get("id")
    return sub


def split_proration(invoice: dict[str, Any]) -> tuple[int, int, bool]:
    """Return (charge, credit, had_proration_lines) for an invoice or preview."""
    charge = 0
    credit = 0
    lines = proration_lines(invoice)
    for line in lines:
        amount = int(line.get("amount") or 0)
        if amount > 0:
            charge += amount
        elif amount < 0:
            credit += -amount
    return charge, credit, bool(lines)


def calculate_proration(current_price: int, target_price: int, preview: dict[str, Any]) -> ProrationQuote:
    """Compute the proration quote for a plan swap.

    Args:
        current_price: Monthly price of the plan being left, in cents
        target_price: Monthly price of the requested plan, in cents
        preview: Processor invoice preview for the swap (prorate and invoice now)

    Returns:
        ProrationQuote; a zero amount never requires payment, whatever the direction
    """
    charge, credit, had_lines = split_proration(preview)
    net = charge - credit if had_lines else int(preview.get("amount_due") or 0)
    is_upgrade = target_price > current_price
    return ProrationQuote(
        amount=abs(net),
        charge=charge,
        credit=credit,
        is_upgrade=is_upgrade,
        requires_payment=is_upgrade and net > 0,
    )
