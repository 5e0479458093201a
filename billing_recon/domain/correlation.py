"""Correlation metadata parsing.

Processor objects carry correlation data written by several call sites over time:
a structured metadata mapping (or a JSON object in ``passthrough``), a delimited
``key:value|key:value`` string, or a positional slash path such as
``upgrade_plan/sub_123/cca_monthly_37/cca_membership_87/user_1``.

``parse_correlation`` tries those formats in that fixed order and returns the
first recognisable result as one variant of the ``CorrelationMetadata`` union.
Each format parser is a pure function and never mixes fields with another.
"""

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Literal

from billing_recon.domain.plans import PlanType, parse_plan_type

UPGRADE_PLAN_ACTION = "upgrade_plan"


class CorrelationFormat(StrEnum):
    STRUCTURED = "structured"
    DELIMITED = "delimited"
    PATH = "path"


@dataclass(frozen=True)
class UpgradePlanCorrelation:
    subscription_id: str
    new_plan_type: PlanType
    current_plan_type: PlanType | None
    buyer_id: str | None
    proration_amount: int | None
    source: CorrelationFormat
    kind: Literal["upgrade_plan"] = "upgrade_plan"


@dataclass(frozen=True)
class LegacySubscriptionCorrelation:
    creator_id: str
    buyer_id: str | None
    connect_account_id: str | None
    source: CorrelationFormat
    kind: Literal["legacy_subscription"] = "legacy_subscription"


@dataclass(frozen=True)
class MembershipCorrelation:
    plan_type: PlanType
    buyer_id: str | None
    source: CorrelationFormat
    kind: Literal["membership"] = "membership"


@dataclass(frozen=True)
class MarketplaceCorrelation:
    listing_id: str | None
    buyer_id: str | None
    seller_id: str | None
    seller_account_id: str | None
    listing_title: str | None
    source: CorrelationFormat
    kind: Literal["marketplace"] = "marketplace"


@dataclass(frozen=True)
class UnparsedCorrelation:
    reason: str
    kind: Literal["unparsed"] = "unparsed"


CorrelationMetadata = (
    UpgradePlanCorrelation
    | LegacySubscriptionCorrelation
    | MembershipCorrelation
    | MarketplaceCorrelation
    | UnparsedCorrelation
)


# Normalised key -> canonical field name
_KEY_ALIASES: dict[str, str] = {
    "action": "action",
    "subscriptionid": "subscription_id",
    "subscription": "subscription_id",
    "sub": "subscription_id",
    "currentplantype": "current_plan_type",
    "currentplan": "current_plan_type",
    "from": "current_plan_type",
    "newplantype": "new_plan_type",
    "newplan": "new_plan_type",
    "to": "new_plan_type",
    "buyerid": "buyer_id",
    "buyer": "buyer_id",
    "userid": "buyer_id",
    "legacycreatorid": "creator_id",
    "creatorid": "creator_id",
    "creator": "creator_id",
    "connectaccountid": "connect_account_id",
    "plantype": "plan_type",
    "plan": "plan_type",
    "prorationamount": "proration_amount",
    "listingid": "listing_id",
    "listing": "listing_id",
    "listingtitle": "listing_title",
    "title": "listing_title",
    "sellerid": "seller_id",
    "seller": "seller_id",
    "selleraccountid": "seller_account_id",
}

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_PAIR_SEPARATORS = re.compile(r"[|,]")
_KEY_VALUE_SEPARATORS = re.compile(r"[:=]")


def _canonical_fields(pairs: Mapping[str, Any]) -> dict[str, str]:
    fields: dict[str, str] = {}
    for raw_key, raw_value in pairs.items():
        if raw_value is None:
            continue
        key = _KEY_ALIASES.get(_NON_ALNUM.sub("", str(raw_key).lower()))
        value = str(raw_value).strip().strip("\"'")
        if key and value and key not in fields:
            fields[key] = value
    return fields


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _classify(fields: dict[str, str], source: CorrelationFormat) -> CorrelationMetadata | None:
    """Turn canonical fields into the most specific variant they support."""
    buyer_id = fields.get("buyer_id")

    new_plan = parse_plan_type(fields.get("new_plan_type"))
    if fields.get("action") == UPGRADE_PLAN_ACTION:
        if not (fields.get("subscription_id") and new_plan):
            return None
        return UpgradePlanCorrelation(
            subscription_id=fields["subscription_id"],
            new_plan_type=new_plan,
            current_plan_type=parse_plan_type(fields.get("current_plan_type")),
            buyer_id=buyer_id,
            proration_amount=_parse_int(fields.get("proration_amount")),
            source=source,
        )

    if fields.get("creator_id"):
        return LegacySubscriptionCorrelation(
            creator_id=fields["creator_id"],
            buyer_id=buyer_id,
            connect_account_id=fields.get("connect_account_id"),
            source=source,
        )

    plan = parse_plan_type(fields.get("plan_type"))
    if plan:
        return MembershipCorrelation(plan_type=plan, buyer_id=buyer_id, source=source)

    if any(fields.get(k) for k in ("listing_id", "seller_id", "seller_account_id", "buyer_id")):
        return MarketplaceCorrelation(
            listing_id=fields.get("listing_id"),
            buyer_id=buyer_id,
            seller_id=fields.get("seller_id"),
            seller_account_id=fields.get("seller_account_id") or fields.get("connect_account_id"),
            listing_title=fields.get("listing_title"),
            source=source,
        )

    return None


def parse_structured(metadata: Mapping[str, Any] | None) -> CorrelationMetadata | None:
    """Structured key-value metadata, or a JSON object held in ``passthrough``."""
    if not metadata:
        return None
    result = _classify(_canonical_fields(metadata), CorrelationFormat.STRUCTURED)
    if result is not None:
        return result

    passthrough = metadata.get("passthrough")
    if isinstance(passthrough, str) and passthrough.strip().startswith("{"):
        try:
            decoded = json.loads(passthrough)
        except ValueError:
            return None
        if isinstance(decoded, dict):
            return _classify(_canonical_fields(decoded), CorrelationFormat.STRUCTURED)
    return None


def parse_delimited(text: str | None) -> CorrelationMetadata | None:
    """``key:value|key:value`` (``=`` and ``,`` accepted as alternatives)."""
    if not text or not _KEY_VALUE_SEPARATORS.search(text):
        return None
    pairs: dict[str, str] = {}
    for part in _PAIR_SEPARATORS.split(text.strip()):
        key, sep, value = part.partition(":") if ":" in part else part.partition("=")
        if sep and key.strip() and value.strip():
            pairs[key.strip()] = value.strip()
    if not pairs:
        return None
    return _classify(_canonical_fields(pairs), CorrelationFormat.DELIMITED)


def parse_path(text: str | None) -> CorrelationMetadata | None:
    """Positional slash path whose first segment names the kind."""
    if not text or "/" not in text:
        return None
    segments = [s.strip() for s in text.strip().strip("/").split("/")]
    if len(segments) < 2 or not all(segments):
        return None

    kind, args = segments[0].lower(), segments[1:]
    fields: dict[str, str] = {}
    if kind == UPGRADE_PLAN_ACTION and len(args) >= 3:
        fields = {
            "action": UPGRADE_PLAN_ACTION,
            "subscription_id": args[0],
            "current_plan_type": args[1],
            "new_plan_type": args[2],
        }
        if len(args) >= 4:
            fields["buyer_id"] = args[3]
    elif kind == "legacy":
        fields = {"creator_id": args[0]}
        if len(args) >= 2:
            fields["buyer_id"] = args[1]
    elif kind == "membership":
        fields = {"plan_type": args[0]}
        if len(args) >= 2:
            fields["buyer_id"] = args[1]
    elif kind == "listing":
        fields = {"listing_id": args[0]}
        if len(args) >= 2:
            fields["buyer_id"] = args[1]
    if not fields:
        return None
    return _classify(fields, CorrelationFormat.PATH)


def parse_correlation(
    metadata: Mapping[str, Any] | None,
    reference: str | None = None,
) -> CorrelationMetadata:
    """Run the parser chain over a processor object's metadata.

    Args:
        metadata: The object's metadata mapping (may hold a ``passthrough`` string)
        reference: Free-form reference string, e.g. a checkout ``client_reference_id``

    Returns:
        The first recognisable variant, or UnparsedCorrelation
    """
    result = parse_structured(metadata)
    if result is not None:
        return result

    passthrough = (metadata or {}).get("passthrough")
    texts = [t for t in (passthrough, reference) if isinstance(t, str) and t.strip()]

    for text in texts:
        result = parse_delimited(text)
        if result is not None:
            return result
    for text in texts:
        result = parse_path(text)
        if result is not None:
            return result

    if not metadata and not texts:
        return UnparsedCorrelation(reason="no correlation metadata")
    return UnparsedCorrelation(reason="no recognised correlation format")
