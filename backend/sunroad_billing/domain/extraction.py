"""Identifier extraction from Stripe event payloads.

Pure domain functions -- no I/O, fully deterministic.

Stripe payload shapes drift across API versions (the invoice's subscription
reference moved from the top level into ``parent.subscription_details`` and
line-item parents). Every lookup here walks an explicit, ordered list of
paths and reports which one matched, so callers never chain optional
lookups through business logic.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from sunroad_billing.core.exceptions import ExtractionError

Path = tuple[str | int, ...]

# Ordered: the first path holding a value wins.
INVOICE_SUBSCRIPTION_PATHS: tuple[Path, ...] = (
    ("subscription",),
    ("parent", "subscription_details", "subscription"),
    ("subscription_details", "subscription"),
    ("lines", "data", 0, "parent", "subscription_item_details", "subscription"),
)

INVOICE_ACCOUNT_METADATA_PATHS: tuple[Path, ...] = (
    ("subscription_details", "metadata", "auth_user_id"),
    ("parent", "subscription_details", "metadata", "auth_user_id"),
    ("lines", "data", 0, "metadata", "auth_user_id"),
)

PERIOD_FIELDS = ("current_period_start", "current_period_end")


def format_path(path: Path) -> str:
    """Render a lookup path the way it reads in Stripe's docs: ``lines.data[0].parent``."""
    out = ""
    for part in path:
        if isinstance(part, int):
            out += f"[{part}]"
        else:
            out += f".{part}" if out else part
    return out


def dig(obj: Any, path: Path) -> Any:
    """Follow ``path`` through nested mappings and lists; None when any hop is missing."""
    current = obj
    for part in path:
        if current is None:
            return None
        if isinstance(part, int):
            if not isinstance(current, (list, tuple)) or len(current) <= part:
                return None
            current = current[part]
        else:
            if not isinstance(current, Mapping):
                return None
            current = current.get(part)
    return current


def as_id(value: Any) -> str | None:
    """Normalize a Stripe reference: bare id string or expanded object with ``id``."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        ref = value.get("id")
        if isinstance(ref, str) and ref:
            return ref
    return None


@dataclass(frozen=True)
class FieldLookup:
    """Outcome of an ordered fallback search."""

    value: str | None
    source: str | None
    searched: tuple[str, ...]

    @property
    def found(self) -> bool:
        return self.value is not None


def first_id(obj: Any, paths: tuple[Path, ...]) -> FieldLookup:
    """Return the first id found along ``paths``, recording where it came from."""
    searched: list[str] = []
    for path in paths:
        name = format_path(path)
        searched.append(name)
        value = as_id(dig(obj, path))
        if value is not None:
            return FieldLookup(value=value, source=name, searched=tuple(searched))
    return FieldLookup(value=None, source=None, searched=tuple(searched))


def resolve_invoice_subscription_id(invoice: Mapping[str, Any]) -> FieldLookup:
    return first_id(invoice, INVOICE_SUBSCRIPTION_PATHS)


@dataclass(frozen=True)
class InvoiceIds:
    subscription_id: str
    customer_id: str
    subscription_source: str


@dataclass(frozen=True)
class ExtractionFailure:
    """Structured diagnostic for an invoice whose identifiers could not be resolved."""

    event_id: str | None
    invoice_id: str | None
    missing: tuple[str, ...]
    searched: tuple[str, ...]
    keys_present: dict[str, bool] = field(default_factory=dict)

    def to_error(self) -> ExtractionError:
        return ExtractionError(
            self.event_id,
            list(self.missing),
            context={
                "invoice_id": self.invoice_id,
                "searched": list(self.searched),
                "keys_present": self.keys_present,
            },
        )


def extract_invoice_ids(invoice: Mapping[str, Any], event_id: str | None = None) -> InvoiceIds | ExtractionFailure:
    """Resolve subscription and customer ids from an invoice.

    Returns InvoiceIds when both are present, otherwise an ExtractionFailure
    naming the missing fields and every location that was searched.
    """
    subscription = resolve_invoice_subscription_id(invoice)
    customer_id = as_id(invoice.get("customer"))

    if subscription.found and customer_id is not None:
        return InvoiceIds(
            subscription_id=subscription.value,
            customer_id=customer_id,
            subscription_source=subscription.source,
        )

    missing = []
    if not subscription.found:
        missing.append("subscription")
    if customer_id is None:
        missing.append("customer")

    return ExtractionFailure(
        event_id=event_id,
        invoice_id=invoice.get("id"),
        missing=tuple(missing),
        searched=subscription.searched + ("customer",),
        keys_present={
            "subscription": invoice.get("subscription") is not None,
            "parent": invoice.get("parent") is not None,
            "subscription_details": invoice.get("subscription_details") is not None,
            "lines": dig(invoice, ("lines", "data")) is not None,
            "customer": invoice.get("customer") is not None,
        },
    )


def first_price_id(subscription: Mapping[str, Any]) -> str | None:
    """Price of the first subscription item (expanded or bare)."""
    return as_id(dig(subscription, ("items", "data", 0, "price")))


def extract_period_seconds(subscription: Mapping[str, Any], field_name: str) -> int | None:
    """Read a period boundary from the subscription, else from its first item."""
    if field_name not in PERIOD_FIELDS:
        raise ValueError(f"Unknown period field: {field_name}")
    value = subscription.get(field_name)
    if value is None:
        value = dig(subscription, ("items", "data", 0, field_name))
    return int(value) if value is not None else None


def to_datetime(seconds: int | float | None) -> datetime | None:
    """Stripe epoch seconds to an aware UTC datetime."""
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, tz=UTC)


def metadata_account_id(obj: Mapping[str, Any]) -> str | None:
    value = dig(obj, ("metadata", "auth_user_id"))
    return value if isinstance(value, str) and value else None


def invoice_metadata_account_id(invoice: Mapping[str, Any]) -> str | None:
    for path in INVOICE_ACCOUNT_METADATA_PATHS:
        value = dig(invoice, path)
        if isinstance(value, str) and value:
            return value
    return None


def checkout_account_id(session: Mapping[str, Any]) -> str | None:
    """Account set at checkout creation: metadata first, then client_reference_id."""
    account_id = metadata_account_id(session)
    if account_id:
        return account_id
    ref = session.get("client_reference_id")
    return ref if isinstance(ref, str) and ref else None
