from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _to_status(v):
    # Accept camelCase / kebab-case from older clients (paymentConfirmed, payment-confirmed).
    if v is None:
        return v
    raw = str(v).strip()
    if raw.isupper() or "_" in raw or "-" in raw:
        return raw.lower().replace("-", "_")
    out = []
    for ch in raw:
        if ch.isupper() and out and out[-1] != "_":
            out.append("_")
        out.append(ch.lower())
    return "".join(out).replace(" ", "_")


# Canonical codes mirror the status CHECK in `backend/db/migrations/001_procurement.sql`.
OrderStatus = Annotated[
    Literal[
        "draft",
        "payment_confirmed",
        "supplier_dispatched",
        "warehouse_received",
        "shipped_to_destination",
        "arrived_at_destination",
        "in_transit_to_hub",
        "received_at_hub",
        "partially_completed",
        "completed",
        "lost",
    ],
    BeforeValidator(_to_status),
]

# ISO-4217 style three-letter code; the registry itself is open-ended.
CurrencyCode = Annotated[
    str,
    BeforeValidator(_to_upper_str),
    StringConstraints(min_length=3, max_length=3, pattern=r"^[A-Z]{3}$"),
]

ShippingMethod = Annotated[Literal["air", "sea", "road", "courier"], BeforeValidator(_to_lower_str)]
