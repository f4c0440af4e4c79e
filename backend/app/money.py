from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Any

HOME_Q = Decimal("0.01")
PCT_Q = Decimal("0.01")


def dec(v: Any) -> Decimal:
    # DB rows come back as Decimal, payloads may carry int/str/None.
    if v is None or v == "":
        return Decimal("0")
    if isinstance(v, Decimal):
        return v
    return Decimal(str(v))


def q_home(v: Decimal) -> Decimal:
    return (v or Decimal("0")).quantize(HOME_Q, rounding=ROUND_HALF_UP)


def q_pct(v: Decimal) -> Decimal:
    return (v or Decimal("0")).quantize(PCT_Q, rounding=ROUND_HALF_UP)
