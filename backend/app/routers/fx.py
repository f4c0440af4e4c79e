from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from decimal import Decimal
import json

from ..db import get_conn
from ..deps import get_current_user, require_permission
from ..logs import json_log
from ..procurement.ledgers import PgCurrencyRates
from ..validation import CurrencyCode

router = APIRouter(prefix="/fx", tags=["fx"])


@router.get("/rates", dependencies=[Depends(get_current_user)])
def list_currency_rates(include_inactive: bool = False):
    """
    Current conversion rates (home currency per unit of foreign currency).

    Readable by any signed-in user so purchasing screens can default
    exchange_rate on new drafts.
    """
    with get_conn() as conn:
        with conn.cursor() as cur:
            sql = "SELECT code, rate, is_active, updated_at FROM currency_rates"
            if not include_inactive:
                sql += " WHERE is_active = true"
            cur.execute(sql + " ORDER BY code")
            return {"rates": cur.fetchall()}


@router.get("/rates/{code}", dependencies=[Depends(get_current_user)])
def get_currency_rate(code: str):
    cc = (code or "").strip().upper()
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT code, rate, is_active, updated_at FROM currency_rates WHERE code = %s", (cc,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="currency rate not found")
            return {"rate": row}


class CurrencyRateIn(BaseModel):
    code: CurrencyCode
    rate: Decimal


@router.post("/rates", dependencies=[Depends(require_permission("fx:write"))])
def set_currency_rate(data: CurrencyRateIn, user=Depends(get_current_user)):
    if data.rate <= 0:
        raise HTTPException(status_code=400, detail="rate must be > 0")

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                previous = PgCurrencyRates(cur).set_rate(data.code, data.rate)
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, 'fx.rate.upsert', 'currency_rate', %s, %s::jsonb)
                    """,
                    (
                        user["user_id"],
                        data.code,
                        json.dumps({"previous_rate": previous, "rate": data.rate}, default=str),
                    ),
                )
                json_log(
                    "info",
                    "procurement.currency.rate_updated",
                    currency=data.code,
                    old_rate=previous,
                    new_rate=data.rate,
                    source="fx_api",
                )
                return {"ok": True, "code": data.code, "rate": data.rate, "previous_rate": previous}
