from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.procurement import lifecycle
from backend.app.procurement.schemas import PurchaseOrderDraftIn, TransitionIn
from backend.app.routers import purchase_orders as po_router
from backend.tests._fakes import fake_ledgers


class _FakeCursor:
    def __init__(self, order=None, lines=None, rates=None, account=None, credit_balance=None):
        self.order = dict(order) if order else None
        self.lines = [dict(l) for l in (lines or [])]
        self.rates = dict(rates or {})
        self.account = dict(account) if account else None
        self.credit_balance = credit_balance
        self.executed: list[tuple[str, tuple]] = []
        self.rows = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        params = tuple(params or ())
        self.executed.append((text, params))
        if text.startswith("select") and "from purchase_orders" in text:
            self.rows = [self.order] if self.order else []
        elif text.startswith("select") and "from purchase_order_lines" in text:
            self.rows = list(self.lines)
        elif text.startswith("select rate from currency_rates"):
            rate = self.rates.get(params[0])
            self.rows = [{"rate": rate}] if rate is not None else []
        elif text.startswith("select balance from supplier_credit_balances"):
            self.rows = [{"balance": self.credit_balance}] if self.credit_balance is not None else []
        elif text.startswith("insert into supplier_credit_balances"):
            self.credit_balance = (self.credit_balance or Decimal("0")) + params[1]
            self.rows = [{"balance": self.credit_balance}]
        elif text.startswith("select") and "from funding_accounts" in text:
            self.rows = [self.account] if self.account else []
        elif text.startswith("update funding_accounts"):
            self.account["current_balance"] -= params[0]
            self.rows = []
        elif text.startswith("insert into purchase_orders"):
            self.rows = [{"id": "o-new"}]
        elif text.startswith("insert into purchase_order_status_events"):
            self.rows = [{"id": "h1", "seq": 1, "previous_status": params[2], "new_status": params[3], "comment": params[4]}]
        elif text.startswith("delete from purchase_order_lines"):
            self.lines = []
            self.rows = []
        elif text.startswith("delete from purchase_orders"):
            self.order = None
            self.rows = []
        else:
            self.rows = []

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)

    def statements(self, prefix):
        return [sql for sql, _ in self.executed if sql.startswith(prefix)]


class _DummyConn:
    def __init__(self, cursor: _FakeCursor):
        self._cursor = cursor

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def transaction(self):
        return self

    def cursor(self):
        return self._cursor


def _patch_db(monkeypatch, **kw):
    cur = _FakeCursor(**kw)
    conn = _DummyConn(cur)
    monkeypatch.setattr(po_router, "get_conn", lambda: conn)
    return cur


def _order(status):
    return {
        "id": "o1",
        "order_no": "PO-1",
        "supplier_id": "sup-1",
        "currency_code": "CNY",
        "status": status,
        "exchange_rate": Decimal("15"),
        "total_amount": Decimal("500"),
        "expected_delivery_date": None,
        "courier_name": None,
        "tracking_number": None,
    }


def _line():
    return {
        "id": "l1",
        "item_id": "item-1",
        "supplier_unit_price": Decimal("10"),
        "ordered_qty": Decimal("50"),
        "home_unit_price": Decimal("150"),
        "line_total": Decimal("7500"),
        "shipping_cost": Decimal("0"),
        "loss_share": Decimal("0"),
        "final_unit_cost": Decimal("7500"),
    }


USER = {"user_id": "u1", "email": "buyer@example.com"}


def test_delete_draft_cascades_lines(monkeypatch):
    cur = _patch_db(monkeypatch, order=_order("draft"), lines=[_line()])
    assert po_router.delete_purchase_order("o1", user=USER) == {"ok": True}
    assert cur.statements("delete from purchase_order_lines")
    assert cur.statements("delete from purchase_orders")
    assert cur.lines == []
    assert cur.order is None
    assert cur.statements("insert into audit_logs")


def test_delete_dispatched_order_is_rejected(monkeypatch):
    cur = _patch_db(monkeypatch, order=_order("supplier_dispatched"), lines=[_line()])
    with pytest.raises(HTTPException) as exc:
        po_router.delete_purchase_order("o1", user=USER)
    assert exc.value.status_code == 409
    assert exc.value.detail == "only draft orders can be deleted"
    assert cur.statements("delete") == []
    assert cur.lines


def test_delete_unknown_order_is_404(monkeypatch):
    _patch_db(monkeypatch)
    with pytest.raises(HTTPException) as exc:
        po_router.delete_purchase_order("missing", user=USER)
    assert exc.value.status_code == 404


def test_create_draft_defaults_rate_from_registry(monkeypatch):
    cur = _patch_db(monkeypatch, rates={"CNY": Decimal("15")})
    out = po_router.create_purchase_order_draft(
        PurchaseOrderDraftIn(
            supplier_id="sup-1",
            lines=[{"item_id": "item-1", "quantity": "50", "supplier_unit_price": "10"}],
        ),
        user=USER,
    )
    assert out == {"id": "o-new", "total_amount": Decimal("500")}
    (insert_order,) = [p for sql, p in cur.executed if sql.startswith("insert into purchase_orders")]
    assert insert_order[1] == "CNY"
    assert insert_order[4] == Decimal("15")
    (insert_line,) = [p for sql, p in cur.executed if sql.startswith("insert into purchase_order_lines")]
    # home_unit_price, line_total
    assert insert_line[5] == Decimal("150")
    assert insert_line[6] == Decimal("7500")


def test_create_draft_without_any_rate_is_rejected(monkeypatch):
    cur = _patch_db(monkeypatch)
    with pytest.raises(HTTPException) as exc:
        po_router.create_purchase_order_draft(
            PurchaseOrderDraftIn(
                supplier_id="sup-1",
                currency_code="usd",
                lines=[{"item_id": "item-1", "quantity": "1", "supplier_unit_price": "1"}],
            ),
            user=USER,
        )
    assert exc.value.status_code == 400
    assert exc.value.detail == "exchange_rate is required"
    assert cur.statements("insert") == []


def test_create_draft_requires_lines(monkeypatch):
    _patch_db(monkeypatch)
    with pytest.raises(HTTPException) as exc:
        po_router.create_purchase_order_draft(PurchaseOrderDraftIn(supplier_id="sup-1", lines=[]), user=USER)
    assert exc.value.status_code == 400


def test_status_transition_writes_history_audit_and_order(monkeypatch):
    cur = _patch_db(monkeypatch, order=_order("payment_confirmed"), lines=[_line()])
    monkeypatch.setattr(lifecycle, "pg_ledgers", lambda _cur: fake_ledgers())

    out = po_router.update_purchase_order_status(
        "o1",
        TransitionIn(status="supplier_dispatched", courier_name="DHL", tracking_number="JD01"),
        user=USER,
    )
    assert out["order"]["status"] == "supplier_dispatched"
    assert out["history_entry"]["previous_status"] == "payment_confirmed"
    assert out["history_entry"]["new_status"] == "supplier_dispatched"
    assert "supplier_dispatched" not in out["allowed_transitions"]
    assert "warehouse_received" in out["allowed_transitions"]

    (update_sql,) = cur.statements("update purchase_orders")
    assert "status = %s" in update_sql
    assert "courier_name = %s" in update_sql
    assert cur.statements("insert into purchase_order_status_events")
    assert cur.statements("insert into audit_logs")


def test_rejected_transition_writes_nothing(monkeypatch):
    cur = _patch_db(monkeypatch, order=_order("payment_confirmed"), lines=[_line()])
    monkeypatch.setattr(lifecycle, "pg_ledgers", lambda _cur: fake_ledgers())
    with pytest.raises(HTTPException) as exc:
        po_router.update_purchase_order_status("o1", TransitionIn(status="completed"), user=USER)
    assert exc.value.status_code == 409
    assert cur.statements("update") == []
    assert cur.statements("insert") == []


def test_rejected_transition_reports_reason_and_unchanged_order(monkeypatch):
    cur = _patch_db(monkeypatch, order=_order("payment_confirmed"), lines=[_line()])
    monkeypatch.setattr(lifecycle, "pg_ledgers", lambda _cur: fake_ledgers())
    with pytest.raises(HTTPException) as exc:
        po_router.update_purchase_order_status("o1", TransitionIn(status="completed"), user=USER)

    detail = exc.value.detail
    assert exc.value.status_code == 409
    assert detail["reason"] == "invalid_transition"
    assert detail["message"] == "invalid transition: payment_confirmed -> completed"
    assert detail["order"]["order"] == _order("payment_confirmed")
    assert detail["order"]["lines"] == [_line()]
    assert "supplier_dispatched" in detail["order"]["allowed_transitions"]
    assert cur.statements("update") == []
    assert cur.statements("insert") == []


def test_rejected_transition_on_missing_order_has_no_order_payload(monkeypatch):
    _patch_db(monkeypatch)
    with pytest.raises(HTTPException) as exc:
        po_router.update_purchase_order_status("missing", TransitionIn(status="lost"), user=USER)
    assert exc.value.status_code == 404
    assert exc.value.detail == {"reason": "order_not_found", "message": "order not found"}


def test_confirm_payment_without_account_reports_reason(monkeypatch):
    _patch_db(monkeypatch, order=_order("draft"), lines=[_line()])
    monkeypatch.setattr(lifecycle, "pg_ledgers", lambda _cur: fake_ledgers())
    with pytest.raises(HTTPException) as exc:
        po_router.update_purchase_order_status("o1", TransitionIn(status="payment_confirmed"), user=USER)
    assert exc.value.status_code == 400
    assert exc.value.detail["reason"] == "payment_account_required"
    assert exc.value.detail["order"]["order"]["status"] == "draft"


def test_confirm_payment_locks_order_before_touching_ledgers(monkeypatch):
    account = {
        "id": "acc-1",
        "name": "Main",
        "current_balance": Decimal("10000"),
        "overdraft_limit": None,
        "is_active": True,
    }
    cur = _patch_db(
        monkeypatch,
        order=_order("draft"),
        lines=[_line()],
        account=account,
        credit_balance=Decimal("3000"),
    )

    out = po_router.update_purchase_order_status(
        "o1",
        TransitionIn(status="payment_confirmed", payment_account_id="acc-1"),
        user=USER,
    )
    assert out["order"]["status"] == "payment_confirmed"
    assert out["order"]["supplier_credit_used"] == Decimal("3000")
    assert out["order"]["funding_account_amount"] == Decimal("4500")
    assert cur.credit_balance == Decimal("0")
    assert cur.account["current_balance"] == Decimal("5500")

    sqls = [sql for sql, _ in cur.executed]
    first = sqls[0]
    assert first.startswith("select")
    assert "from purchase_orders" in first
    assert first.endswith("for update")
    ledger_reads = [
        i for i, sql in enumerate(sqls) if "supplier_credit_balances" in sql or "funding_accounts" in sql
    ]
    assert ledger_reads
    assert min(ledger_reads) > 0
