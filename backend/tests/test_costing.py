from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.procurement.costing import costed_draft_lines, final_unit_cost, order_cost_summary
from backend.app.procurement.schemas import PurchaseOrderLineIn


def test_costed_draft_lines_derives_home_currency_costs():
    lines, total_amount = costed_draft_lines(
        [
            PurchaseOrderLineIn(item_id="item-1", quantity="50", supplier_unit_price="10", unit_weight="250"),
            PurchaseOrderLineIn(item_id="item-2", quantity="4", supplier_unit_price="2.5"),
        ],
        Decimal("15"),
    )
    assert total_amount == Decimal("510")
    first, second = lines
    assert first["home_unit_price"] == Decimal("150")
    assert first["line_total"] == Decimal("7500")
    assert first["final_unit_cost"] == Decimal("7500")
    assert first["unit_weight"] == Decimal("250")
    assert second["home_unit_price"] == Decimal("37.5")
    assert second["line_total"] == Decimal("150.0")
    assert second["shipping_cost"] == Decimal("0")


def test_costed_draft_lines_rejects_negative_quantity():
    with pytest.raises(HTTPException) as exc:
        costed_draft_lines([PurchaseOrderLineIn(item_id="item-1", quantity="-1", supplier_unit_price="10")], Decimal("15"))
    assert exc.value.status_code == 400
    assert exc.value.detail == "line 1: quantity must be >= 0"


def test_costed_draft_lines_rejects_negative_price():
    with pytest.raises(HTTPException) as exc:
        costed_draft_lines(
            [
                PurchaseOrderLineIn(item_id="item-1", quantity="1", supplier_unit_price="1"),
                PurchaseOrderLineIn(item_id="item-2", quantity="1", supplier_unit_price="-0.01"),
            ],
            Decimal("15"),
        )
    assert exc.value.status_code == 400
    assert exc.value.detail == "line 2: unit price must be >= 0"


def test_final_unit_cost_includes_freight_and_loss_share():
    line = {"line_total": Decimal("1000"), "shipping_cost": Decimal("40"), "loss_share": Decimal("12.5")}
    assert final_unit_cost(line) == Decimal("1052.5")
    assert final_unit_cost({"line_total": Decimal("10")}) == Decimal("10")


def test_order_cost_summary_uses_effective_quantity():
    order = {"exchange_rate": Decimal("15")}
    lines = [
        {
            "supplier_unit_price": Decimal("10"),
            "ordered_qty": Decimal("10"),
            "line_total": Decimal("1500"),
            "shipping_cost": Decimal("100"),
            "loss_share": Decimal("0"),
            "lost_qty": Decimal("2"),
            "lost_value": Decimal("300"),
        },
        {
            "supplier_unit_price": Decimal("5"),
            "ordered_qty": Decimal("12"),
            "line_total": Decimal("900"),
            "shipping_cost": Decimal("60"),
            "loss_share": Decimal("40"),
            "lost_qty": Decimal("0"),
            "lost_value": Decimal("0"),
        },
    ]
    s = order_cost_summary(order, lines)
    assert s["total_supplier_cost"] == Decimal("160")
    assert s["total_home_cost"] == Decimal("2400")
    assert s["total_shipping_cost"] == Decimal("160")
    assert s["total_lost_value"] == Decimal("300")
    assert s["effective_qty"] == Decimal("20")
    assert s["total_landed_cost"] == Decimal("2600")
    assert s["average_landed_cost_per_unit"] == Decimal("130")


def test_order_cost_summary_handles_fully_lost_order():
    s = order_cost_summary(
        {"exchange_rate": Decimal("15")},
        [{"supplier_unit_price": Decimal("1"), "ordered_qty": Decimal("3"), "line_total": Decimal("45"), "lost_qty": Decimal("3")}],
    )
    assert s["effective_qty"] == Decimal("0")
    assert s["average_landed_cost_per_unit"] == Decimal("0")
