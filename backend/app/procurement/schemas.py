from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, Field

from ..validation import CurrencyCode, OrderStatus, ShippingMethod


class PurchaseOrderLineIn(BaseModel):
    item_id: str
    quantity: Decimal
    supplier_unit_price: Decimal
    unit_weight: Decimal = Decimal("0")
    extra_weight: Decimal = Decimal("0")


class PurchaseOrderDraftIn(BaseModel):
    supplier_id: str
    currency_code: Optional[CurrencyCode] = None
    order_date: Optional[date] = None
    expected_delivery_date: Optional[date] = None
    # Falls back to the currency registry rate when omitted.
    exchange_rate: Optional[Decimal] = None
    lines: List[PurchaseOrderLineIn]


class PurchaseOrderDraftUpdateIn(BaseModel):
    order_date: Optional[date] = None
    expected_delivery_date: Optional[date] = None
    exchange_rate: Optional[Decimal] = None
    lines: Optional[List[PurchaseOrderLineIn]] = None


class PurchaseOrderUpdateIn(BaseModel):
    exchange_rate: Optional[Decimal] = None
    shipping_rate_per_kg: Optional[Decimal] = None
    total_weight: Optional[Decimal] = None
    expected_delivery_date: Optional[date] = None
    courier_name: Optional[str] = None
    tracking_number: Optional[str] = None
    lot_number: Optional[str] = None
    destination_tracking_no: Optional[str] = None
    shipping_method: Optional[ShippingMethod] = None


class ReceiptLineIn(BaseModel):
    id: str
    # Omitted means the full ordered quantity arrived.
    received_quantity: Optional[Decimal] = None
    unit_weight: Decimal
    extra_weight: Decimal = Decimal("0")
    shipping_rate_per_kg: Optional[Decimal] = None


class LossMarkIn(BaseModel):
    id: str
    lost_quantity: Decimal
    lost_item_price: Optional[Decimal] = None


class TransitionIn(BaseModel):
    status: OrderStatus
    comment: Optional[str] = None
    exchange_rate: Optional[Decimal] = None
    payment_account_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("payment_account_id", "paymentAccountId"),
    )
    courier_name: Optional[str] = None
    tracking_number: Optional[str] = None
    lot_number: Optional[str] = None
    destination_tracking_no: Optional[str] = None
    shipping_method: Optional[ShippingMethod] = None
    total_weight: Optional[Decimal] = None
    shipping_rate_per_kg: Optional[Decimal] = None
    receipts: Optional[List[ReceiptLineIn]] = None
    lost_items: Optional[List[LossMarkIn]] = None


class ApproveStockIn(BaseModel):
    comment: Optional[str] = None
