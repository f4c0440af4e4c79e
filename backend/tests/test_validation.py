import pytest
from pydantic import BaseModel, ValidationError

from backend.app.validation import CurrencyCode, OrderStatus, ShippingMethod


class _M(BaseModel):
    currency: CurrencyCode
    status: OrderStatus
    method: ShippingMethod


def test_validation_types_normalize_case():
    m = _M(currency="cny", status="PAYMENT_CONFIRMED", method=" Sea ")
    assert m.currency == "CNY"
    assert m.status == "payment_confirmed"
    assert m.method == "sea"


def test_status_accepts_camel_and_kebab_case():
    assert _M(currency="BDT", status="inTransitToHub", method="air").status == "in_transit_to_hub"
    assert _M(currency="BDT", status="received-at-hub", method="air").status == "received_at_hub"
    assert _M(currency="BDT", status="lost", method="air").status == "lost"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"currency": "CNY", "status": "shipped", "method": "air"},
        {"currency": "CN", "status": "draft", "method": "air"},
        {"currency": "C1Y", "status": "draft", "method": "air"},
        {"currency": "CNY", "status": "draft", "method": "rail"},
    ],
)
def test_unknown_status_and_bad_codes_rejected(kwargs):
    with pytest.raises(ValidationError):
        _M(**kwargs)
