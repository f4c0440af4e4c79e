from decimal import Decimal

from backend.app.config import Settings


def test_procurement_defaults(monkeypatch):
    for name in (
        "HOME_CURRENCY",
        "SUPPLIER_CURRENCY",
        "PO_REFUND_LOSS_THRESHOLD_PCT",
        "PO_DEFAULT_LEAD_DAYS",
        "FUNDING_OVERDRAFT_LIMIT",
        "PO_PERMISSIVE_TRANSITIONS",
    ):
        monkeypatch.delenv(name, raising=False)
    s = Settings()
    assert s.home_currency == "BDT"
    assert s.supplier_currency == "CNY"
    assert s.refund_loss_threshold_pct == Decimal("10")
    assert s.default_lead_days == 21
    assert s.funding_overdraft_limit is None
    assert s.permissive_transitions is False


def test_procurement_overrides(monkeypatch):
    monkeypatch.setenv("SUPPLIER_CURRENCY", "usd")
    monkeypatch.setenv("PO_REFUND_LOSS_THRESHOLD_PCT", "12.5")
    monkeypatch.setenv("PO_DEFAULT_LEAD_DAYS", "30")
    monkeypatch.setenv("FUNDING_OVERDRAFT_LIMIT", "25000")
    monkeypatch.setenv("PO_PERMISSIVE_TRANSITIONS", "yes")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example,")
    s = Settings()
    assert s.supplier_currency == "USD"
    assert s.refund_loss_threshold_pct == Decimal("12.5")
    assert s.default_lead_days == 30
    assert s.funding_overdraft_limit == Decimal("25000")
    assert s.permissive_transitions is True
    assert s.cors_origins == ["https://a.example", "https://b.example"]


def test_malformed_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("PO_REFUND_LOSS_THRESHOLD_PCT", "ten")
    monkeypatch.setenv("FUNDING_OVERDRAFT_LIMIT", "n/a")
    s = Settings()
    assert s.refund_loss_threshold_pct == Decimal("10")
    assert s.funding_overdraft_limit is None


def test_database_url_prefers_app_specific_variable(monkeypatch):
    monkeypatch.delenv("APP_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    assert Settings().db_url == "postgresql://localhost/procurement"

    monkeypatch.setenv("DATABASE_URL", "postgresql://db/shared")
    assert Settings().db_url == "postgresql://db/shared"

    monkeypatch.setenv("APP_DATABASE_URL", "postgresql://db/procurement")
    assert Settings().db_url == "postgresql://db/procurement"
