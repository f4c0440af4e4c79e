import os
from decimal import Decimal, InvalidOperation
from typing import List, Optional

class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _truthy(self, raw: str) -> bool:
        return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}

    def _decimal(self, raw: str, default: Optional[Decimal]) -> Optional[Decimal]:
        raw = (raw or "").strip()
        if not raw:
            return default
        try:
            return Decimal(raw)
        except InvalidOperation:
            return default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/procurement"
        # Comma-separated list of allowed CORS origins for browser/mobile clients.
        # Default keeps local dev working out of the box.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Procurement.
        self.home_currency = (os.getenv("HOME_CURRENCY") or "BDT").strip().upper()
        self.supplier_currency = (os.getenv("SUPPLIER_CURRENCY") or "CNY").strip().upper()
        self.refund_loss_threshold_pct = self._decimal(os.getenv("PO_REFUND_LOSS_THRESHOLD_PCT", ""), Decimal("10"))
        self.default_lead_days = int(self._decimal(os.getenv("PO_DEFAULT_LEAD_DAYS", ""), Decimal("21")))
        # Unset means funding accounts may go negative without limit.
        self.funding_overdraft_limit = self._decimal(os.getenv("FUNDING_OVERDRAFT_LIMIT", ""), None)
        self.permissive_transitions = self._truthy(os.getenv("PO_PERMISSIVE_TRANSITIONS", ""))

settings = Settings()
