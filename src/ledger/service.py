"""
Quota Ledger Service

Single entry point wiring the grant store, balance views, consumption engine,
audit logs and the billing components over one Database.

Callers that must refuse work for lack of quota run check_quota() before the
chargeable work, then consume() after it. consume() itself never refuses.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union
import structlog

from billing.gifts import GiftService
from billing.outbox import OutboxProcessor, ReferrerLookup
from billing.pricing import PriceTable, Product
from billing.settlement import SettlementGateway
from persistence.database import Database, get_database, utcnow
from persistence.models import (
    DebtRecord,
    GrantSource,
    Payment,
    PaymentStatus,
    QuotaGrant,
    QuotaSummary,
    UsageMeta,
    UsageRecord,
)

from .audit import DebtLedger, UsageAuditLog
from .config import LedgerConfig
from .consumption import ConsumptionEngine
from .errors import InsufficientFundsError
from .grants import BalanceAggregator, GrantStore, check_amount

logger = structlog.get_logger()


class QuotaLedger:
    """
    Facade over the quota ledger.

    Usage:
        ledger = QuotaLedger()
        ledger.create_grant("alice", 100, expires_at)
        ledger.check_quota("alice", 30)
        record = ledger.consume("alice", 30, {"tag": "chat", "models": ["gpt-4"]})
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        price_table: Optional[PriceTable] = None,
        config: Optional[LedgerConfig] = None,
        referrer_lookup: Optional[ReferrerLookup] = None,
    ):
        self.db = db or get_database()
        self.db.initialize()
        self.config = config or LedgerConfig()
        self.price_table = price_table or PriceTable()

        self.grants = GrantStore(self.db)
        self.balances = BalanceAggregator(self.db, details_limit=self.config.details_limit)
        self.debt_ledger = DebtLedger(self.db)
        self.usage_log = UsageAuditLog(self.db)
        self.engine = ConsumptionEngine(self.db, self.debt_ledger, self.usage_log)
        self.settlement = SettlementGateway(self.db, self.price_table, self.grants)
        self.outbox = OutboxProcessor(
            self.db,
            self.price_table,
            self.settlement,
            self.grants,
            referrer_lookup=referrer_lookup,
            referral_bonus_expiry_days=self.config.referral_bonus_expiry_days,
        )
        self.gifts = GiftService(self.grants, self.price_table, expiry_days=self.config.gift_expiry_days)

    # =========================================================================
    # Balance views
    # =========================================================================

    def summary(self, user_id: str) -> QuotaSummary:
        return self.balances.summary(user_id)

    def details(self, user_id: str) -> List[QuotaGrant]:
        return self.balances.details(user_id, lookback_months=self.config.details_lookback_months)

    def usage_history(self, user_id: str, days: Optional[int] = None) -> List[UsageRecord]:
        """Usage records of the last ``days`` days, newest first."""
        days = days if days is not None else self.config.usage_history_days
        return self.usage_log.list_for_user(user_id, start=utcnow() - timedelta(days=days))

    def debts(self, user_id: str) -> List[DebtRecord]:
        return self.debt_ledger.list_for_user(user_id)

    # =========================================================================
    # Grants and consumption
    # =========================================================================

    def create_grant(
        self,
        user_id: str,
        amount: int,
        expires_at: datetime,
        note: str = "",
        payment_id: Optional[str] = None,
        source: Union[GrantSource, str] = GrantSource.MANUAL,
    ) -> str:
        return self.grants.create_grant(
            user_id=user_id,
            amount=amount,
            expires_at=expires_at,
            note=note,
            payment_id=payment_id,
            source=source,
        )

    def check_quota(self, user_id: str, amount: int) -> QuotaSummary:
        """
        Pre-check before chargeable work.

        Raises InsufficientFundsError when the active remaining balance is
        below ``amount``. Advisory only: it takes no lock, so a concurrent
        debit can still push the later consume() into debt.
        """
        check_amount(amount)
        summary = self.balances.summary(user_id)
        if summary.remaining < amount:
            logger.info(
                "quota_check_failed",
                user_id=user_id,
                required=amount,
                available=summary.remaining,
            )
            raise InsufficientFundsError(user_id, amount, summary.remaining)
        return summary

    def consume(
        self,
        user_id: str,
        amount: int,
        meta: Optional[Union[UsageMeta, Dict[str, Any]]] = None,
    ) -> UsageRecord:
        return self.engine.consume(user_id, amount, meta)

    # =========================================================================
    # Payments
    # =========================================================================

    def products(self) -> List[Product]:
        return list(self.price_table.products)

    def create_payment(self, user_id: str, product_id: str, source: str) -> str:
        return self.settlement.create_payment(user_id, product_id, source)

    def get_payment(self, user_id: str, payment_id: str) -> Payment:
        return self.settlement.get_payment(user_id, payment_id)

    def complete_payment(
        self,
        user_id: str,
        payment_id: str,
        outcome: Union[PaymentStatus, str],
        provider_fields: Optional[Dict[str, Any]] = None,
        environment: Optional[str] = None,
        purchase_at: Optional[datetime] = None,
        note: Optional[str] = None,
    ) -> Optional[str]:
        return self.settlement.complete_payment(
            user_id,
            payment_id,
            outcome,
            provider_fields=provider_fields,
            environment=environment,
            purchase_at=purchase_at,
            note=note,
        )

    def cancel_payment(self, user_id: str, payment_id: str, reason: str = "") -> None:
        self.settlement.cancel_payment(user_id, payment_id, reason)

    def process_events(self, limit: int = 100) -> int:
        return self.outbox.process_pending(limit)
