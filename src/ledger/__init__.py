"""
Quota Ledger - Core Module

Grants, balance views, consumption with debt recording, and the audit logs.

The QuotaLedger facade lives in ledger.service; it is not re-exported here
because it depends on the billing package, which itself imports ledger.
"""

from .errors import (
    LedgerError,
    NotFoundError,
    AlreadyProcessedError,
    InsufficientFundsError,
    InvalidAmountError,
    StorageError,
)
from .config import LedgerConfig
from .grants import GrantStore, BalanceAggregator, expires_in
from .audit import DebtLedger, UsageAuditLog
from .consumption import ConsumptionEngine, DebitPlan, plan_debit

__all__ = [
    "LedgerError",
    "NotFoundError",
    "AlreadyProcessedError",
    "InsufficientFundsError",
    "InvalidAmountError",
    "StorageError",
    "LedgerConfig",
    "GrantStore",
    "BalanceAggregator",
    "expires_in",
    "DebtLedger",
    "UsageAuditLog",
    "ConsumptionEngine",
    "DebitPlan",
    "plan_debit",
]
