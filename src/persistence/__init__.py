"""
Persistence Layer for the Quota Ledger

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, StorageError, Transaction, get_database
from .models import (
    QuotaGrant,
    QuotaSummary,
    DebtRecord,
    UsageMeta,
    UsageRecord,
    Payment,
    PaymentStatus,
    PaymentCompletedEvent,
    OutboxEvent,
    EventStatus,
    GrantSource,
    EVENT_TYPE_PAYMENT_COMPLETED,
    new_id,
)

__all__ = [
    "Database",
    "StorageError",
    "Transaction",
    "get_database",
    "QuotaGrant",
    "QuotaSummary",
    "DebtRecord",
    "UsageMeta",
    "UsageRecord",
    "Payment",
    "PaymentStatus",
    "PaymentCompletedEvent",
    "OutboxEvent",
    "EventStatus",
    "GrantSource",
    "EVENT_TYPE_PAYMENT_COMPLETED",
    "new_id",
]
