"""
Debt Ledger and Usage Audit Log

Both are append-only: rows are inserted and read, never updated or deleted.
They feed manual reconciliation and usage reporting.
"""

from datetime import datetime
from typing import List, Optional
import structlog

from persistence.database import Database, Transaction, get_database, format_timestamp, utcnow
from persistence.models import DebtRecord, UsageRecord

logger = structlog.get_logger()


class DebtLedger:
    """Append-only record of consumption no active grant could cover."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def record_in(self, tx: Transaction, record: DebtRecord) -> DebtRecord:
        """Append a debt inside the consuming transaction."""
        tx.execute(
            """INSERT INTO quota_debts (debt_id, user_id, shortfall_amount, created_at)
               VALUES (?, ?, ?, ?)""",
            record.to_db_tuple()
        )
        logger.warning(
            "quota_debt_recorded",
            debt_id=record.debt_id,
            user_id=record.user_id,
            shortfall=record.shortfall_amount,
        )
        return record

    def list_for_user(self, user_id: str, limit: int = 100) -> List[DebtRecord]:
        """Debts for a user, newest first."""
        results = self.db.execute(
            "SELECT * FROM quota_debts WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
            (user_id, limit)
        )
        return [DebtRecord.from_row(r) for r in results]

    def total_for_user(self, user_id: str) -> int:
        """Outstanding (unreconciled) shortfall for a user."""
        results = self.db.execute(
            "SELECT COALESCE(SUM(shortfall_amount), 0) AS total FROM quota_debts WHERE user_id = ?",
            (user_id,)
        )
        return int(results[0].get("total") or 0) if results else 0


class UsageAuditLog:
    """Append-only history of every debit."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def append(self, record: UsageRecord) -> UsageRecord:
        """Write one audit row in its own autocommitted statement."""
        self.db.execute(
            """INSERT INTO quota_usage
               (usage_id, user_id, amount_debited, grants_drawn, debt_amount, metadata, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            record.to_db_tuple()
        )
        return record

    def list_for_user(
        self,
        user_id: str,
        start: datetime,
        end: Optional[datetime] = None,
    ) -> List[UsageRecord]:
        """Usage rows with start <= created_at < end, newest first."""
        end = end or utcnow()
        results = self.db.execute(
            """SELECT * FROM quota_usage
               WHERE user_id = ? AND created_at >= ? AND created_at < ?
               ORDER BY created_at DESC""",
            (user_id, format_timestamp(start), format_timestamp(end))
        )
        return [UsageRecord.from_row(r) for r in results]
