"""
Consumption Engine

Debits quota from a user's active grants, soonest-to-expire first.

The engine never refuses a debit for lack of balance. By the time it runs the
chargeable work (an AI completion, an image) has usually been delivered, so a
shortfall is written to the debt ledger instead. Callers that want to refuse
work must run the balance pre-check before doing it.

Concurrency: the candidate grants are read and decremented inside one
transaction that holds the write lock (BEGIN IMMEDIATE on SQLite, SELECT ...
FOR UPDATE on PostgreSQL). Two concurrent debits for the same user are
therefore serialized and can never both spend the same remaining balance.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union
import structlog

from persistence.database import Database, StorageError, format_timestamp, get_database, utcnow
from persistence.models import DebtRecord, UsageMeta, UsageRecord, new_id

from .audit import DebtLedger, UsageAuditLog
from .grants import check_amount

logger = structlog.get_logger()


@dataclass
class Draw:
    """Amount taken from one grant."""
    grant_id: str
    amount: int


@dataclass
class DebitPlan:
    """Result of walking the candidate grants for one debit."""
    draws: List[Draw] = field(default_factory=list)
    shortfall: int = 0

    @property
    def grants_drawn(self) -> Dict[str, int]:
        return {d.grant_id: d.amount for d in self.draws}


def plan_debit(candidates: List[Dict], amount: int) -> DebitPlan:
    """
    Walk grants (already ordered by expiry) and decide how much to draw from each.

    Each grant gives min(remaining, amount_left); the walk stops once the
    amount is covered. Whatever is left over is the shortfall.
    """
    plan = DebitPlan()
    amount_left = amount
    for row in candidates:
        if amount_left == 0:
            break
        remaining = int(row["remaining"])
        if remaining <= 0:
            continue
        take = min(remaining, amount_left)
        plan.draws.append(Draw(grant_id=row["grant_id"], amount=take))
        amount_left -= take

    plan.shortfall = amount_left
    return plan


class ConsumptionEngine:
    """Debits quota across grants and records debt and usage."""

    def __init__(
        self,
        db: Optional[Database] = None,
        debt_ledger: Optional[DebtLedger] = None,
        usage_log: Optional[UsageAuditLog] = None,
    ):
        self.db = db or get_database()
        self.debt_ledger = debt_ledger or DebtLedger(self.db)
        self.usage_log = usage_log or UsageAuditLog(self.db)

    def consume(
        self,
        user_id: str,
        amount: int,
        meta: Optional[Union[UsageMeta, Dict]] = None,
    ) -> UsageRecord:
        """
        Debit ``amount`` units from the user's active grants.

        Returns the usage record describing exactly which grants were drawn.
        Raises InvalidAmountError for non-positive amounts and StorageError
        if the transaction fails (nothing is applied in that case).
        """
        check_amount(amount)
        if not isinstance(meta, UsageMeta):
            meta = UsageMeta.from_dict(meta)

        with self.db.transaction() as tx:
            now = utcnow()
            candidates = tx.execute(
                "SELECT grant_id, remaining FROM quota_grants "
                "WHERE user_id = ? AND remaining > 0 AND period_end > ? "
                "ORDER BY period_end ASC, created_at ASC, grant_id ASC" + tx.for_update,
                (user_id, format_timestamp(now))
            )

            plan = plan_debit(candidates, amount)
            for draw in plan.draws:
                updated = tx.execute_rowcount(
                    "UPDATE quota_grants SET remaining = remaining - ?, updated_at = ? "
                    "WHERE grant_id = ? AND remaining >= ?",
                    (draw.amount, format_timestamp(now), draw.grant_id, draw.amount)
                )
                if updated != 1:
                    # Unreachable under the row lock; rolls back and is safe to retry
                    raise StorageError(f"grant {draw.grant_id} changed during debit")

            if plan.shortfall > 0:
                self.debt_ledger.record_in(tx, DebtRecord(
                    debt_id=new_id("debt"),
                    user_id=user_id,
                    shortfall_amount=plan.shortfall,
                    created_at=now,
                ))

        record = UsageRecord(
            usage_id=new_id("usg"),
            user_id=user_id,
            amount_debited=amount,
            grants_drawn=plan.grants_drawn,
            debt_amount=plan.shortfall,
            meta=meta,
            created_at=now,
        )

        logger.info(
            "quota_consumed",
            user_id=user_id,
            amount=amount,
            grants_drawn=record.grants_drawn,
            debt=record.debt_amount,
            tag=meta.tag,
            models=meta.models,
        )

        try:
            self.usage_log.append(record)
        except Exception as e:
            # The debit is committed; a missing audit row must not undo it
            logger.error("usage_record_save_failed", user_id=user_id, usage_id=record.usage_id, error=str(e))

        return record
