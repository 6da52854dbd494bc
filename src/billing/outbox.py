"""
Outbox Processor

At-least-once consumer of payment_completed events.

Each event is handled in one transaction that re-reads it under a lock, so
concurrent workers and replays see it as already processed. Handling is
idempotent on payment_id: the purchase grant and the referral bonus are each
issued at most once per payment.
"""

from datetime import timedelta
from typing import Callable, List, Optional
import structlog

from ledger.errors import NotFoundError
from ledger.grants import GrantStore
from persistence.database import Database, StorageError, Transaction, format_timestamp, get_database, utcnow
from persistence.models import (
    EVENT_TYPE_PAYMENT_COMPLETED,
    EventStatus,
    GrantSource,
    OutboxEvent,
    PaymentCompletedEvent,
)

from .pricing import PriceTable
from .settlement import SettlementGateway

logger = structlog.get_logger()

# Returns the inviter of a user when that user's purchases earn a referral bonus
ReferrerLookup = Callable[[str], Optional[str]]


class OutboxProcessor:
    """Processes waiting outbox events."""

    def __init__(
        self,
        db: Optional[Database] = None,
        price_table: Optional[PriceTable] = None,
        settlement: Optional[SettlementGateway] = None,
        grant_store: Optional[GrantStore] = None,
        referrer_lookup: Optional[ReferrerLookup] = None,
        referral_bonus_expiry_days: int = 30,
    ):
        self.db = db or get_database()
        self.price_table = price_table or PriceTable()
        self.grant_store = grant_store or GrantStore(self.db)
        self.settlement = settlement or SettlementGateway(self.db, self.price_table, self.grant_store)
        self.referrer_lookup = referrer_lookup
        self.referral_bonus_expiry_days = referral_bonus_expiry_days

    def get_event(self, event_id: str) -> OutboxEvent:
        results = self.db.execute("SELECT * FROM events WHERE event_id = ?", (event_id,))
        if not results:
            raise NotFoundError(f"event {event_id} not found")
        return OutboxEvent.from_row(results[0])

    def pending(self, limit: int = 100) -> List[OutboxEvent]:
        results = self.db.execute(
            "SELECT * FROM events WHERE status = ? ORDER BY created_at ASC LIMIT ?",
            (EventStatus.WAITING.value, limit)
        )
        return [OutboxEvent.from_row(r) for r in results]

    def process_pending(self, limit: int = 100) -> int:
        """Process up to ``limit`` waiting events; returns how many succeeded."""
        processed = 0
        for event in self.pending(limit):
            try:
                if self.process(event.event_id):
                    processed += 1
            except StorageError as e:
                # Transient; the event stays waiting for the next run
                logger.warning("event_process_retry", event_id=event.event_id, error=str(e))
            except Exception as e:
                logger.error("event_process_failed", event_id=event.event_id, error=str(e))
                self._mark(event.event_id, EventStatus.FAILED)

        logger.info("outbox_batch_complete", processed=processed)
        return processed

    def process(self, event_id: str) -> bool:
        """
        Handle one event. Returns False when there was nothing to do
        (already processed, or an event type this processor does not own).
        """
        with self.db.transaction() as tx:
            rows = tx.execute("SELECT * FROM events WHERE event_id = ?" + tx.for_update, (event_id,))
            if not rows:
                raise NotFoundError(f"event {event_id} not found")

            event = OutboxEvent.from_row(rows[0])
            if event.status is not EventStatus.WAITING:
                logger.warning("event_not_waiting", event_id=event_id, status=event.status.value)
                return False

            if event.event_type != EVENT_TYPE_PAYMENT_COMPLETED:
                logger.error("event_type_unsupported", event_id=event_id, event_type=event.event_type)
                return False

            self._handle_payment_completed(tx, PaymentCompletedEvent.from_dict(event.payload))
            self._mark_in(tx, event_id, EventStatus.SUCCEED)

        logger.info("event_processed", event_id=event_id, event_type=event.event_type)
        return True

    def _handle_payment_completed(self, tx: Transaction, payload: PaymentCompletedEvent) -> None:
        product = self.price_table.get_product(payload.product_id)
        if product is None:
            raise NotFoundError(f"product {payload.product_id} not found")

        # No-op when the success transition already issued it
        self.settlement.issue_purchase_grant(tx, payload.user_id, payload.product_id, payload.payment_id)

        if self.referrer_lookup is None:
            return

        inviter = self.referrer_lookup(payload.user_id)
        bonus = self.price_table.referral_bonus(product.quota)
        if not inviter or bonus <= 0:
            return

        self.grant_store.create_in(
            tx,
            user_id=inviter,
            amount=bonus,
            expires_at=utcnow() + timedelta(days=self.referral_bonus_expiry_days),
            note="Referral purchase bonus",
            payment_id=payload.payment_id,
            source=GrantSource.REFERRAL_BONUS,
        )

    def _mark_in(self, tx: Transaction, event_id: str, status: EventStatus) -> None:
        tx.execute(
            "UPDATE events SET status = ?, updated_at = ? WHERE event_id = ?",
            (status.value, format_timestamp(utcnow()), event_id)
        )

    def _mark(self, event_id: str, status: EventStatus) -> None:
        try:
            with self.db.transaction() as tx:
                self._mark_in(tx, event_id, status)
        except StorageError as e:
            logger.error("event_status_update_failed", event_id=event_id, status=status.value, error=str(e))
