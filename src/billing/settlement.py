"""
Settlement Gateway

Idempotent bridge from "payment confirmed" notifications to quota grants.

Payment state machine: waiting -> {success, failed, canceled}. The transition
happens once. complete_payment() loads the payment under a lock and refuses
anything that is no longer waiting, which makes duplicate webhook deliveries
harmless.

On success the same transaction also writes the payment_completed outbox
event and issues the purchased grant, so a payment can never be marked
successful without its credit. The outbox consumer re-checks the grant keyed
on payment_id, so replays never credit twice.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Union
import json
import uuid
import structlog

from ledger.errors import AlreadyProcessedError, NotFoundError
from ledger.grants import GrantStore
from persistence.database import Database, Transaction, format_timestamp, get_database, utcnow
from persistence.models import (
    EVENT_TYPE_PAYMENT_COMPLETED,
    EventStatus,
    GrantSource,
    OutboxEvent,
    Payment,
    PaymentCompletedEvent,
    PaymentStatus,
    new_id,
)

from .pricing import PriceTable

logger = structlog.get_logger()

PAYMENT_COLUMNS = (
    "payment_id, user_id, product_id, source, status, environment, purchase_at, "
    "provider_fields, note, created_at, updated_at"
)


class SettlementGateway:
    """Payment lifecycle and purchase crediting."""

    def __init__(
        self,
        db: Optional[Database] = None,
        price_table: Optional[PriceTable] = None,
        grant_store: Optional[GrantStore] = None,
    ):
        self.db = db or get_database()
        self.price_table = price_table or PriceTable()
        self.grant_store = grant_store or GrantStore(self.db)

    def create_payment(self, user_id: str, product_id: str, source: str) -> str:
        """Open a waiting payment for a product and return its id."""
        if self.price_table.get_product(product_id) is None:
            raise NotFoundError(f"product {product_id} not found")

        now = utcnow()
        payment = Payment(
            payment_id=f"{user_id}-{uuid.uuid4()}",
            user_id=user_id,
            product_id=product_id,
            source=source,
            status=PaymentStatus.WAITING,
            created_at=now,
            updated_at=now,
        )
        with self.db.transaction() as tx:
            tx.execute(
                f"INSERT INTO payments ({PAYMENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                payment.to_db_tuple()
            )

        logger.info(
            "payment_created",
            payment_id=payment.payment_id,
            user_id=user_id,
            product_id=product_id,
            source=source,
        )
        return payment.payment_id

    def get_payment(self, user_id: str, payment_id: str) -> Payment:
        results = self.db.execute(
            f"SELECT {PAYMENT_COLUMNS} FROM payments WHERE payment_id = ? AND user_id = ?",
            (payment_id, user_id)
        )
        if not results:
            raise NotFoundError(f"payment {payment_id} not found")
        return Payment.from_row(results[0])

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
        """
        Move a waiting payment to its terminal status.

        Returns the outbox event id on success, None for failed/canceled.

        Raises:
            NotFoundError: no payment (user_id, payment_id)
            AlreadyProcessedError: the payment is already terminal
            StorageError: the transaction failed; the payment is still waiting
        """
        outcome = PaymentStatus(outcome)
        if not outcome.is_terminal:
            raise ValueError("outcome must be a terminal status")

        event_id: Optional[str] = None
        with self.db.transaction() as tx:
            payment = self._load_locked(tx, user_id, payment_id)

            if payment.status is not PaymentStatus.WAITING:
                logger.warning(
                    "payment_already_processed",
                    payment_id=payment_id,
                    user_id=user_id,
                    status=payment.status.value,
                )
                raise AlreadyProcessedError(payment_id, payment.status.value)

            now = utcnow()
            tx.execute(
                """UPDATE payments
                   SET status = ?, environment = ?, purchase_at = ?, provider_fields = ?,
                       note = ?, updated_at = ?
                   WHERE payment_id = ? AND user_id = ?""",
                (
                    outcome.value,
                    environment,
                    format_timestamp(purchase_at or now),
                    json.dumps(provider_fields) if provider_fields else None,
                    note,
                    format_timestamp(now),
                    payment_id,
                    user_id,
                )
            )

            if outcome is PaymentStatus.SUCCESS:
                event_id = self._write_completed_event(tx, payment)
                self.issue_purchase_grant(tx, payment.user_id, payment.product_id, payment_id)

        logger.info(
            "payment_completed",
            payment_id=payment_id,
            user_id=user_id,
            status=outcome.value,
            event_id=event_id,
        )
        return event_id

    def cancel_payment(self, user_id: str, payment_id: str, reason: str = "") -> None:
        self.complete_payment(user_id, payment_id, PaymentStatus.CANCELED, note=reason or None)

    def issue_purchase_grant(self, tx: Transaction, user_id: str, product_id: str, payment_id: str) -> str:
        """Credit the product's quota, at most once per payment."""
        product = self.price_table.get_product(product_id)
        if product is None:
            raise NotFoundError(f"product {product_id} not found")

        return self.grant_store.create_in(
            tx,
            user_id=user_id,
            amount=product.quota,
            expires_at=product.expires_at(),
            note=product.name,
            payment_id=payment_id,
            source=GrantSource.PURCHASE,
        )

    def _load_locked(self, tx: Transaction, user_id: str, payment_id: str) -> Payment:
        rows = tx.execute(
            f"SELECT {PAYMENT_COLUMNS} FROM payments WHERE payment_id = ? AND user_id = ?" + tx.for_update,
            (payment_id, user_id)
        )
        if not rows:
            raise NotFoundError(f"payment {payment_id} not found")
        return Payment.from_row(rows[0])

    def _write_completed_event(self, tx: Transaction, payment: Payment) -> str:
        now = utcnow()
        event = OutboxEvent(
            event_id=new_id("evt"),
            event_type=EVENT_TYPE_PAYMENT_COMPLETED,
            payload=PaymentCompletedEvent(
                user_id=payment.user_id,
                product_id=payment.product_id,
                payment_id=payment.payment_id,
            ).to_dict(),
            status=EventStatus.WAITING,
            created_at=now,
            updated_at=now,
        )
        tx.execute(
            """INSERT INTO events (event_id, event_type, payload, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            event.to_db_tuple()
        )
        return event.event_id
