"""
Tests for the Outbox Processor

At-least-once delivery with idempotent handling.
"""

import json
import pytest

from ledger.errors import NotFoundError, StorageError
from ledger.service import QuotaLedger
from persistence.database import format_timestamp, utcnow
from persistence.models import EventStatus, GrantSource, PaymentStatus


def _insert_event(db, event_id, event_type, payload):
    now = format_timestamp(utcnow())
    db.execute(
        """INSERT INTO events (event_id, event_type, payload, status, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (event_id, event_type, json.dumps(payload), EventStatus.WAITING.value, now, now)
    )


def _purchase_grants(ledger, user_id):
    return [g for g in ledger.grants.list_for_user(user_id) if g.source == GrantSource.PURCHASE.value]


class TestProcessEvents:
    """Draining payment_completed events."""

    def test_processing_does_not_credit_twice(self, ledger):
        payment_id = ledger.create_payment("alice", "coins_600", "manual")
        event_id = ledger.complete_payment("alice", payment_id, PaymentStatus.SUCCESS)

        assert ledger.process_events() == 1

        assert ledger.outbox.get_event(event_id).status is EventStatus.SUCCEED
        assert len(_purchase_grants(ledger, "alice")) == 1
        assert ledger.summary("alice").remaining == 700

    def test_processed_event_is_skipped(self, ledger):
        payment_id = ledger.create_payment("alice", "coins_600", "manual")
        event_id = ledger.complete_payment("alice", payment_id, PaymentStatus.SUCCESS)

        assert ledger.outbox.process(event_id) is True
        assert ledger.outbox.process(event_id) is False
        assert ledger.process_events() == 0

    def test_redelivered_event_is_idempotent(self, ledger, db):
        """An event put back to waiting must not issue a second grant."""
        payment_id = ledger.create_payment("alice", "coins_600", "manual")
        event_id = ledger.complete_payment("alice", payment_id, PaymentStatus.SUCCESS)
        ledger.process_events()

        db.execute("UPDATE events SET status = ? WHERE event_id = ?", (EventStatus.WAITING.value, event_id))

        assert ledger.process_events() == 1
        assert len(_purchase_grants(ledger, "alice")) == 1

    def test_event_without_grant_issues_it(self, ledger, db):
        """The consumer credits a purchase the success transition did not."""
        _insert_event(db, "evt_manual", "payment_completed", {
            "user_id": "alice",
            "product_id": "coins_1200",
            "payment_id": "alice-external",
        })

        assert ledger.process_events() == 1
        grant = ledger.grants.find_by_payment("alice-external")
        assert grant.amount == 1500

    def test_unsupported_event_type_left_waiting(self, ledger, db):
        _insert_event(db, "evt_other", "user_deleted", {"user_id": "alice"})

        assert ledger.process_events() == 0
        assert ledger.outbox.get_event("evt_other").status is EventStatus.WAITING

    def test_failing_event_marked_failed(self, ledger, db):
        _insert_event(db, "evt_bad", "payment_completed", {
            "user_id": "alice",
            "product_id": "no_such_product",
            "payment_id": "alice-bad",
        })

        assert ledger.process_events() == 0
        assert ledger.outbox.get_event("evt_bad").status is EventStatus.FAILED

    def test_storage_error_leaves_event_waiting(self, ledger, monkeypatch):
        payment_id = ledger.create_payment("alice", "coins_600", "manual")
        event_id = ledger.complete_payment("alice", payment_id, PaymentStatus.SUCCESS)

        handle = ledger.outbox._handle_payment_completed
        calls = []

        def locked_once(tx, payload):
            calls.append(payload.payment_id)
            if len(calls) == 1:
                raise StorageError("database is locked")
            return handle(tx, payload)

        monkeypatch.setattr(ledger.outbox, "_handle_payment_completed", locked_once)

        assert ledger.process_events() == 0
        assert ledger.outbox.get_event(event_id).status is EventStatus.WAITING

        assert ledger.process_events() == 1
        assert ledger.outbox.get_event(event_id).status is EventStatus.SUCCEED
        assert len(_purchase_grants(ledger, "alice")) == 1

    def test_unknown_event(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.outbox.process("evt_missing")


class TestReferralBonus:
    """Inviters earn a share of their invitees' purchases."""

    def test_bonus_granted_once(self, db, price_table):
        ledger = QuotaLedger(db=db, price_table=price_table, referrer_lookup={"alice": "bob"}.get)

        payment_id = ledger.create_payment("alice", "coins_1200", "manual")
        event_id = ledger.complete_payment("alice", payment_id, PaymentStatus.SUCCESS)
        ledger.process_events()

        # Redelivery
        db.execute("UPDATE events SET status = ? WHERE event_id = ?", (EventStatus.WAITING.value, event_id))
        ledger.process_events()

        bonuses = [g for g in ledger.grants.list_for_user("bob") if g.source == GrantSource.REFERRAL_BONUS.value]
        assert len(bonuses) == 1
        assert bonuses[0].amount == int(1500 * price_table.invite_payment_gift_rate)
        assert bonuses[0].payment_id == payment_id

    def test_no_inviter_no_bonus(self, db, price_table):
        ledger = QuotaLedger(db=db, price_table=price_table, referrer_lookup=lambda user_id: None)

        payment_id = ledger.create_payment("alice", "coins_1200", "manual")
        ledger.complete_payment("alice", payment_id, PaymentStatus.SUCCESS)
        ledger.process_events()

        assert ledger.grants.find_by_payment(payment_id, GrantSource.REFERRAL_BONUS) is None

    def test_zero_rate_disables_bonus(self, db, price_table):
        table = price_table.with_overrides({"invite_payment_gift_rate": 0})
        ledger = QuotaLedger(db=db, price_table=table, referrer_lookup=lambda user_id: "bob")

        payment_id = ledger.create_payment("alice", "coins_1200", "manual")
        ledger.complete_payment("alice", payment_id, PaymentStatus.SUCCESS)

        assert ledger.process_events() == 1
        assert ledger.summary("bob").remaining == 0
