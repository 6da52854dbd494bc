"""
Tests for the Grant Store and Balance Aggregation
"""

from datetime import datetime, timezone
import pytest

from ledger.errors import InvalidAmountError, NotFoundError
from ledger.grants import BalanceAggregator, GrantStore, check_amount, months_before
from persistence.models import GrantSource


class TestCheckAmount:
    """Amounts must be positive integers."""

    @pytest.mark.parametrize("amount", [0, -1, 1.5, True, "5", None])
    def test_rejects_invalid(self, amount):
        with pytest.raises(InvalidAmountError):
            check_amount(amount)

    def test_accepts_positive_int(self):
        assert check_amount(7) == 7

    def test_invalid_amount_is_value_error(self):
        with pytest.raises(ValueError):
            check_amount(0)


class TestMonthsBefore:
    """Calendar month arithmetic."""

    def test_clamps_day_to_month_end(self):
        moment = datetime(2024, 3, 31, 12, 0, tzinfo=timezone.utc)
        assert months_before(moment, 1) == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)

    def test_crosses_year_boundary(self):
        moment = datetime(2024, 1, 15, tzinfo=timezone.utc)
        assert months_before(moment, 1) == datetime(2023, 12, 15, tzinfo=timezone.utc)


class TestGrantStore:
    """Test grant creation and lookup."""

    def test_create_and_get(self, db, days_from_now):
        store = GrantStore(db)
        expires = days_from_now(30)

        grant_id = store.create_grant("alice", 100, expires, note="welcome")
        grant = store.get(grant_id)

        assert grant_id.startswith("grt_")
        assert grant.user_id == "alice"
        assert grant.amount == 100
        assert grant.remaining == 100
        assert grant.used == 0
        assert grant.note == "welcome"
        assert grant.source == GrantSource.MANUAL.value
        assert grant.period_end == expires
        assert not grant.expired

    def test_get_unknown_grant(self, db):
        with pytest.raises(NotFoundError):
            GrantStore(db).get("grt_missing")

    def test_invalid_amount_writes_nothing(self, db, days_from_now):
        store = GrantStore(db)

        with pytest.raises(InvalidAmountError):
            store.create_grant("alice", 0, days_from_now(30))

        assert store.list_for_user("alice") == []

    def test_payment_grant_is_replay_safe(self, db, days_from_now):
        """A second grant for the same payment returns the first one."""
        store = GrantStore(db)

        first = store.create_grant(
            "alice", 700, days_from_now(30), payment_id="pay-1", source=GrantSource.PURCHASE
        )
        second = store.create_grant(
            "alice", 700, days_from_now(30), payment_id="pay-1", source=GrantSource.PURCHASE
        )

        assert first == second
        assert len(store.list_for_user("alice")) == 1
        assert store.find_by_payment("pay-1").grant_id == first

    def test_same_payment_different_source(self, db, days_from_now):
        """A purchase grant and a referral bonus may share a payment."""
        store = GrantStore(db)

        purchase = store.create_grant(
            "alice", 700, days_from_now(30), payment_id="pay-1", source=GrantSource.PURCHASE
        )
        bonus = store.create_grant(
            "bob", 35, days_from_now(30), payment_id="pay-1", source=GrantSource.REFERRAL_BONUS
        )

        assert purchase != bonus
        assert store.find_by_payment("pay-1", GrantSource.REFERRAL_BONUS).user_id == "bob"

    def test_list_for_user_orders_by_expiry(self, db, days_from_now):
        store = GrantStore(db)
        late = store.create_grant("alice", 10, days_from_now(10))
        early = store.create_grant("alice", 10, days_from_now(1))

        assert [g.grant_id for g in store.list_for_user("alice")] == [early, late]


class TestBalanceAggregator:
    """Test summary and details views."""

    def test_summary_for_unknown_user_is_zero(self, db):
        summary = BalanceAggregator(db).summary("nobody")

        assert summary.granted == 0
        assert summary.remaining == 0
        assert summary.used == 0

    def test_summary_counts_active_grants_only(self, ledger, days_from_now):
        ledger.create_grant("alice", 100, days_from_now(10))
        ledger.create_grant("alice", 50, days_from_now(20))
        ledger.create_grant("alice", 1000, days_from_now(-1))  # already expired
        ledger.create_grant("bob", 77, days_from_now(10))

        ledger.consume("alice", 30)
        summary = ledger.summary("alice")

        assert summary.granted == 150
        assert summary.remaining == 120
        assert summary.used == 30

    def test_details_include_recently_expired(self, ledger, days_from_now):
        active = ledger.create_grant("alice", 100, days_from_now(10))
        recent = ledger.create_grant("alice", 100, days_from_now(-3))
        ledger.create_grant("alice", 100, days_from_now(-70))  # outside the lookback

        details = ledger.details("alice")

        assert [g.grant_id for g in details] == [recent, active]
        assert details[0].expired is True
        assert details[1].expired is False
        assert details[0].to_dict()["expired"] is True

    def test_details_limit(self, db, days_from_now):
        store = GrantStore(db)
        for _ in range(5):
            store.create_grant("alice", 10, days_from_now(10))

        assert len(BalanceAggregator(db, details_limit=3).details("alice")) == 3
        assert len(BalanceAggregator(db).details("alice", limit=2)) == 2
