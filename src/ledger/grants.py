"""
Grant Store and Balance Aggregation

A grant is a time-bounded allocation of quota to a user. Grants are written
once, only ever drawn down by the consumption engine, and never deleted:
once period_end passes they become inert history.
"""

import calendar
from datetime import datetime, timedelta
from typing import List, Optional, Union
import structlog

from persistence.database import Database, Transaction, get_database, format_timestamp, parse_timestamp, utcnow
from persistence.models import GrantSource, QuotaGrant, QuotaSummary, new_id

from .errors import InvalidAmountError, NotFoundError

logger = structlog.get_logger()

GRANT_COLUMNS = (
    "grant_id, user_id, amount, remaining, period_start, period_end, "
    "source, note, payment_id, created_at, updated_at"
)


def check_amount(amount: int) -> int:
    """Reject anything that is not a positive integer."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(f"amount must be a positive integer, got {amount!r}")
    return amount


def months_before(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day (Mar 31 - 1 month = Feb 28/29)."""
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class GrantStore:
    """Durable store of quota grants."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create_grant(
        self,
        user_id: str,
        amount: int,
        expires_at: datetime,
        note: str = "",
        payment_id: Optional[str] = None,
        source: Union[GrantSource, str] = GrantSource.MANUAL,
    ) -> str:
        """
        Create a grant and return its id.

        With a payment_id the call is replay-safe: a second call for the same
        (payment_id, source) returns the first grant's id without writing.
        """
        check_amount(amount)
        with self.db.transaction() as tx:
            return self.create_in(
                tx,
                user_id=user_id,
                amount=amount,
                expires_at=expires_at,
                note=note,
                payment_id=payment_id,
                source=source,
            )

    def create_in(
        self,
        tx: Transaction,
        user_id: str,
        amount: int,
        expires_at: datetime,
        note: str = "",
        payment_id: Optional[str] = None,
        source: Union[GrantSource, str] = GrantSource.MANUAL,
    ) -> str:
        """Create a grant inside a transaction the caller already holds."""
        check_amount(amount)
        source_value = source.value if isinstance(source, GrantSource) else source

        if payment_id:
            existing = tx.execute(
                "SELECT grant_id FROM quota_grants WHERE payment_id = ? AND source = ?" + tx.for_update,
                (payment_id, source_value),
            )
            if existing:
                logger.warning(
                    "grant_already_issued",
                    grant_id=existing[0]["grant_id"],
                    payment_id=payment_id,
                    source=source_value,
                )
                return existing[0]["grant_id"]

        now = utcnow()
        grant = QuotaGrant(
            grant_id=new_id("grt"),
            user_id=user_id,
            amount=amount,
            remaining=amount,
            period_start=now,
            period_end=parse_timestamp(expires_at),
            source=source_value,
            note=note or "",
            payment_id=payment_id,
            created_at=now,
            updated_at=now,
        )
        tx.execute(
            f"INSERT INTO quota_grants ({GRANT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            grant.to_db_tuple(),
        )

        logger.info(
            "quota_granted",
            grant_id=grant.grant_id,
            user_id=user_id,
            amount=amount,
            expires_at=grant.period_end.isoformat(),
            source=source_value,
            payment_id=payment_id,
        )
        return grant.grant_id

    def get(self, grant_id: str) -> QuotaGrant:
        """Get a grant by ID."""
        results = self.db.execute(
            f"SELECT {GRANT_COLUMNS} FROM quota_grants WHERE grant_id = ?",
            (grant_id,)
        )
        if not results:
            raise NotFoundError(f"grant {grant_id} not found")
        return QuotaGrant.from_row(results[0])

    def find_by_payment(self, payment_id: str, source: Union[GrantSource, str] = GrantSource.PURCHASE) -> Optional[QuotaGrant]:
        """Get the grant a payment funded, if any."""
        source_value = source.value if isinstance(source, GrantSource) else source
        results = self.db.execute(
            f"SELECT {GRANT_COLUMNS} FROM quota_grants WHERE payment_id = ? AND source = ?",
            (payment_id, source_value)
        )
        return QuotaGrant.from_row(results[0]) if results else None

    def list_for_user(self, user_id: str) -> List[QuotaGrant]:
        """All grants for a user, expired ones included, soonest-to-expire first."""
        results = self.db.execute(
            f"SELECT {GRANT_COLUMNS} FROM quota_grants WHERE user_id = ? "
            "ORDER BY period_end ASC, created_at ASC, grant_id ASC",
            (user_id,)
        )
        return [QuotaGrant.from_row(r) for r in results]


class BalanceAggregator:
    """Point-in-time views over a user's grants."""

    def __init__(self, db: Optional[Database] = None, details_limit: int = 100):
        self.db = db or get_database()
        self.details_limit = details_limit

    def summary(self, user_id: str) -> QuotaSummary:
        """
        Sum amount and remaining over active grants (period_end > now).

        Users without grants get a zero summary.
        """
        results = self.db.execute(
            """SELECT
                COALESCE(SUM(amount), 0) AS granted,
                COALESCE(SUM(remaining), 0) AS remaining
               FROM quota_grants WHERE user_id = ? AND period_end > ?""",
            (user_id, format_timestamp(utcnow()))
        )
        if not results:
            return QuotaSummary()

        row = results[0]
        return QuotaSummary(
            granted=int(row.get("granted") or 0),
            remaining=int(row.get("remaining") or 0),
        )

    def details(
        self,
        user_id: str,
        lookback_months: int = 1,
        limit: Optional[int] = None,
    ) -> List[QuotaGrant]:
        """
        Active grants plus those that expired within the lookback window,
        most recent first. Each grant carries an ``expired`` flag.
        """
        since = months_before(utcnow(), lookback_months)
        results = self.db.execute(
            f"SELECT {GRANT_COLUMNS} FROM quota_grants WHERE user_id = ? AND period_end > ? "
            "ORDER BY created_at DESC, grant_id DESC LIMIT ?",
            (user_id, format_timestamp(since), limit or self.details_limit)
        )
        return [QuotaGrant.from_row(r) for r in results]


def expires_in(days: int, start: Optional[datetime] = None) -> datetime:
    """Expiry ``days`` from ``start`` (default now)."""
    return (start or utcnow()) + timedelta(days=days)
