"""
Data Models for Persistence Layer

Quota grants, debts, usage audit rows, payments and outbox events as stored
in the database.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import json
import uuid

from .database import format_timestamp, parse_timestamp, utcnow


def _load_json(value: Any, default: Any) -> Any:
    # PostgreSQL JSONB columns come back decoded, SQLite TEXT columns do not
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


class PaymentStatus(Enum):
    """Payment state machine. WAITING is the only non-terminal state."""
    WAITING = "waiting"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.WAITING


class EventStatus(Enum):
    """Outbox event processing status."""
    WAITING = "waiting"
    SUCCEED = "succeed"
    FAILED = "failed"


class GrantSource(Enum):
    """Where a grant came from."""
    MANUAL = "manual"
    PURCHASE = "purchase"
    SIGNUP = "signup"
    BIND_PHONE = "bind_phone"
    INVITE = "invite"
    INVITED = "invited"
    REFERRAL_BONUS = "referral_bonus"


EVENT_TYPE_PAYMENT_COMPLETED = "payment_completed"


@dataclass
class QuotaGrant:
    """Persisted quota grant. Active while period_end is in the future."""
    grant_id: str
    user_id: str
    amount: int
    remaining: int
    period_start: datetime
    period_end: datetime
    source: str = GrantSource.MANUAL.value
    note: str = ""
    payment_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def expired(self) -> bool:
        return self.period_end <= utcnow()

    @property
    def used(self) -> int:
        return self.amount - self.remaining

    def to_dict(self) -> Dict[str, Any]:
        return {
            "grant_id": self.grant_id,
            "user_id": self.user_id,
            "amount": self.amount,
            "remaining": self.remaining,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "source": self.source,
            "note": self.note,
            "payment_id": self.payment_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "expired": self.expired,
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.grant_id,
            self.user_id,
            self.amount,
            self.remaining,
            format_timestamp(self.period_start),
            format_timestamp(self.period_end),
            self.source,
            self.note,
            self.payment_id,
            format_timestamp(self.created_at),
            format_timestamp(self.updated_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "QuotaGrant":
        return cls(
            grant_id=row["grant_id"],
            user_id=row["user_id"],
            amount=int(row["amount"]),
            remaining=int(row["remaining"]),
            period_start=parse_timestamp(row["period_start"]),
            period_end=parse_timestamp(row["period_end"]),
            source=row.get("source") or GrantSource.MANUAL.value,
            note=row.get("note") or "",
            payment_id=row.get("payment_id"),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


@dataclass
class QuotaSummary:
    """Point-in-time totals over a user's active grants."""
    granted: int = 0
    remaining: int = 0

    @property
    def used(self) -> int:
        return self.granted - self.remaining

    def to_dict(self) -> Dict[str, Any]:
        return {
            "granted": self.granted,
            "remaining": self.remaining,
            "used": self.used,
        }


@dataclass
class DebtRecord:
    """Immutable record of consumption no active grant could cover."""
    debt_id: str
    user_id: str
    shortfall_amount: int
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "debt_id": self.debt_id,
            "user_id": self.user_id,
            "shortfall_amount": self.shortfall_amount,
            "created_at": self.created_at.isoformat(),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.debt_id,
            self.user_id,
            self.shortfall_amount,
            format_timestamp(self.created_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DebtRecord":
        return cls(
            debt_id=row["debt_id"],
            user_id=row["user_id"],
            shortfall_amount=int(row["shortfall_amount"]),
            created_at=parse_timestamp(row["created_at"]),
        )


@dataclass
class UsageMeta:
    """Caller-supplied context for a debit."""
    tag: str = ""
    models: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"tag": self.tag, "models": list(self.models)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "UsageMeta":
        data = data or {}
        return cls(tag=data.get("tag", ""), models=list(data.get("models") or []))


@dataclass
class UsageRecord:
    """
    One audit row per consume call.

    Invariant: sum(grants_drawn.values()) == amount_debited - debt_amount
    """
    usage_id: str
    user_id: str
    amount_debited: int
    grants_drawn: Dict[str, int] = field(default_factory=dict)
    debt_amount: int = 0
    meta: UsageMeta = field(default_factory=UsageMeta)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def drawn_total(self) -> int:
        return sum(self.grants_drawn.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "usage_id": self.usage_id,
            "user_id": self.user_id,
            "amount_debited": self.amount_debited,
            "grants_drawn": dict(self.grants_drawn),
            "debt_amount": self.debt_amount,
            "metadata": self.meta.to_dict(),
            "created_at": self.created_at.isoformat(),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.usage_id,
            self.user_id,
            self.amount_debited,
            json.dumps(self.grants_drawn),
            self.debt_amount,
            json.dumps(self.meta.to_dict()),
            format_timestamp(self.created_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageRecord":
        grants_drawn = _load_json(row.get("grants_drawn"), {})
        return cls(
            usage_id=row["usage_id"],
            user_id=row["user_id"],
            amount_debited=int(row["amount_debited"]),
            grants_drawn={k: int(v) for k, v in grants_drawn.items()},
            debt_amount=int(row.get("debt_amount") or 0),
            meta=UsageMeta.from_dict(_load_json(row.get("metadata"), {})),
            created_at=parse_timestamp(row["created_at"]),
        )


@dataclass
class Payment:
    """Persisted payment. Created WAITING, moves once to a terminal status."""
    payment_id: str
    user_id: str
    product_id: str
    source: str
    status: PaymentStatus = PaymentStatus.WAITING
    environment: Optional[str] = None
    purchase_at: Optional[datetime] = None
    provider_fields: Dict[str, Any] = field(default_factory=dict)
    note: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "user_id": self.user_id,
            "product_id": self.product_id,
            "source": self.source,
            "status": self.status.value,
            "environment": self.environment,
            "purchase_at": self.purchase_at.isoformat() if self.purchase_at else None,
            "provider_fields": self.provider_fields,
            "note": self.note,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.payment_id,
            self.user_id,
            self.product_id,
            self.source,
            self.status.value,
            self.environment,
            format_timestamp(self.purchase_at) if self.purchase_at else None,
            json.dumps(self.provider_fields) if self.provider_fields else None,
            self.note,
            format_timestamp(self.created_at),
            format_timestamp(self.updated_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Payment":
        return cls(
            payment_id=row["payment_id"],
            user_id=row["user_id"],
            product_id=row["product_id"],
            source=row["source"],
            status=PaymentStatus(row["status"]),
            environment=row.get("environment"),
            purchase_at=parse_timestamp(row.get("purchase_at")),
            provider_fields=_load_json(row.get("provider_fields"), {}),
            note=row.get("note"),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


@dataclass
class PaymentCompletedEvent:
    """Outbox payload written with a payment's success transition."""
    user_id: str
    product_id: str
    payment_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "product_id": self.product_id,
            "payment_id": self.payment_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentCompletedEvent":
        return cls(
            user_id=data["user_id"],
            product_id=data["product_id"],
            payment_id=data["payment_id"],
        )


@dataclass
class OutboxEvent:
    """Persisted outbox event."""
    event_id: str
    event_type: str
    payload: Dict[str, Any]
    status: EventStatus = EventStatus.WAITING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.event_id,
            self.event_type,
            json.dumps(self.payload),
            self.status.value,
            format_timestamp(self.created_at),
            format_timestamp(self.updated_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OutboxEvent":
        return cls(
            event_id=row["event_id"],
            event_type=row["event_type"],
            payload=_load_json(row.get("payload"), {}),
            status=EventStatus(row["status"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


def new_id(prefix: str) -> str:
    """Generate a prefixed opaque identifier, e.g. ``grt_3f2a...``."""
    return f"{prefix}_{uuid.uuid4().hex}"
