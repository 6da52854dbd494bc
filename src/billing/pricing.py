"""
Price Table

Coin pricing for AI vendors, purchasable products and gift amounts.

The table is loaded once at startup (defaults, optionally overridden by a JSON
file) and injected into the components that need it. It is immutable after
loading, so requests never share mutable pricing state.
"""

import json
import math
import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple
import structlog

from persistence.database import utcnow

logger = structlog.get_logger()


class ExpirePolicy(Enum):
    """How long a purchased grant stays valid."""
    NEVER = "never"
    WEEK = "week"
    TWO_WEEKS = "2week"
    MONTH = "month"
    THREE_MONTHS = "3month"
    SIX_MONTHS = "6month"
    YEAR = "year"

    @property
    def days(self) -> int:
        return _EXPIRE_POLICY_DAYS[self]

    @property
    def text(self) -> str:
        return "permanent" if self is ExpirePolicy.NEVER else f"{self.days} days"

    def expires_at(self, start: Optional[datetime] = None) -> datetime:
        return (start or utcnow()) + timedelta(days=self.days)


_EXPIRE_POLICY_DAYS = {
    ExpirePolicy.NEVER: 365 * 100,
    ExpirePolicy.WEEK: 7,
    ExpirePolicy.TWO_WEEKS: 14,
    ExpirePolicy.MONTH: 30,
    ExpirePolicy.THREE_MONTHS: 90,
    ExpirePolicy.SIX_MONTHS: 180,
    ExpirePolicy.YEAR: 365,
}


@dataclass(frozen=True)
class Product:
    """A purchasable quota package."""
    id: str
    name: str
    quota: int
    retail_price: int  # Minor currency units
    expire_policy: ExpirePolicy = ExpirePolicy.NEVER
    recommend: bool = False
    description: str = ""

    def expires_at(self, start: Optional[datetime] = None) -> datetime:
        return self.expire_policy.expires_at(start)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "quota": self.quota,
            "retail_price": self.retail_price,
            "expire_policy": self.expire_policy.value,
            "expire_policy_text": self.expire_policy.text,
            "recommend": self.recommend,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Product":
        quota = int(data["quota"])
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            quota=quota,
            retail_price=int(data.get("retail_price", quota)),
            expire_policy=ExpirePolicy(data.get("expire_policy", ExpirePolicy.NEVER.value)),
            recommend=bool(data.get("recommend", False)),
            description=data.get("description") or describe_quota(quota),
        )


def describe_quota(quota: int) -> str:
    multiple = quota / 100.0
    return f"About {30 * multiple:.0f} chats (about {2 * multiple:.0f} with GPT-4)"


def price_to_coins(price: float, service_fee_rate: float = 0.0) -> int:
    """Convert a vendor price to coins: ceil(price * 100 * (1 + fee))."""
    return int(math.ceil(round(price * 100 * (1 + service_fee_rate), 6)))


DEFAULT_COIN_TABLES: Dict[str, Dict[str, int]] = {
    "openai": {
        # Per 1K tokens
        "gpt-3.5-turbo": 3,
        "gpt-3.5-turbo-16k": 5,
        "gpt-4": 45,
        "gpt-4-32k": 90,
        # Per image
        "dall-e": 50,
    },
    "anthropic": {
        "claude-instant-1": 5,
        "claude-2": 25,
    },
    "stabilityai": {
        "default": 300,
        "image-step30-512x512": 20,
        "image-step30-768x768": 30,
        "image-step30-1024x1024": 50,
    },
    "deepai": {"default": 30},
}

DEFAULT_PRODUCTS: Tuple[Product, ...] = (
    Product("coins_100", "Starter pack", 50, 100, ExpirePolicy.WEEK, description=describe_quota(50)),
    Product("coins_600", "700 coins", 700, 600, ExpirePolicy.MONTH, description=describe_quota(700)),
    Product("coins_1200", "1500 coins", 1500, 1200, ExpirePolicy.MONTH, description=describe_quota(1500)),
    Product("coins_3800", "5000 coins", 5000, 3800, ExpirePolicy.THREE_MONTHS, recommend=True, description=describe_quota(5000)),
    Product("coins_6800", "10000 coins", 10000, 6800, ExpirePolicy.SIX_MONTHS, description=describe_quota(10000)),
)


@dataclass(frozen=True)
class PriceTable:
    """Immutable pricing configuration."""
    coin_tables: Mapping[str, Mapping[str, int]] = field(
        default_factory=lambda: _freeze_tables(DEFAULT_COIN_TABLES)
    )
    products: Tuple[Product, ...] = DEFAULT_PRODUCTS
    free_models: Tuple[str, ...] = ()
    signup_gift_coins: int = 0
    bind_phone_gift_coins: int = 50
    invite_gift_coins: int = 100
    invited_gift_coins: int = 100
    invite_payment_gift_rate: float = 0.05
    service_fee_rate: float = 0.0

    # --- Loading ---------------------------------------------------------

    @classmethod
    def load(cls, path: Optional[str] = None) -> "PriceTable":
        """
        Load the table from a JSON file (or PRICE_TABLE_PATH).

        Coin tables are merged over the defaults; a non-empty product list
        replaces the default products.
        """
        path = path or os.environ.get("PRICE_TABLE_PATH")
        table = cls()
        if not path:
            return table

        data = json.loads(Path(path).read_text(encoding="utf-8"))
        table = table.with_overrides(data)
        logger.info(
            "price_table_loaded",
            path=path,
            products=len(table.products),
            vendors=sorted(table.coin_tables),
        )
        return table

    def with_overrides(self, data: Dict[str, Any]) -> "PriceTable":
        """Return a new table with values from ``data`` applied."""
        merged = {vendor: dict(models) for vendor, models in self.coin_tables.items()}
        for vendor, models in (data.get("coin_tables") or {}).items():
            merged.setdefault(vendor, {}).update({k: int(v) for k, v in models.items()})

        products = self.products
        if data.get("products"):
            products = tuple(Product.from_dict(p) for p in data["products"])

        changes: Dict[str, Any] = {
            "coin_tables": _freeze_tables(merged),
            "products": products,
        }
        if "free_models" in data:
            changes["free_models"] = tuple(data["free_models"] or ())
        for key in (
            "signup_gift_coins",
            "bind_phone_gift_coins",
            "invite_gift_coins",
            "invited_gift_coins",
        ):
            if key in data:
                changes[key] = int(data[key])
        for key in ("invite_payment_gift_rate", "service_fee_rate"):
            if key in data:
                changes[key] = float(data[key])

        return replace(self, **changes)

    # --- Lookups ---------------------------------------------------------

    def get_product(self, product_id: str) -> Optional[Product]:
        for product in self.products:
            if product.id == product_id:
                return product
        return None

    def is_free_model(self, model_id: str) -> bool:
        """Free models are matched without their ``vendor:`` prefix."""
        return model_id.split(":", 1)[-1] in self.free_models

    def text_coins(self, model: str, tokens: int, vendor: str = "openai") -> int:
        """Coins for ``tokens`` tokens of a per-1K-token model."""
        unit = self.coin_tables.get(vendor, {}).get(model)
        if unit is None:
            raise KeyError(f"no coin price for {vendor}/{model}")
        return int(math.ceil(unit * tokens / 1000.0))

    def tokens_for_coins(self, model: str, coins: int, vendor: str = "openai") -> int:
        unit = self.coin_tables.get(vendor, {}).get(model)
        if not unit:
            return 0
        return int(math.ceil(coins / unit * 1000.0))

    def image_coins(self, vendor: str, key: str = "default") -> int:
        """Per-image price, falling back to the vendor's ``default`` entry."""
        table = self.coin_tables.get(vendor, {})
        if key in table:
            return table[key]
        if "default" in table:
            return table["default"]
        raise KeyError(f"no coin price for {vendor}/{key}")

    def referral_bonus(self, quota: int) -> int:
        return int(self.invite_payment_gift_rate * quota)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "coin_tables": {v: dict(m) for v, m in self.coin_tables.items()},
            "products": [p.to_dict() for p in self.products],
            "free_models": list(self.free_models),
            "signup_gift_coins": self.signup_gift_coins,
            "bind_phone_gift_coins": self.bind_phone_gift_coins,
            "invite_gift_coins": self.invite_gift_coins,
            "invited_gift_coins": self.invited_gift_coins,
            "invite_payment_gift_rate": self.invite_payment_gift_rate,
        }


def _freeze_tables(tables: Dict[str, Dict[str, int]]) -> Mapping[str, Mapping[str, int]]:
    return MappingProxyType({vendor: MappingProxyType(dict(models)) for vendor, models in tables.items()})
