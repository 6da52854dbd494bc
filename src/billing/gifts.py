"""
Gift Grants

Promotional quota for signing up, binding a phone number and inviting
friends. Amounts come from the price table; a zero amount disables the gift.
"""

from datetime import timedelta
from typing import Dict, Optional
import structlog

from ledger.grants import GrantStore
from persistence.database import utcnow
from persistence.models import GrantSource

from .pricing import PriceTable

logger = structlog.get_logger()


class GiftService:
    """Issues gift grants."""

    def __init__(
        self,
        grant_store: GrantStore,
        price_table: Optional[PriceTable] = None,
        expiry_days: int = 30,
    ):
        self.grant_store = grant_store
        self.price_table = price_table or PriceTable()
        self.expiry_days = expiry_days

    def _grant(self, user_id: str, amount: int, source: GrantSource, note: str) -> Optional[str]:
        if amount <= 0:
            logger.debug("gift_disabled", user_id=user_id, source=source.value)
            return None
        return self.grant_store.create_grant(
            user_id=user_id,
            amount=amount,
            expires_at=utcnow() + timedelta(days=self.expiry_days),
            note=note,
            source=source,
        )

    def grant_signup_gift(self, user_id: str) -> Optional[str]:
        return self._grant(user_id, self.price_table.signup_gift_coins, GrantSource.SIGNUP, "Signup gift")

    def grant_bind_phone_gift(self, user_id: str) -> Optional[str]:
        return self._grant(user_id, self.price_table.bind_phone_gift_coins, GrantSource.BIND_PHONE, "Phone binding gift")

    def grant_invite_gifts(self, inviter_id: str, invitee_id: str) -> Dict[str, Optional[str]]:
        """Reward both sides of an invitation."""
        return {
            "inviter": self._grant(
                inviter_id, self.price_table.invite_gift_coins, GrantSource.INVITE, f"Invited {invitee_id}"
            ),
            "invitee": self._grant(
                invitee_id, self.price_table.invited_gift_coins, GrantSource.INVITED, f"Invited by {inviter_id}"
            ),
        }
