# app/schemas/ledger.py
from decimal import Decimal
from pydantic import BaseModel

from app.schemas.commission import Commission


class RefundShares(BaseModel):
    """What one refund took back from each party."""
    upstream_refund_id: str
    refund_amount: Decimal
    member_share_reversed: Decimal
    creator_share_reversed: Decimal
    platform_share_reversed: Decimal


class LedgerResult(BaseModel):
    """Outcome of one ledger write. `commission` is the stored row, new or pre-existing."""
    outcome: str
    commission: Commission
    refund: RefundShares | None = None
    # Referrer counters before this write, used for incremental rank updates
    previous_lifetime_earnings: Decimal | None = None
    previous_total_referred: int | None = None
