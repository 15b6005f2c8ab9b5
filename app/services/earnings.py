# app/services/earnings.py
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from decimal import Decimal
from sqlalchemy.orm import Session

from app.core.exceptions import NotFound
from app.crud import commission as crud_commission
from app.crud import member as crud_member
from app.schemas.member import EarningsBucket, EarningsHistory
from app.utils.dates import as_utc, start_of_month, utcnow

logger = logging.getLogger(__name__)

# Windows longer than this are bucketed by month
DAILY_BUCKET_MAX_DAYS = 90


def _month_starts(start: datetime, end: datetime):
    current = start_of_month(start)
    while current < end:
        yield current
        if current.month == 12:
            current = current.replace(year=current.year + 1, month=1)
        else:
            current = current.replace(month=current.month + 1)


def get_earnings_history(db: Session, member_id: int, days: int = 30, now: datetime | None = None) -> EarningsHistory:
    """
    Member-share earnings of a referrer over the last `days` days, net of
    refunds, bucketed per day (short windows) or per month (long windows).
    Fully reversed commissions are not counted.
    """
    if days < 1:
        raise ValueError("days must be positive")
    if not crud_member.get_member_by_id(db, member_id):
        raise NotFound(f"Member {member_id} not found", details={"member_id": member_id})

    now = as_utc(now) if now else utcnow()
    end = now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
    start = end - timedelta(days=days)
    granularity = "day" if days <= DAILY_BUCKET_MAX_DAYS else "month"

    if granularity == "day":
        starts = [start + timedelta(days=i) for i in range(days)]
    else:
        starts = list(_month_starts(start, end))

    buckets = OrderedDict(
        (s, {"earnings": Decimal("0.00"), "commissions": 0}) for s in starts
    )
    commissions = crud_commission.get_earning_commissions_in_range(db, member_id, start=start, end=end)
    for c in commissions:
        created = as_utc(c.created_at)
        if granularity == "day":
            key = created.replace(hour=0, minute=0, second=0, microsecond=0)
        else:
            key = start_of_month(created)
        buckets[key]["earnings"] += Decimal(c.member_share) - Decimal(c.member_share_reversed or 0)
        buckets[key]["commissions"] += 1

    label_format = "%Y-%m-%d" if granularity == "day" else "%Y-%m"
    items = [
        EarningsBucket(
            period_start=s,
            label=s.strftime(label_format),
            earnings=data["earnings"],
            commissions=data["commissions"],
        )
        for s, data in buckets.items()
    ]
    return EarningsHistory(
        member_id=member_id,
        granularity=granularity,
        start=start,
        end=end,
        total=sum((b.earnings for b in items), Decimal("0.00")),
        buckets=items,
    )
