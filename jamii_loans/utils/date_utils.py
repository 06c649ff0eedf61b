"""Date manipulation utilities"""

from datetime import datetime, timedelta, timezone

# M-PESA timestamps are in East Africa Time (no DST)
EAT = timezone(timedelta(hours=3), name="EAT")


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def format_mpesa_timestamp(moment: datetime | None = None) -> str:
    """Format a moment as YYYYMMDDHHmmss in East Africa Time"""
    moment = moment or utcnow()
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(EAT).strftime("%Y%m%d%H%M%S")
