import math
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import uuid4 as _uuid4


def uuid4() -> str:
    return str(_uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def transaction_ref(prefix: str) -> str:
    return f"{prefix}-{utcnow():%Y%m%d%H%M%S}-{_uuid4().hex[:8].upper()}"


def total_pages(total: int, limit: int) -> int:
    if limit <= 0:
        return 0
    return math.ceil(total / limit)


def json_default(o):
    if isinstance(o, Decimal):
        return float(o)
    if isinstance(o, (date, datetime)):
        return o.isoformat()
    return str(o)
