"""Daily activity counts for the user statistics chart."""
from __future__ import annotations

from datetime import date, datetime, timedelta, tzinfo
from typing import Dict, Iterable, List, Optional

from .models import AuditRecord

LABEL_FORMAT = "%d/%m/%Y"


def activity_histogram(
    records: Iterable[AuditRecord],
    *,
    now: Optional[datetime] = None,
    days: int = 30,
    tz: Optional[tzinfo] = None,
) -> Dict[str, List]:
    """Count audit records per day over the last ``days`` days, oldest first.

    Days are calendar days in ``tz``, or in the server's local time zone when
    ``tz`` is omitted.
    """

    records = list(records)
    if not records:
        return {"labels": [], "data": []}

    current = now or datetime.now().astimezone()
    today: date = current.astimezone(tz).date()
    counts: Dict[date, int] = {today - timedelta(days=offset): 0 for offset in range(days - 1, -1, -1)}

    for record in records:
        day = record.time.astimezone(tz).date()
        if day in counts:
            counts[day] += 1

    return {
        "labels": [day.strftime(LABEL_FORMAT) for day in counts],
        "data": list(counts.values()),
    }


__all__ = ["activity_histogram"]
