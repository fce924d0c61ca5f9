from __future__ import annotations
from datetime import datetime, tzinfo

from presencebot.utils.tz_time import end_of_day

DATE_FORMAT = "%d/%m/%Y"


def parse_day(text: str, tz: tzinfo) -> datetime | None:
    """Parse dd/mm/yyyy as midnight in tz. None when the text doesn't match."""
    try:
        dt = datetime.strptime(text.strip(), DATE_FORMAT)
    except ValueError:
        return None
    return dt.replace(tzinfo=tz)


def parse_day_range(start_text: str, end_text: str, tz: tzinfo) -> tuple[datetime, datetime] | None:
    """
    Accepts two dd/mm/yyyy dates. The end date is inclusive to 23:59:59.
    Returns None if either date is invalid or the range is reversed.
    """
    start = parse_day(start_text, tz)
    end = parse_day(end_text, tz)
    if start is None or end is None:
        return None
    end = end_of_day(end)
    if end < start:
        return None
    return start, end
