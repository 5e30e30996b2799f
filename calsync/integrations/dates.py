"""Date expressions accepted by messages, the CLI and the HTTP API.

Supports ``now``, ``today``, ``tomorrow``, ``yesterday``, offsets such as
``+30 days``, ``-7 days``, ``+2 weeks``, ``+1 month`` or ``-3 hours``
(relative to now), and absolute ISO 8601 dates or datetimes. Results are
aware UTC.
"""
import re
from datetime import datetime, timedelta

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from calsync.core.timeutil import Clock, to_utc, utcnow
from calsync.errors import ValidationError

_OFFSET_RE = re.compile(
    r"^(?P<sign>[+-])?\s*(?P<amount>\d+)\s*(?P<unit>minute|hour|day|week|month|year)s?$"
)


def _midnight(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def parse_date_expression(expression: str | datetime, now: Clock = utcnow) -> datetime:
    """Resolve a date expression to an aware UTC datetime.

    Raises:
        ValidationError: The expression is empty or not understood.
    """
    if isinstance(expression, datetime):
        return to_utc(expression)
    if not expression or not expression.strip():
        raise ValidationError("Empty date expression")

    text = expression.strip().lower()
    current = now()

    keywords = {
        "now": current,
        "today": _midnight(current),
        "tomorrow": _midnight(current) + timedelta(days=1),
        "yesterday": _midnight(current) - timedelta(days=1),
    }
    if text in keywords:
        return keywords[text]

    match = _OFFSET_RE.match(text)
    if match:
        amount = int(match["amount"])
        if match["sign"] == "-":
            amount = -amount
        return current + relativedelta(**{f"{match['unit']}s": amount})

    try:
        return to_utc(date_parser.isoparse(expression.strip()))
    except ValueError as e:
        raise ValidationError(f"Unrecognized date expression: {expression!r}") from e
