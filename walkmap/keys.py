"""Identity keys for listen events.

A listen is identified by its track id and the second it started. Sources
report time with different precision (Spotify's ``played_at`` carries
milliseconds, progress-based estimates drift by a few hundred), so both sides
are rounded to the nearest whole second before comparison.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime, or None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith('Z') or text.endswith('z'):
            text = text[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_epoch_ms(value) -> Optional[int]:
    dt = parse_timestamp(value)
    if dt is None:
        return None
    return (dt - EPOCH) // timedelta(milliseconds=1)


def iso_from_epoch_ms(ms: int) -> str:
    """Serialize epoch milliseconds as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    dt = EPOCH + timedelta(milliseconds=int(ms))
    return dt.strftime('%Y-%m-%dT%H:%M:%S.') + f"{dt.microsecond // 1000:03d}Z"


def round_ms_to_second(ms: int) -> int:
    # half up, matching Math.round on the client side
    return ((int(ms) + 500) // 1000) * 1000


def normalize_timestamp(value) -> str:
    """Round a timestamp to the nearest second in canonical ISO form.

    Unparseable input comes back trimmed but otherwise untouched.
    """
    try:
        ms = to_epoch_ms(value)
        if ms is None:
            return str(value if value is not None else '').strip()
        return iso_from_epoch_ms(round_ms_to_second(ms))
    except (OverflowError, ValueError, TypeError):
        return str(value).strip()


def normalize_key(track_id: str, timestamp) -> str:
    return f"{(track_id or '').strip()}-{normalize_timestamp(timestamp)}"
