from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return ``value`` as an aware UTC datetime (SQLite hands back naive ones)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value):
    """Parse the timestamp formats providers send.

    Accepts datetimes, ISO 8601 strings (with or without ``Z``), RFC 2822
    strings as used by the Twilio REST API, and epoch values in seconds or
    milliseconds. Returns an aware UTC datetime, or None when the value is
    empty or unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10_000_000_000 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    text = str(value).strip()
    if text.isdigit():
        return parse_timestamp(int(text))
    try:
        return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass
    try:
        return as_utc(datetime.strptime(text, "%a, %d %b %Y %H:%M:%S %z"))
    except ValueError:
        return None
