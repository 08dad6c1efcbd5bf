# Time helpers: naive UTC timestamps as stored in the database

from datetime import datetime, timedelta, timezone


def utcnow():
    # Current UTC time without tzinfo (matches the DateTime columns)
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(value):
    if value is None:
        return None
    return value.strftime('%Y-%m-%dT%H:%M:%S.%fZ')


def to_millis(value):
    # Milliseconds since the epoch for a naive UTC datetime
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


def from_millis(ms):
    return datetime.fromtimestamp(int(ms) / 1000.0, tz=timezone.utc).replace(tzinfo=None)


def seconds_ago(seconds):
    return utcnow() - timedelta(seconds=seconds)
