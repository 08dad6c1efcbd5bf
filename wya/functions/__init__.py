# Functions package

from wya.functions.text import normalize_content, snippet
from wya.functions.timeutils import utcnow, to_iso, to_millis, from_millis, seconds_ago

__all__ = [
    'normalize_content', 'snippet',
    'utcnow', 'to_iso', 'to_millis', 'from_millis', 'seconds_ago'
]
