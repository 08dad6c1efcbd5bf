# Bounded retry with exponential backoff for transient store errors

import logging
import time

from sqlalchemy.exc import OperationalError

logger = logging.getLogger(__name__)


def call_with_retries(fn, attempts=3, backoff=0.05, retry_on=(OperationalError,),
                      on_retry=None, sleep=time.sleep, label='store call'):
    # Runs fn up to `attempts` times; the last transient error is re-raised
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            if on_retry is not None:
                on_retry(exc)
            if attempt >= attempts:
                raise
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(
                '[RETRY] %s failed: %s, retrying in %.2fs (attempt %d/%d)',
                label, exc.__class__.__name__, delay, attempt, attempts,
            )
            sleep(delay)
    raise ValueError('attempts must be at least 1')
