"""
Error taxonomy shared by the stores and services, plus the conflict retry decorator.
"""

import random
import time
from functools import wraps
from typing import Callable, Optional

from .config import RetryConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class WorkGraphError(Exception):
    """Base exception for the retrieval engine."""
    pass


class ValidationError(WorkGraphError, ValueError):
    """Malformed ingestion payload. Not retried; the caller must fix and resubmit."""
    pass


class StoreConnectionError(WorkGraphError, ConnectionError):
    """A backing store is unreachable or rejected the operation."""
    pass


class StoreTimeoutError(WorkGraphError, TimeoutError):
    """A store query exceeded its time budget."""
    pass


class RaceConditionRetry(WorkGraphError):
    """A concurrent write conflicted with this one; safe to retry."""
    pass


def retry_on_conflict(func: Optional[Callable] = None, *, retry_config: Optional[RetryConfig] = None):
    """Decorator retrying store operations that raise RaceConditionRetry.

    Uses exponential backoff with jitter. The retry budget comes from
    ``self.retry_config`` on the decorated method's instance when present,
    otherwise from ``retry_config`` or the global configuration. Once the
    budget is exhausted the conflict surfaces as StoreConnectionError.
    """

    def decorator(fn):

        @wraps(fn)
        def wrapper(self, *args, **kwargs):
            settings = getattr(self, 'retry_config', None) or retry_config
            if settings is None:
                from .config import config
                settings = config.retry

            attempts = max(1, settings.attempts)
            for attempt in range(attempts):
                try:
                    return fn(self, *args, **kwargs)
                except RaceConditionRetry as e:
                    logger.warning(f'{fn.__name__} attempt {attempt + 1}/{attempts} hit a write conflict: {e}')
                    if attempt < attempts - 1:
                        delay = settings.base_delay * (2**attempt) + random.uniform(0, settings.base_delay)
                        time.sleep(delay)
                    else:
                        raise StoreConnectionError(f'{fn.__name__} failed after {attempts} attempts: {e}') from e

            raise StoreConnectionError(f'{fn.__name__} failed after {attempts} attempts')

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator
