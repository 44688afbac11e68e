from __future__ import annotations

import logging
import time
from typing import Any, Callable, Sequence

from .errors import UpstreamTransientError


logger = logging.getLogger(__name__)

# Four retries after the first attempt.
TRANSIENT_RETRY_DELAYS_SECONDS: tuple[float, ...] = (0.1, 0.2, 0.4, 0.8)


def call_with_retry(
    service_name: str,
    fn: Callable[..., Any],
    *args: Any,
    delays: Sequence[float] = TRANSIENT_RETRY_DELAYS_SECONDS,
    sleep: Callable[[float], None] | None = None,
    **kwargs: Any,
) -> Any:
    """Run ``fn`` and retry on :class:`UpstreamTransientError` with the given backoff delays.

    Any other exception propagates immediately. When the retries are used up the
    last transient error is re-raised.
    """
    attempts = len(delays) + 1
    for attempt in range(1, attempts + 1):
        try:
            return fn(*args, **kwargs)
        except UpstreamTransientError as exc:
            if attempt >= attempts:
                logger.error("%s failed after %s attempts: %s", service_name, attempts, exc)
                raise
            delay = delays[attempt - 1]
            logger.warning(
                "%s call failed (%s/%s): %s. Retrying in %sms.",
                service_name,
                attempt,
                attempts,
                exc,
                int(delay * 1000),
            )
            (sleep or time.sleep)(delay)
    raise AssertionError("unreachable")
