"""Bounded retry with linear backoff shared by cache and API call sites."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from .errors import NoRetryError
from .logs import fields

T = TypeVar("T")

logger = logging.getLogger(__name__)


class RetryCancelled(NoRetryError):
    """Raised when the cancel event is set between attempts."""


def call_with_backoff(
    func: Callable[[], T],
    *,
    attempts: int = 10,
    delay: float = 0.1,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    cancel_event: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "",
) -> T:
    """Call *func* until it succeeds or *attempts* run out.

    Attempt ``i`` (zero based) is followed by a pause of ``i * delay`` seconds,
    so the first retry is immediate. Exceptions outside *retry_on* propagate
    straight away; the last retryable exception is re-raised once the budget
    is spent.
    """

    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(attempts):
        if cancel_event is not None and cancel_event.is_set():
            raise RetryCancelled(description or "retry cancelled")
        try:
            return func()
        except retry_on as exc:
            logger.warning(
                "redo_on_transient",
                extra=fields(
                    description=f"iteration {attempt} {description} {exc}".strip(),
                ),
            )
            if attempt + 1 == attempts:
                raise
            sleep(attempt * delay)
    raise RetryCancelled(description or "retry loop ended without a result")


__all__ = ["RetryCancelled", "call_with_backoff"]
