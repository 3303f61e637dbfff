from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from vps_control.core.config import RetryConfig
from vps_control.core.exceptions import TransientProviderError

T = TypeVar("T")

_log = logging.getLogger("vps_control.retry")


def backoff_delay(attempt: int, *, base_seconds: float, factor: float, cap_seconds: float) -> float:
    return min(float(cap_seconds), float(base_seconds) * (float(factor) ** (attempt - 1)))


def call_with_retries(
    fn: Callable[[], T],
    *,
    max_attempts: int,
    base_seconds: float,
    factor: float,
    cap_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    last_exc: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except TransientProviderError as exc:
            last_exc = exc
            if attempt >= max_attempts:
                break
            delay = backoff_delay(attempt, base_seconds=base_seconds, factor=factor, cap_seconds=cap_seconds)
            _log.info(
                "transient provider error, retrying",
                extra={"provider": exc.provider, "attempt": attempt, "delay_s": delay, "error": exc.message},
            )
            sleep(delay)
    assert last_exc is not None
    raise last_exc


def retry_with_config(fn: Callable[[], T], cfg: RetryConfig, *, sleep: Callable[[float], None] = time.sleep) -> T:
    return call_with_retries(
        fn,
        max_attempts=cfg.max_attempts,
        base_seconds=cfg.base_seconds,
        factor=cfg.factor,
        cap_seconds=cfg.cap_seconds,
        sleep=sleep,
    )
