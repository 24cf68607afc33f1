from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)
from .utils import load_json, rules_path

logger = logging.getLogger(__name__)

RULES = load_json(rules_path(), {})

T = TypeVar("T")

_TRANSIENT_STATUS = {408, 425, 429}
_TRANSIENT_TEXT_RE = re.compile(
    r"network|timed? ?out|timeout|connection|temporar|unavailable|database is locked|\b(?:http|status)[ :]*(?:429|5\d\d)\b",
    re.I,
)


@dataclass(frozen=True)
class RetryPolicy:
    retries: int = 3            # extra attempts after the first one
    base_delay: float = 0.3     # seconds
    max_delay: float = 4.0

    @classmethod
    def from_rules(cls) -> "RetryPolicy":
        r = RULES.get("retry") or {}
        return cls(
            retries=int(r.get("retries", cls.retries)),
            base_delay=float(r.get("base_delay", cls.base_delay)),
            max_delay=float(r.get("max_delay", cls.max_delay)),
        )


def _status(e: BaseException) -> Optional[int]:
    for attr in ("status", "status_code"):
        v = getattr(e, attr, None)
        if isinstance(v, int):
            return v
    resp = getattr(e, "response", None)
    v = getattr(resp, "status_code", None)
    return v if isinstance(v, int) else None


def is_transient_error(e: BaseException) -> bool:
    """Network-class failures worth another attempt; data and constraint errors are not."""
    seen = set()
    while e is not None and id(e) not in seen:
        seen.add(id(e))
        if isinstance(e, (ConnectionError, TimeoutError)):
            return True
        status = _status(e)
        if status is not None:
            return status in _TRANSIENT_STATUS or status >= 500
        if _TRANSIENT_TEXT_RE.search(str(e)):
            return True
        e = e.__cause__ or e.__context__
    return False


async def call_with_retry(fn: Callable[[], Awaitable[T]], policy: Optional[RetryPolicy] = None) -> T:
    """
    Awaits fn() with exponential backoff and jitter while the error is transient.
    Only for idempotent calls: a retried plain insert may land twice.
    """
    policy = policy or RetryPolicy.from_rules()
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.retries + 1),
        wait=wait_exponential(multiplier=policy.base_delay, max=policy.max_delay) + wait_random(0, policy.base_delay),
        retry=retry_if_exception(is_transient_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await fn()
    raise AssertionError("unreachable")  # pragma: no cover

