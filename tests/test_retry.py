from __future__ import annotations

import asyncio
import warnings

import pytest

from loanimport.retry import RetryPolicy, call_with_retry, is_transient_error
from loanimport.store import StoreError

NO_WAIT = RetryPolicy(retries=3, base_delay=0.0, max_delay=0.0)


class _HttpError(Exception):
    def __init__(self, status: int):
        super().__init__(f"status {status}")
        self.status = status


def _wrapped_connection_error() -> StoreError:
    try:
        try:
            raise ConnectionError("reset by peer")
        except ConnectionError as e:
            raise StoreError("routes lookup failed") from e
    except StoreError as e:
        return e


@pytest.mark.parametrize(
    "exc, expected",
    [
        (ConnectionError(), True),
        (TimeoutError(), True),
        (_HttpError(503), True),
        (_HttpError(429), True),
        (_HttpError(400), False),
        (StoreError("network unreachable"), True),
        (StoreError("UNIQUE constraint failed: routes.name"), False),
        (ValueError("invalid term"), False),
    ],
)
def test_is_transient_error(exc, expected) -> None:
    assert is_transient_error(exc) is expected


def test_cause_chain_is_inspected() -> None:
    assert is_transient_error(_wrapped_connection_error()) is True


def test_transient_errors_are_retried() -> None:
    calls = {"n": 0}

    async def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise ConnectionError("timeout")
        return 7

    assert asyncio.run(call_with_retry(flaky, NO_WAIT)) == 7
    assert calls["n"] == 3


def test_other_errors_are_raised_at_once() -> None:
    calls = {"n": 0}

    async def broken():
        calls["n"] += 1
        raise ValueError("bad row")

    with pytest.raises(ValueError):
        asyncio.run(call_with_retry(broken, NO_WAIT))
    assert calls["n"] == 1


def test_gives_up_after_the_last_attempt() -> None:
    calls = {"n": 0}

    async def down():
        calls["n"] += 1
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        asyncio.run(call_with_retry(down, RetryPolicy(retries=1, base_delay=0.0, max_delay=0.0)))
    assert calls["n"] == 2


def test_policy_from_rules_has_defaults() -> None:
    p = RetryPolicy.from_rules()
    assert p.retries >= 0
    assert p.base_delay >= 0


def test_backoff_raises_no_library_warnings() -> None:
    calls = {"n": 0}

    async def flaky():
        calls["n"] += 1
        if calls["n"] < 2:
            raise ConnectionError("reset")
        return "ok"

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        assert asyncio.run(call_with_retry(flaky, RetryPolicy(retries=2, base_delay=0.001, max_delay=0.01))) == "ok"
    assert calls["n"] == 2
