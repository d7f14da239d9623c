"""Tests for ledger call timeout and retry."""

import asyncio

import pytest

from ammkit.core.errors import NotFound, TransportError
from ammkit.ledger.calls import call_ledger, with_timeout


@pytest.mark.asyncio
async def test_with_timeout_converts_timeout():
    with pytest.raises(TransportError) as exc_info:
        await with_timeout(asyncio.sleep(1), 0.01, op="slow")

    assert exc_info.value.context == {"timeout": 0.01, "op": "slow"}


@pytest.mark.asyncio
async def test_call_ledger_retries_transport_errors():
    calls = 0

    async def flaky():
        nonlocal calls
        calls += 1
        if calls < 3:
            raise TransportError("unreachable")
        return "ok"

    result = await call_ledger(flaky, op="read", timeout=1.0, attempts=3, wait=0)

    assert result == "ok"
    assert calls == 3


@pytest.mark.asyncio
async def test_call_ledger_gives_up():
    calls = 0

    async def down():
        nonlocal calls
        calls += 1
        raise TransportError("unreachable")

    with pytest.raises(TransportError):
        await call_ledger(down, op="read", timeout=1.0, attempts=2, wait=0)

    assert calls == 2


@pytest.mark.asyncio
async def test_call_ledger_does_not_retry_other_errors():
    calls = 0

    async def missing():
        nonlocal calls
        calls += 1
        raise NotFound("missing")

    with pytest.raises(NotFound):
        await call_ledger(missing, op="read", timeout=1.0, attempts=3, wait=0)

    assert calls == 1


@pytest.mark.asyncio
async def test_call_ledger_runs_at_least_once():
    async def read():
        return b"data"

    assert await call_ledger(read, op="read", timeout=1.0, attempts=0, wait=0) == b"data"
