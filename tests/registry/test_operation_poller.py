# SPDX-License-Identifier: Apache-2.0
"""
Registry Conformance: Asynchronous operation poller.

Covers:
  • Pending states loop until a terminal state
  • FAIL surfaces the backend message
  • Deadlines, per-query timeouts and cancellation are distinguishable
"""

import asyncio

import pytest

from registry_sdk.registry import (
    BadRequest,
    DeadlineExceeded,
    OperationContext,
    OperationFailed,
    OperationPoller,
    OperationState,
    OperationStatus,
    TransientNetwork,
)

pytestmark = pytest.mark.asyncio


def scripted(*states, message=None):
    """Build a query returning the given states in order, counting calls."""
    remaining = list(states)
    calls = {"n": 0}

    async def query():
        calls["n"] += 1
        state = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return OperationStatus(state=state, error_message=message, operation_id="op-1")

    return query, calls


@pytest.fixture
def poller():
    return OperationPoller(tick_s=0.01, query_timeout_s=0.2)


async def test_pending_then_success_takes_three_queries(poller):
    query, calls = scripted(OperationState.PENDING, OperationState.PENDING, OperationState.SUCCESS)
    status = await poller.wait(query)
    assert status.state == OperationState.SUCCESS
    assert calls["n"] == 3


async def test_submitted_counts_as_pending(poller):
    query, calls = scripted(OperationState.SUBMITTED, OperationState.SUCCESS)
    await poller.wait(query)
    assert calls["n"] == 2


async def test_fail_raises_with_backend_message(poller):
    query, _ = scripted(OperationState.PENDING, OperationState.FAIL, message="quota exceeded")
    with pytest.raises(OperationFailed) as exc_info:
        await poller.wait(query)
    assert str(exc_info.value) == "operation failed: quota exceeded"


async def test_unknown_terminal_state_counts_as_success(poller):
    query, _ = scripted("SOMETHING_ELSE")
    status = await poller.wait(query)
    assert status.state == "SOMETHING_ELSE"


async def test_transport_error_aborts_immediately(poller):
    calls = {"n": 0}

    async def query():
        calls["n"] += 1
        raise ConnectionError("reset by peer")

    with pytest.raises(ConnectionError):
        await poller.wait(query)
    assert calls["n"] == 1


async def test_slow_query_without_deadline_is_transient():
    poller = OperationPoller(tick_s=0.01, query_timeout_s=0.02)

    async def query():
        await asyncio.sleep(1)
        return OperationStatus(state=OperationState.SUCCESS)

    with pytest.raises(TransientNetwork):
        await poller.wait(query)


async def test_context_deadline_while_pending(poller):
    query, _ = scripted(OperationState.PENDING)
    ctx = OperationContext.with_timeout(0.08)
    with pytest.raises(DeadlineExceeded):
        await poller.wait(query, ctx=ctx)


async def test_cancellation_propagates(poller):
    query, _ = scripted(OperationState.PENDING)
    task = asyncio.ensure_future(poller.wait(query))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.parametrize("kwargs", [{"tick_s": 0}, {"query_timeout_s": -1}])
async def test_poller_requires_positive_timings(kwargs):
    with pytest.raises(BadRequest):
        OperationPoller(**kwargs)
