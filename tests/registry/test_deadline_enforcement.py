# SPDX-License-Identifier: Apache-2.0
"""
Registry Conformance: Deadline semantics.

An expired context fails before any backend call; a live one bounds the
backend call with the remaining budget.
"""

import asyncio
import time

import pytest

from registry_sdk.registry import (
    DeadlineExceeded,
    ListOptions,
    NoopDeadline,
    OperationContext,
)
from tests.mock.mock_registry_adapter import MockRegistryAdapter

pytestmark = pytest.mark.asyncio


class _SlowAdapter(MockRegistryAdapter):
    async def _do_get_namespace(self, name, *, ctx=None):
        await asyncio.sleep(1.0)
        return await super()._do_get_namespace(name, ctx=ctx)


def _expired() -> OperationContext:
    return OperationContext(request_id="r_expired", deadline_ms=int(time.time() * 1000) - 1)


async def test_remaining_budget_is_clamped():
    assert OperationContext().remaining_ms() is None
    assert _expired().remaining_ms() == 0
    ctx = OperationContext.with_timeout(10)
    assert 0 < ctx.remaining_s() <= 10


async def test_expired_context_fails_before_backend(adapter):
    with pytest.raises(DeadlineExceeded):
        await adapter.namespace("hr").get(_expired())
    with pytest.raises(DeadlineExceeded):
        await adapter.namespace("hr").create({}, _expired())
    with pytest.raises(DeadlineExceeded):
        await adapter.namespace("hr").service("s").endpoint("e").delete(_expired())
    assert sum(adapter.calls.values()) == 0


async def test_expired_context_fails_listing(adapter):
    it = adapter.list_namespaces(ListOptions())
    with pytest.raises(DeadlineExceeded):
        await it.next(_expired())
    assert adapter.calls["list_namespaces"] == 0


async def test_slow_backend_is_cut_at_the_deadline():
    adapter = _SlowAdapter()
    await adapter.namespace("hr").create()

    t0 = time.monotonic()
    with pytest.raises(DeadlineExceeded):
        await adapter.namespace("hr").get(OperationContext.with_timeout(0.05), force_refresh=True)
    assert time.monotonic() - t0 < 0.9


async def test_noop_deadline_policy_waits_for_the_backend():
    adapter = _SlowAdapter(deadline_policy=NoopDeadline())
    await adapter.namespace("hr").create()
    ns = await adapter.namespace("hr").get(OperationContext.with_timeout(5), force_refresh=True)
    assert ns.name == "hr"
