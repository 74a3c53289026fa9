# SPDX-License-Identifier: Apache-2.0
"""
Registry Conformance: Lazy pagination iterator.

Covers:
  • One continuous stream over several backend pages
  • IteratorDone is sticky once the backend is exhausted
  • Scope preconditions are raised before any backend call
  • Undecodable records are skipped, page errors end the listing
"""

import pytest

from registry_sdk.registry import (
    EmptyNamespaceName,
    EmptyServiceName,
    IteratorDone,
    ListOptions,
    Namespace,
    NamespaceNotFound,
    NamespaceOperation,
    Page,
    is_iterator_done,
)
from tests.mock.mock_registry_adapter import MockRegistryAdapter

pytestmark = pytest.mark.asyncio


async def _seed(adapter, names):
    for name in names:
        await adapter.namespace(name).create({"idx": name})


async def test_five_items_over_three_pages(paged_adapter):
    await _seed(paged_adapter, ["a", "b", "c", "d", "e"])
    it = paged_adapter.list_namespaces()

    seen = []
    for _ in range(5):
        obj, handle = await it.next()
        seen.append(obj.name)
        assert isinstance(handle, NamespaceOperation)
        assert handle.name == obj.name

    assert seen == ["a", "b", "c", "d", "e"]
    with pytest.raises(IteratorDone):
        await it.next()
    with pytest.raises(IteratorDone):
        await it.next()
    assert paged_adapter.calls["list_namespaces"] == 3


async def test_async_for_and_collect(paged_adapter):
    await _seed(paged_adapter, ["a", "b", "c"])
    names = [obj.name async for obj, _ in paged_adapter.list_namespaces()]
    assert names == ["a", "b", "c"]

    collected = await paged_adapter.list_namespaces(ListOptions(name_prefix="b")).collect()
    assert [n.name for n in collected] == ["b"]


async def test_filter_runs_across_pages(paged_adapter):
    await _seed(paged_adapter, ["alpha", "beta", "gamma", "alps", "delta"])
    it = paged_adapter.list_namespaces(ListOptions(name_prefix="al"))
    names = [obj.name async for obj, _ in it]
    assert names == ["alpha", "alps"]


async def test_scoped_name_is_folded_into_name_in(paged_adapter):
    await _seed(paged_adapter, ["a", "b", "c"])
    objs = await paged_adapter.namespace("b").list().collect()
    assert [o.name for o in objs] == ["b"]


async def test_scoped_name_combines_with_name_prefix(paged_adapter):
    await _seed(paged_adapter, ["hr", "hq", "ops"])
    obj, handle = await paged_adapter.namespace("hr").list(ListOptions(name_prefix="h")).next()
    assert obj.name == "hr"
    assert handle.name == "hr"

    it = paged_adapter.namespace("hr").list(ListOptions(name_prefix="x"))
    with pytest.raises(IteratorDone):
        await it.next()


async def test_scoped_service_and_endpoint_lists_accept_name_prefix(adapter):
    svc = adapter.namespace("hr").service("payroll")
    await adapter.namespace("hr").create()
    await svc.create()
    await adapter.namespace("hr").service("pensions").create()
    await svc.endpoint("p1").create("10.0.0.1", 80)
    await svc.endpoint("p2").create("10.0.0.2", 80)

    services = await svc.list(ListOptions(name_prefix="pay")).collect()
    assert [s.name for s in services] == ["payroll"]
    endpoints = await svc.endpoint("p2").list(ListOptions(name_prefix="p")).collect()
    assert [e.name for e in endpoints] == ["p2"]


async def test_empty_listing_is_done_immediately(adapter):
    with pytest.raises(IteratorDone) as exc_info:
        await adapter.list_namespaces().next()
    assert is_iterator_done(exc_info.value)


async def test_list_services_requires_namespace(adapter):
    it = adapter.namespace("").list_services()
    with pytest.raises(EmptyNamespaceName):
        await it.next()
    assert adapter.calls["list_services"] == 0


async def test_list_endpoints_requires_namespace_and_service(adapter):
    with pytest.raises(EmptyNamespaceName):
        await adapter.namespace("").service("s").list_endpoints().next()
    with pytest.raises(EmptyServiceName):
        await adapter.namespace("hr").service("").list_endpoints().next()
    assert adapter.calls["list_endpoints"] == 0


async def test_listing_children_of_missing_parent_raises(adapter):
    with pytest.raises(NamespaceNotFound):
        await adapter.namespace("ghost").list_services().next()


async def test_undecodable_records_are_skipped(paged_adapter):
    await _seed(paged_adapter, ["a", "c"])
    paged_adapter.store.namespaces["b"] = object()
    names = [obj.name async for obj, _ in paged_adapter.list_namespaces()]
    assert names == ["a", "c"]


async def test_endpoint_listing_yields_scoped_handles(paged_adapter):
    await paged_adapter.namespace("hr").create()
    svc = paged_adapter.namespace("hr").service("payroll")
    await svc.create()
    for i in range(3):
        await svc.endpoint(f"e{i}").create(f"10.0.0.{i + 1}", 8080)

    items = [pair async for pair in svc.list_endpoints(ListOptions(cidr="10.0.0.0/30"))]
    assert [e.name for e, _ in items] == ["e0", "e1", "e2"]
    endpoint, handle = items[1]
    assert (handle.namespace, handle.service, handle.name) == ("hr", "payroll", "e1")
    assert (await handle.get()).deep_equal_to(endpoint)


class _FlakyListAdapter(MockRegistryAdapter):
    def __init__(self, **kwargs):
        super().__init__(page_size=1, **kwargs)
        self.fail_on_call = 2

    async def _do_list_namespaces(self, options, cursor, *, ctx=None):
        if self.calls["list_namespaces"] + 1 == self.fail_on_call:
            self.calls["list_namespaces"] += 1
            raise ConnectionError("backend went away")
        return await super()._do_list_namespaces(options, cursor, ctx=ctx)


async def test_page_error_is_raised_then_listing_is_done():
    adapter = _FlakyListAdapter()
    await _seed(adapter, ["a", "b"])
    it = adapter.list_namespaces()

    obj, _ = await it.next()
    assert obj.name == "a"
    with pytest.raises(ConnectionError):
        await it.next()
    with pytest.raises(IteratorDone):
        await it.next()


class _EmptyPagesAdapter(MockRegistryAdapter):
    EMPTY_PAGES = 3000

    async def _do_list_namespaces(self, options, cursor, *, ctx=None):
        page = int(cursor or 0)
        self.calls["list_namespaces"] += 1
        if page < self.EMPTY_PAGES:
            return Page(items=[], cursor=page + 1, has_more=True)
        return Page(items=[Namespace(name="last")], cursor=None, has_more=False)


async def test_many_empty_pages_do_not_grow_the_stack():
    adapter = _EmptyPagesAdapter()
    obj, _ = await adapter.list_namespaces().next()
    assert obj.name == "last"
    assert adapter.calls["list_namespaces"] == _EmptyPagesAdapter.EMPTY_PAGES + 1
