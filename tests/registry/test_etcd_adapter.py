# SPDX-License-Identifier: Apache-2.0
"""
etcd adapter: behavior against an in-process fake of the python-etcd3 client.

The fake keeps a sorted key space and implements only the calls the adapter
makes: get, put, delete, delete_prefix and get_range.
"""

from types import SimpleNamespace
from typing import Dict

import pytest
import yaml

from registry_sdk.registry import (
    EndpointNotFound,
    ListOptions,
    NamespaceNotFound,
    NoClientProvided,
    ServiceNotFound,
)
from registry_sdk.registry import etcd_adapter
from registry_sdk.registry.etcd_adapter import EtcdRegistryAdapter

pytestmark = pytest.mark.asyncio


class FakeEtcdClient:
    def __init__(self) -> None:
        self.data: Dict[str, bytes] = {}
        self.range_calls = 0

    @staticmethod
    def _meta(key: str):
        return SimpleNamespace(key=key.encode("utf-8"))

    def get(self, key):
        if key not in self.data:
            return None, None
        return self.data[key], self._meta(key)

    def put(self, key, value):
        self.data[key] = value.encode("utf-8") if isinstance(value, str) else value

    def delete(self, key):
        return self.data.pop(key, None) is not None

    def delete_prefix(self, prefix):
        for key in [k for k in self.data if k.startswith(prefix)]:
            del self.data[key]

    def get_range(self, range_start, range_end, limit=None):
        self.range_calls += 1
        keys = sorted(k for k in self.data if range_start <= k < range_end)
        if limit:
            keys = keys[:limit]
        for key in keys:
            yield self.data[key], self._meta(key)


@pytest.fixture
def client():
    return FakeEtcdClient()


@pytest.fixture
def etcd(client):
    return EtcdRegistryAdapter(client=client, cache_ttl_s=0)


async def _seed(etcd):
    await etcd.namespace("hr").create({"team": "people"})
    await etcd.namespace("hr").service("payroll").create({"tier": "backend"})
    await etcd.namespace("hr").service("payroll").endpoint("p1").create("10.0.0.1", 8080, {"zone": "a"})


async def test_missing_library_and_client(monkeypatch):
    monkeypatch.setattr(etcd_adapter, "etcd3", None)
    with pytest.raises(NoClientProvided):
        EtcdRegistryAdapter()


async def test_documents_are_stored_as_yaml(etcd, client):
    await _seed(etcd)

    assert yaml.safe_load(client.data["/namespaces/hr"]) == {"name": "hr", "metadata": {"team": "people"}}
    doc = yaml.safe_load(client.data["/namespaces/hr/services/payroll/endpoints/p1"])
    assert doc["address"] == "10.0.0.1"
    assert doc["port"] == 8080

    ep = await etcd.namespace("hr").service("payroll").endpoint("p1").get()
    assert (ep.namespace, ep.service, ep.address, ep.port) == ("hr", "payroll", "10.0.0.1", 8080)
    assert ep.original_object[0] == "/namespaces/hr/services/payroll/endpoints/p1"


async def test_update_overwrites_document(etcd):
    await _seed(etcd)
    svc = await etcd.namespace("hr").service("payroll").update({})
    assert svc.metadata == {}


async def test_missing_objects(etcd):
    with pytest.raises(NamespaceNotFound):
        await etcd.namespace("hr").get()
    with pytest.raises(NamespaceNotFound):
        await etcd.namespace("hr").service("payroll").create()

    await etcd.namespace("hr").create()
    with pytest.raises(ServiceNotFound):
        await etcd.namespace("hr").service("payroll").get()
    with pytest.raises(ServiceNotFound):
        await etcd.namespace("hr").service("payroll").endpoint("p1").get()

    await etcd.namespace("hr").service("payroll").create()
    with pytest.raises(EndpointNotFound):
        await etcd.namespace("hr").service("payroll").endpoint("p1").get()


async def test_delete_removes_subtree(etcd, client):
    await _seed(etcd)
    await etcd.namespace("hr").delete()
    assert client.data == {}


async def test_listing_skips_nested_keys_and_pages(etcd, client):
    await _seed(etcd)
    for name in ("ops", "sales"):
        await etcd.namespace(name).create()

    names = [ns.name for ns in await etcd.list_namespaces(ListOptions(results=2)).collect()]
    assert names == ["hr", "ops", "sales"]
    assert client.range_calls == 3


async def test_listing_services_and_endpoints(etcd):
    await _seed(etcd)
    await etcd.namespace("hr").service("benefits").create()

    services = await etcd.namespace("hr").list_services().collect()
    assert [s.name for s in services] == ["benefits", "payroll"]
    assert all(s.namespace == "hr" for s in services)

    endpoints = await etcd.namespace("hr").service("payroll").list_endpoints(
        ListOptions(cidr="10.0.0.0/24")
    ).collect()
    assert [e.name for e in endpoints] == ["p1"]


async def test_undecodable_documents_are_skipped(etcd, client):
    await etcd.namespace("hr").create()
    client.data["/namespaces/broken"] = b"- just\n- a list\n"
    client.data["/namespaces/garbage"] = b"{unclosed"

    names = [ns.name for ns in await etcd.list_namespaces().collect()]
    assert names == ["hr"]


async def test_orphans_are_kept_by_default(etcd, client):
    client.data["/namespaces/gone/services/s"] = yaml.safe_dump({"name": "s", "metadata": {}}).encode()
    with pytest.raises(NamespaceNotFound):
        await etcd.namespace("gone").service("s").get()
    assert "/namespaces/gone/services/s" in client.data


async def test_orphans_are_deleted_when_enabled(client, caplog):
    etcd = EtcdRegistryAdapter(client=client, cache_ttl_s=0, delete_orphans=True)
    client.data["/namespaces/gone/services/s"] = yaml.safe_dump({"name": "s", "metadata": {}}).encode()
    client.data["/namespaces/gone/services/s/endpoints/e"] = yaml.safe_dump({"name": "e"}).encode()

    with pytest.raises(NamespaceNotFound):
        await etcd.namespace("gone").service("s").get()
    assert client.data == {}
    assert "orphaned" in caplog.text


async def test_cached_service_skips_parent_lookup(client):
    etcd = EtcdRegistryAdapter(client=client)
    await _seed(etcd)
    await etcd.namespace("hr").service("payroll").get()

    del client.data["/namespaces/hr"]

    svc = await etcd.namespace("hr").service("payroll").get()
    assert svc.metadata == {"tier": "backend"}

    await etcd.cache.delete("/namespaces/hr")
    with pytest.raises(NamespaceNotFound):
        await etcd.namespace("hr").service("payroll").get(force_refresh=True)
