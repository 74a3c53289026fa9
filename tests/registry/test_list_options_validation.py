# SPDX-License-Identifier: Apache-2.0
"""
Registry Conformance: List option validation.

Invalid combinations are reported on the first next() of a listing, before
any backend call.
"""

import pytest

from registry_sdk.registry import (
    AddressFamily,
    BadRequest,
    EmptyMetadataKey,
    IncompatibleAddressFilters,
    IncompatibleMetadataFilters,
    IncompatibleNameFilters,
    InvalidCIDR,
    InvalidPort,
    InvalidPortRange,
    InvalidResultsNumber,
    ListOptions,
)

pytestmark = pytest.mark.asyncio


@pytest.mark.parametrize(
    "options, error",
    [
        (ListOptions(results=0), InvalidResultsNumber),
        (ListOptions(results=-3), InvalidResultsNumber),
        (ListOptions(name_in=("a",), name_prefix="a"), IncompatibleNameFilters),
        (ListOptions(no_metadata=True, metadata={"k": "v"}), IncompatibleMetadataFilters),
        (ListOptions(metadata={"": "v"}), EmptyMetadataKey),
        (ListOptions(cidr="10.0.0.0/33"), InvalidCIDR),
        (ListOptions(cidr="nope"), InvalidCIDR),
        (ListOptions(cidr="10.0.0.0/8", address_family=AddressFamily.IPV4), IncompatibleAddressFilters),
        (ListOptions(address_family="ipv5"), BadRequest),
        (ListOptions(port_in=(70000,)), InvalidPort),
        (ListOptions(port_ranges=((90, 80),)), InvalidPortRange),
        (ListOptions(port_ranges=((1, 70000),)), InvalidPortRange),
    ],
)
async def test_invalid_options_raise_on_first_next(adapter, options, error):
    await adapter.namespace("hr").create()
    it = adapter.list_namespaces(options)
    with pytest.raises(error) as exc_info:
        await it.next()
    assert isinstance(exc_info.value, BadRequest)
    assert adapter.calls["list_namespaces"] == 0


async def test_valid_options_pass_validation():
    ListOptions(
        results=10,
        name_prefix="a",
        metadata={"k": ""},
        cidr="10.0.0.0/8",
        port_in=(0, 80),
        port_ranges=((1, 65535),),
    ).validate()


async def test_with_name_in_appends_without_duplicates():
    base = ListOptions(name_in=("a",))
    extended = base.with_name_in("b", "a")
    assert extended.name_in == ("a", "b")
    assert base.name_in == ("a",)


async def test_page_size_defaults():
    assert ListOptions().page_size() == 50
    assert ListOptions().page_size(7) == 7
    assert ListOptions(results=3).page_size(7) == 3
