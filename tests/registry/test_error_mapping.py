# SPDX-License-Identifier: Apache-2.0
"""
Registry Conformance: Error taxonomy.

Covers:
  • Stable machine-readable codes and default messages
  • asdict() serialization with sorted details
  • Predicates that look through the __cause__ chain
"""

import pytest

from registry_sdk.registry import (
    AlreadyExists,
    BadRequest,
    DeadlineExceeded,
    EmptyNamespaceName,
    EndpointAlreadyExists,
    InvalidCIDR,
    IteratorDone,
    NamespaceNotFound,
    NotFound,
    OperationFailed,
    RegistryAdapterError,
    ServiceNotFound,
    TransientNetwork,
    is_already_exists,
    is_iterator_done,
    is_not_found,
)


@pytest.mark.parametrize(
    "cls,base,code",
    [
        (NamespaceNotFound, NotFound, "NAMESPACE_NOT_FOUND"),
        (ServiceNotFound, NotFound, "SERVICE_NOT_FOUND"),
        (EndpointAlreadyExists, AlreadyExists, "ENDPOINT_ALREADY_EXISTS"),
        (EmptyNamespaceName, BadRequest, "EMPTY_NAMESPACE_NAME"),
        (InvalidCIDR, BadRequest, "INVALID_CIDR"),
        (IteratorDone, RegistryAdapterError, "ITERATOR_DONE"),
        (OperationFailed, RegistryAdapterError, "OPERATION_FAILED"),
        (TransientNetwork, RegistryAdapterError, "TRANSIENT_NETWORK"),
        (DeadlineExceeded, RegistryAdapterError, "DEADLINE_EXCEEDED"),
    ],
)
def test_error_codes_and_hierarchy(cls, base, code):
    err = cls()
    assert isinstance(err, base)
    assert err.code == code
    assert err.message
    assert str(err) == err.message


def test_explicit_message_and_code_override_defaults():
    err = TransientNetwork("etcd unreachable", code="UNAVAILABLE", details={"host": "h"})
    assert err.message == "etcd unreachable"
    assert err.code == "UNAVAILABLE"
    assert err.details == {"host": "h"}


def test_asdict_sorts_details():
    err = ServiceNotFound(details={"service": "payroll", "namespace": "hr"})
    d = err.asdict()
    assert d["code"] == "SERVICE_NOT_FOUND"
    assert list(d["details"]) == ["namespace", "service"]


def test_predicates_walk_the_cause_chain():
    try:
        try:
            raise NamespaceNotFound()
        except NamespaceNotFound as inner:
            raise RuntimeError("wrapped") from inner
    except RuntimeError as outer:
        wrapped = outer

    assert is_not_found(wrapped)
    assert not is_already_exists(wrapped)
    assert not is_iterator_done(wrapped)


def test_predicates_on_plain_values():
    assert is_already_exists(EndpointAlreadyExists())
    assert is_iterator_done(IteratorDone())
    assert not is_not_found(None)
    assert not is_not_found(ValueError("x"))
