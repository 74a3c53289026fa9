# SPDX-License-Identifier: Apache-2.0
"""
Pytest plugin: pluggable registry adapter fixture.

The adapter class is resolved from REGISTRY_ADAPTER
("package.module:ClassName"), defaulting to the in-memory mock adapter, so the
conformance tests under tests/registry can run against any implementation.
"""

from __future__ import annotations

import importlib
import inspect
import os
from typing import Optional

import pytest

from tests.mock.mock_registry_adapter import MockRegistryAdapter

ADAPTER_ENV = "REGISTRY_ADAPTER"
DEFAULT_ADAPTER = "tests.mock.mock_registry_adapter:MockRegistryAdapter"

_resolved: Optional[type] = None


class AdapterResolutionError(RuntimeError):
    """REGISTRY_ADAPTER does not name a usable adapter class."""


def _resolve(target: str) -> type:
    """Import `package.module:ClassName` and return the class."""
    module_path, sep, attr = target.partition(":")
    if not sep or not module_path or not attr:
        raise AdapterResolutionError(f"{ADAPTER_ENV}={target!r} is not of the form 'package.module:ClassName'")

    try:
        found = getattr(importlib.import_module(module_path), attr)
    except (ImportError, AttributeError) as exc:
        raise AdapterResolutionError(f"cannot load {attr!r} from {module_path!r}") from exc

    if not inspect.isclass(found):
        raise AdapterResolutionError(f"{target!r} resolved to {found!r}, which is not a class")
    return found


def _adapter_class() -> type:
    global _resolved
    if _resolved is None:
        _resolved = _resolve(os.getenv(ADAPTER_ENV, DEFAULT_ADAPTER))
    return _resolved


@pytest.fixture
def adapter():
    """Fresh adapter per test (registry state is not shared)."""
    cls = _adapter_class()
    try:
        return cls()
    except TypeError as exc:
        raise AdapterResolutionError(f"{cls.__name__} must be constructible without arguments") from exc


@pytest.fixture
def paged_adapter():
    """Mock adapter with a page size of two."""
    return MockRegistryAdapter(page_size=2)
