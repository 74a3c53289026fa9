# registry_sdk/registry/registry_base.py
# SPDX-License-Identifier: Apache-2.0
"""
Registry SDK: Service Registry Protocol V1.0

Purpose
-------
A stable, vendor-neutral API for hierarchical service discovery
(Namespace -> Service -> Endpoint) over interchangeable, eventually
consistent backends: etcd, AWS Cloud Map and Google Cloud Service Directory.

Callers write backend-agnostic code against scoped operation handles:

    adapter = EtcdRegistryAdapter(client=etcd_client)

    ns = await adapter.namespace("hr").create({"team": "people"})
    svc = adapter.namespace("hr").service("payroll")
    await svc.create({"tier": "backend"})
    await svc.endpoint("payroll-1").create("10.10.10.1", 8080, {})

    async for endpoint, handle in svc.list_endpoints(ListOptions(cidr="10.10.10.0/24")):
        ...

This file provides:

- The resource model (Namespace, Service, Endpoint) with value semantics
- The normalized error taxonomy with predicates for not-found / exists / done
- A stateless predicate filter engine (ListOptions.filter)
- A TTL object cache with hierarchical keys and a secondary identity index
- A lazy pagination iterator presenting one continuous stream per listing
- A bounded poller for backends with asynchronous mutations
- BaseRegistryAdapter: validation, caching, deadlines and metrics around
  per-backend `_do_*` hooks

Design Philosophy
-----------------
- Async-first: every operation is a coroutine that runs to completion before
  returning. No background tasks are created.
- Backend-agnostic engine: adapters implement vendor calls and conversions,
  the base class owns caching, filtering and pagination semantics.
- Cache is a latency optimization only and never changes observable results.
- Errors are propagated to the immediate caller, never logged and swallowed.

Deliberate Non-Goals
--------------------
- No strong consistency across backends
- No transactional multi-object mutation
- No network retry/backoff beyond the async-operation poll loop

Versioning
----------
Follow SemVer against REGISTRY_PROTOCOL_VERSION. Minor versions are strictly additive.
"""

from __future__ import annotations

import asyncio
import enum
import functools
import hashlib
import ipaddress
import logging
import os
import random
import string
import time
from dataclasses import dataclass, field, replace
from typing import (
    Any,
    Awaitable,
    Callable,
    ClassVar,
    Dict,
    Generic,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    TypeVar,
    Union,
)

REGISTRY_PROTOCOL_VERSION = "1.0.0"
REGISTRY_PROTOCOL_ID = "registry/v1.0"
LOG = logging.getLogger(__name__)

DEFAULT_LIST_RESULTS = 50
DEFAULT_CACHE_TTL_S = 300.0
DEFAULT_IDENTITY_TTL_S = 3600.0
DEFAULT_CACHE_CLEANUP_S = 600.0
DEFAULT_POLL_TICK_S = 2.0
DEFAULT_POLL_QUERY_TIMEOUT_S = 3.0

MIN_PORT = 1
MAX_PORT = 65535

PATH_NAMESPACES = "namespaces"
PATH_SERVICES = "services"
PATH_ENDPOINTS = "endpoints"

IDENTITY_ID = "id"
IDENTITY_ARN = "arn"

T = TypeVar("T")

# =============================================================================
# Resource Model
# =============================================================================


@dataclass
class Namespace:
    """
    Top level grouping of services (tenant-like).

    Attributes:
        name: Unique name within the registry
        metadata: Unordered string-to-string map
        original_object: Backend-native payload, shared by reference and never
            compared, cloned or filtered on
    """
    name: str
    metadata: Dict[str, str] = field(default_factory=dict)
    original_object: Any = field(default=None, repr=False, compare=False)

    kind: ClassVar[str] = "namespace"

    def __post_init__(self) -> None:
        if self.metadata is None:
            self.metadata = {}

    def deep_equal_to(self, other: Any) -> bool:
        """Compare every field except original_object."""
        return isinstance(other, Namespace) and self == other

    def clone(self) -> "Namespace":
        return replace(self, metadata=dict(self.metadata))

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "metadata": dict(self.metadata)}


@dataclass
class Service:
    """
    An application registered inside a namespace.

    Attributes:
        name: Unique name within the namespace
        namespace: Name of the owning namespace
        metadata: Unordered string-to-string map
        original_object: Backend-native payload (pass-through only)
    """
    name: str
    namespace: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)
    original_object: Any = field(default=None, repr=False, compare=False)

    kind: ClassVar[str] = "service"

    def __post_init__(self) -> None:
        if self.metadata is None:
            self.metadata = {}

    def deep_equal_to(self, other: Any) -> bool:
        """Compare every field except original_object."""
        return isinstance(other, Service) and self == other

    def clone(self) -> "Service":
        return replace(self, metadata=dict(self.metadata))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "metadata": dict(self.metadata),
        }


@dataclass
class Endpoint:
    """
    A reachable address of a service.

    Attributes:
        name: Unique name within the service
        service: Name of the owning service
        namespace: Name of the owning namespace
        address: Empty, or an IPv4 / IPv6 literal
        port: 0..65535, where 0 means "unset"
        metadata: Unordered string-to-string map
        original_object: Backend-native payload (pass-through only)
    """
    name: str
    service: str = ""
    namespace: str = ""
    address: str = ""
    port: int = 0
    metadata: Dict[str, str] = field(default_factory=dict)
    original_object: Any = field(default=None, repr=False, compare=False)

    kind: ClassVar[str] = "endpoint"

    def __post_init__(self) -> None:
        if self.metadata is None:
            self.metadata = {}

    def deep_equal_to(self, other: Any) -> bool:
        """Compare every field except original_object."""
        return isinstance(other, Endpoint) and self == other

    def clone(self) -> "Endpoint":
        return replace(self, metadata=dict(self.metadata))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "service": self.service,
            "namespace": self.namespace,
            "address": self.address,
            "port": self.port,
            "metadata": dict(self.metadata),
        }


Resource = Union[Namespace, Service, Endpoint]


def namespace_path(namespace: str) -> str:
    return f"/{PATH_NAMESPACES}/{namespace}"


def service_path(namespace: str, service: str) -> str:
    return f"{namespace_path(namespace)}/{PATH_SERVICES}/{service}"


def endpoint_path(namespace: str, service: str, endpoint: str) -> str:
    return f"{service_path(namespace, service)}/{PATH_ENDPOINTS}/{endpoint}"


# =============================================================================
# Normalized Errors
# =============================================================================


class RegistryAdapterError(Exception):
    """
    Base exception for all registry adapter errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (UPPER_SNAKE_CASE)
        details: Additional context-specific details (JSON-serializable, SIEM-safe)
    """
    default_code: ClassVar[str] = "REGISTRY_ERROR"
    default_message: ClassVar[str] = "registry error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ):
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = dict(details or {})

    def asdict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization and logging."""
        return {
            "message": self.message,
            "code": self.code,
            "details": {k: self.details[k] for k in sorted(self.details)},
        }


# --- not found ---

class NotFound(RegistryAdapterError):
    """The requested resource does not exist."""
    default_code = "NOT_FOUND"
    default_message = "not found"


class NamespaceNotFound(NotFound):
    default_code = "NAMESPACE_NOT_FOUND"
    default_message = "namespace not found"


class ServiceNotFound(NotFound):
    default_code = "SERVICE_NOT_FOUND"
    default_message = "service not found"


class EndpointNotFound(NotFound):
    default_code = "ENDPOINT_NOT_FOUND"
    default_message = "endpoint not found"


# --- already exists ---

class AlreadyExists(RegistryAdapterError):
    default_code = "ALREADY_EXISTS"
    default_message = "already exists"


class NamespaceAlreadyExists(AlreadyExists):
    default_code = "NAMESPACE_ALREADY_EXISTS"
    default_message = "namespace already exists"


class ServiceAlreadyExists(AlreadyExists):
    default_code = "SERVICE_ALREADY_EXISTS"
    default_message = "service already exists"


class EndpointAlreadyExists(AlreadyExists):
    default_code = "ENDPOINT_ALREADY_EXISTS"
    default_message = "endpoint already exists"


# --- iteration ---

class IteratorDone(RegistryAdapterError):
    """Normal end of a listing. Not a failure."""
    default_code = "ITERATOR_DONE"
    default_message = "iterator done"


# --- preconditions (caller programming errors) ---

class BadRequest(RegistryAdapterError):
    """Client sent an invalid request."""
    default_code = "BAD_REQUEST"
    default_message = "bad request"


class EmptyNamespaceName(BadRequest):
    default_code = "EMPTY_NAMESPACE_NAME"
    default_message = "no namespace name provided"


class EmptyServiceName(BadRequest):
    default_code = "EMPTY_SERVICE_NAME"
    default_message = "no service name provided"


class EmptyEndpointName(BadRequest):
    default_code = "EMPTY_ENDPOINT_NAME"
    default_message = "no endpoint name provided"


class NoClientProvided(BadRequest):
    default_code = "NO_CLIENT_PROVIDED"
    default_message = "no client provided"


class InvalidObjectToFilter(BadRequest):
    default_code = "INVALID_OBJECT_TO_FILTER"
    default_message = "object to filter is invalid"


class IncompatibleNameFilters(BadRequest):
    default_code = "INCOMPATIBLE_NAME_FILTERS"
    default_message = "name_in and name_prefix filters cannot be used together"


class IncompatibleMetadataFilters(BadRequest):
    default_code = "INCOMPATIBLE_METADATA_FILTERS"
    default_message = "no_metadata and metadata filters cannot be used together"


class IncompatibleAddressFilters(BadRequest):
    default_code = "INCOMPATIBLE_ADDRESS_FILTERS"
    default_message = "address_family and cidr filters cannot be used together"


class EmptyMetadataKey(BadRequest):
    default_code = "EMPTY_METADATA_KEY"
    default_message = "metadata contains an empty key"


class InvalidResultsNumber(BadRequest):
    default_code = "INVALID_RESULTS_NUMBER"
    default_message = "invalid results number provided"


class InvalidCIDR(BadRequest):
    default_code = "INVALID_CIDR"
    default_message = "invalid CIDR provided"


class InvalidPort(BadRequest):
    default_code = "INVALID_PORT"
    default_message = "invalid port"


class InvalidPortRange(BadRequest):
    default_code = "INVALID_PORT_RANGE"
    default_message = "invalid port range provided"


class InvalidAddress(BadRequest):
    default_code = "INVALID_ADDRESS"
    default_message = "invalid address provided"


class InvalidCacheExpirationTime(BadRequest):
    default_code = "INVALID_CACHE_EXPIRATION_TIME"
    default_message = "invalid cache expiration time provided"


class NoProjectIDSet(BadRequest):
    default_code = "NO_PROJECT_ID_SET"
    default_message = "no project ID set"


class NoLocationSet(BadRequest):
    default_code = "NO_LOCATION_SET"
    default_message = "no default location set"


# --- backend / operational ---

class ResourceDecodeError(RegistryAdapterError):
    """A backend record could not be converted into the resource model."""
    default_code = "DECODE_ERROR"
    default_message = "error while trying to decode the resource"


class OperationFailed(RegistryAdapterError):
    """An asynchronous backend operation reached the FAIL state."""
    default_code = "OPERATION_FAILED"
    default_message = "operation failed"


class TransientNetwork(RegistryAdapterError):
    """Transient failure (e.g. a single call timed out) that may succeed on retry."""
    default_code = "TRANSIENT_NETWORK"
    default_message = "transient network failure"


class DeadlineExceeded(RegistryAdapterError):
    """Operation exceeded ctx.deadline_ms budget."""
    default_code = "DEADLINE_EXCEEDED"
    default_message = "operation timed out"


def _walk_causes(err: Optional[BaseException]):
    seen = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__


def is_not_found(err: Optional[BaseException]) -> bool:
    """True if err, or any exception it was raised from, is a not-found error."""
    return any(isinstance(e, NotFound) for e in _walk_causes(err))


def is_already_exists(err: Optional[BaseException]) -> bool:
    return any(isinstance(e, AlreadyExists) for e in _walk_causes(err))


def is_iterator_done(err: Optional[BaseException]) -> bool:
    return any(isinstance(e, IteratorDone) for e in _walk_causes(err))


# =============================================================================
# Context (used for deadlines, identity, SIEM-safe metrics)
# =============================================================================


@dataclass(frozen=True)
class OperationContext:
    """
    Context for registry operations.

    Attributes:
        request_id: Correlation ID for the request chain
        deadline_ms: Absolute epoch milliseconds when the operation must finish
        traceparent: W3C Trace Context header
        tenant: Multi-tenant scope (NEVER logged or exposed in metrics)
        attrs: Additional attributes for middleware
    """
    request_id: Optional[str] = None
    deadline_ms: Optional[int] = None
    traceparent: Optional[str] = None
    tenant: Optional[str] = None
    attrs: Mapping[str, Any] = None

    def __post_init__(self) -> None:
        if self.attrs is None:
            object.__setattr__(self, "attrs", {})

    @classmethod
    def with_timeout(cls, seconds: float, **kwargs: Any) -> "OperationContext":
        """Build a context whose deadline is `seconds` from now."""
        return cls(deadline_ms=int(time.time() * 1000 + seconds * 1000), **kwargs)

    def remaining_ms(self) -> Optional[int]:
        """Remaining milliseconds until deadline (never negative), or None."""
        if self.deadline_ms is None:
            return None
        now_ms = int(time.time() * 1000)
        return max(0, self.deadline_ms - now_ms)

    def remaining_s(self) -> Optional[float]:
        rem = self.remaining_ms()
        return None if rem is None else rem / 1000.0


# =============================================================================
# Metrics Interface (SIEM-safe, low-cardinality)
# =============================================================================


class MetricsSink(Protocol):
    """Metrics collection. Never receives PII or raw tenant identifiers."""

    def observe(
        self,
        *,
        component: str,
        op: str,
        ms: float,
        ok: bool,
        code: str = "OK",
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None: ...

    def counter(
        self,
        *,
        component: str,
        name: str,
        value: int = 1,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None: ...


class NoopMetrics:
    def observe(self, **_: Any) -> None: ...
    def counter(self, **_: Any) -> None: ...


# =============================================================================
# Deadline Policies
# =============================================================================


class DeadlinePolicy(Protocol):
    """Strategy to apply time budgets (ctx.deadline_ms) to awaits."""
    async def wrap(self, coro: Awaitable[T], ctx: Optional[OperationContext]) -> T: ...


class NoopDeadline:
    async def wrap(self, coro, ctx: Optional[OperationContext]):
        return await coro


class SimpleDeadline:
    """
    Enforces ctx.deadline_ms using asyncio.wait_for.
    Maps asyncio.TimeoutError -> DeadlineExceeded.
    """
    async def wrap(self, coro, ctx: Optional[OperationContext]):
        if ctx is None or ctx.deadline_ms is None:
            return await coro
        rem = ctx.remaining_s()
        if rem is not None and rem <= 0:
            coro.close()
            raise DeadlineExceeded("operation timed out (preflight)", details={"preflight": True})
        try:
            return await asyncio.wait_for(coro, timeout=rem)
        except asyncio.TimeoutError:
            raise DeadlineExceeded("operation timed out")


# =============================================================================
# TTL Cache
# =============================================================================


class Cache(Protocol):
    """
    Minimal async cache keyed by hierarchical resource paths
    (e.g. "/namespaces/hr/services/payroll").
    """
    async def get(self, key: str) -> Optional[Any]: ...
    async def set(self, key: str, value: Any, ttl_s: float) -> None: ...
    async def delete(self, key: str) -> None: ...
    async def delete_prefix(self, prefix: str) -> None: ...


class NoopCache:
    """No caching at all: every get is a miss."""
    async def get(self, key: str) -> Optional[Any]: return None
    async def set(self, key: str, value: Any, ttl_s: float) -> None: ...
    async def delete(self, key: str) -> None: ...
    async def delete_prefix(self, prefix: str) -> None: ...


class InMemoryTTLCache:
    """
    Small in-memory TTL cache with per-entry expiry.

    Expired entries are evicted lazily on read, and in bulk by purge_expired(),
    which set() also runs at most once per cleanup_interval_s. Each operation
    touches a single dict slot, so concurrent callers on different keys never
    contend.
    """

    def __init__(self, cleanup_interval_s: float = DEFAULT_CACHE_CLEANUP_S) -> None:
        if cleanup_interval_s is None or cleanup_interval_s <= 0:
            raise InvalidCacheExpirationTime("cleanup_interval_s must be positive")
        self._store: Dict[str, Tuple[float, Any]] = {}
        self.cleanup_interval_s = float(cleanup_interval_s)
        self._last_purge = time.monotonic()

    async def get(self, key: str) -> Optional[Any]:
        item = self._store.get(key)
        if item is None:
            return None
        expires_at, value = item
        if time.monotonic() >= expires_at:
            # only evict the entry we looked at, a concurrent set may have replaced it
            if self._store.get(key) is item:
                self._store.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl_s: float) -> None:
        if ttl_s is None or ttl_s <= 0:
            self._store.pop(key, None)
            return
        now = time.monotonic()
        self._store[key] = (now + float(ttl_s), value)
        if now - self._last_purge >= self.cleanup_interval_s:
            self.purge_expired()

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    async def delete_prefix(self, prefix: str) -> None:
        for key in [k for k in list(self._store) if k.startswith(prefix)]:
            self._store.pop(key, None)

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = time.monotonic()
        self._last_purge = now
        expired = [k for k, (exp, _) in list(self._store.items()) if now >= exp]
        for key in expired:
            self._store.pop(key, None)
        return len(expired)

    def __len__(self) -> int:
        return len(self._store)


# =============================================================================
# Configuration
# =============================================================================


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        LOG.warning("Ignoring invalid value for %s: %r", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        LOG.warning("Ignoring invalid value for %s: %r", name, raw)
        return default


@dataclass(frozen=True)
class RegistryAdapterConfig:
    """
    Engine tunables shared by every adapter.

    Attributes:
        cache_ttl_s: Lifetime of cached objects. 0 disables caching entirely.
        identity_ttl_s: Lifetime of secondary identity entries (path/id, path/arn)
        cache_cleanup_interval_s: Minimum time between bulk purges of expired entries
        default_page_size: Page size used when ListOptions.results is not set
        poll_tick_s: Interval between async-operation status queries
        poll_query_timeout_s: Timeout of a single status query
    """
    cache_ttl_s: float = DEFAULT_CACHE_TTL_S
    identity_ttl_s: float = DEFAULT_IDENTITY_TTL_S
    cache_cleanup_interval_s: float = DEFAULT_CACHE_CLEANUP_S
    default_page_size: int = DEFAULT_LIST_RESULTS
    poll_tick_s: float = DEFAULT_POLL_TICK_S
    poll_query_timeout_s: float = DEFAULT_POLL_QUERY_TIMEOUT_S

    def validate(self) -> None:
        if self.cache_ttl_s < 0 or self.identity_ttl_s < 0:
            raise InvalidCacheExpirationTime()
        if self.cache_cleanup_interval_s <= 0:
            raise InvalidCacheExpirationTime("cache_cleanup_interval_s must be positive")
        if self.default_page_size <= 0:
            raise InvalidResultsNumber()
        if self.poll_tick_s <= 0 or self.poll_query_timeout_s <= 0:
            raise BadRequest("poll_tick_s and poll_query_timeout_s must be positive")

    @classmethod
    def from_env(cls) -> "RegistryAdapterConfig":
        """Read REGISTRY_* environment variables, falling back to defaults."""
        return cls(
            cache_ttl_s=_env_float("REGISTRY_CACHE_TTL_S", DEFAULT_CACHE_TTL_S),
            identity_ttl_s=_env_float("REGISTRY_IDENTITY_TTL_S", DEFAULT_IDENTITY_TTL_S),
            cache_cleanup_interval_s=_env_float("REGISTRY_CACHE_CLEANUP_S", DEFAULT_CACHE_CLEANUP_S),
            default_page_size=_env_int("REGISTRY_PAGE_SIZE", DEFAULT_LIST_RESULTS),
            poll_tick_s=_env_float("REGISTRY_POLL_TICK_S", DEFAULT_POLL_TICK_S),
            poll_query_timeout_s=_env_float(
                "REGISTRY_POLL_QUERY_TIMEOUT_S", DEFAULT_POLL_QUERY_TIMEOUT_S
            ),
        )


# =============================================================================
# Filter Engine
# =============================================================================


class AddressFamily(enum.Enum):
    ANY = "any"
    IPV4 = "ipv4"
    IPV6 = "ipv6"


def _parse_ip(address: str) -> Optional[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]:
    """Parse an IP literal; IPv4-mapped IPv6 addresses are unwrapped to IPv4."""
    if not address:
        return None
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


@functools.lru_cache(maxsize=256)
def _parse_network(cidr: str):
    return ipaddress.ip_network(cidr, strict=False)


def is_valid_ip(address: str) -> bool:
    return _parse_ip(address) is not None


def is_ipv4(address: str) -> bool:
    return isinstance(_parse_ip(address), ipaddress.IPv4Address)


def is_ipv6(address: str) -> bool:
    return isinstance(_parse_ip(address), ipaddress.IPv6Address)


def is_inside_cidr(cidr: str, address: str) -> bool:
    ip = _parse_ip(address)
    if ip is None:
        return False
    try:
        network = _parse_network(cidr)
    except ValueError:
        return False
    if ip.version != network.version:
        return False
    return ip in network


@dataclass(frozen=True)
class ListOptions:
    """
    Page size plus a set of independently composable predicate groups.

    All groups that are set must pass for an object to pass. Address and port
    groups only apply to endpoints and are ignored for other kinds.

    Attributes:
        results: Page size requested from the backend
        name_in: Name must be one of these
        name_prefix: Name must start with this (exclusive with name_in)
        no_metadata: Metadata must be empty
        metadata: Keys that must be present; non-empty values must match exactly
        cidr: Endpoint address must be inside this network
        address_family: Endpoint address must be IPv4 / IPv6
        port_in: Endpoint port must be one of these (unset port 0 passes)
        port_ranges: Endpoint port must be inside any of these inclusive ranges
    """
    results: Optional[int] = None
    name_in: Tuple[str, ...] = ()
    name_prefix: Optional[str] = None
    no_metadata: bool = False
    metadata: Mapping[str, str] = field(default_factory=dict)
    cidr: Optional[str] = None
    address_family: AddressFamily = AddressFamily.ANY
    port_in: Tuple[int, ...] = ()
    port_ranges: Tuple[Tuple[int, int], ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "name_in", tuple(self.name_in or ()))
        object.__setattr__(self, "metadata", dict(self.metadata or {}))
        object.__setattr__(self, "port_in", tuple(self.port_in or ()))
        object.__setattr__(
            self, "port_ranges", tuple(tuple(r) for r in (self.port_ranges or ()))
        )
        if isinstance(self.address_family, str):
            try:
                object.__setattr__(self, "address_family", AddressFamily(self.address_family.lower()))
            except ValueError:
                pass  # rejected by validate()

    def validate(self) -> None:
        """Raise the matching BadRequest subclass for invalid combinations."""
        if self.results is not None and (not isinstance(self.results, int) or self.results <= 0):
            raise InvalidResultsNumber()
        if self.name_in and self.name_prefix:
            raise IncompatibleNameFilters()
        if self.name_prefix is not None and not self.name_prefix:
            raise BadRequest("invalid name prefix filter provided", code="INVALID_NAME_PREFIX_FILTER")
        if self.no_metadata and self.metadata:
            raise IncompatibleMetadataFilters()
        if any(k == "" for k in self.metadata):
            raise EmptyMetadataKey()
        if not isinstance(self.address_family, AddressFamily):
            raise BadRequest(
                "invalid address family provided",
                code="INVALID_ADDRESS_FAMILY",
                details={"address_family": repr(self.address_family)},
            )
        if self.cidr is not None:
            try:
                _parse_network(self.cidr)
            except ValueError:
                raise InvalidCIDR(details={"cidr": self.cidr})
            if self.address_family is not AddressFamily.ANY:
                raise IncompatibleAddressFilters()
        for port in self.port_in:
            if not isinstance(port, int) or port < 0 or port > MAX_PORT:
                raise InvalidPort(f"invalid port ({port}) provided", details={"port": port})
        for rng in self.port_ranges:
            if len(rng) != 2:
                raise InvalidPortRange(details={"range": list(rng)})
            lo, hi = rng
            if lo > hi or lo < 0 or hi > MAX_PORT:
                raise InvalidPortRange(f"invalid range ({lo}-{hi}) provided", details={"range": [lo, hi]})

    def with_name_in(self, *names: str) -> "ListOptions":
        """Return a copy with names added to the Name-In group."""
        merged = list(self.name_in)
        merged.extend(n for n in names if n not in merged)
        return replace(self, name_in=tuple(merged))

    def page_size(self, default: int = DEFAULT_LIST_RESULTS) -> int:
        return self.results if self.results else default

    def filter(self, obj: Any) -> bool:
        """
        Evaluate every configured predicate group against obj.

        Raises InvalidObjectToFilter when obj is not a Namespace, Service or
        Endpoint. Never mutates obj and performs no I/O.
        """
        if not isinstance(obj, (Namespace, Service, Endpoint)):
            raise InvalidObjectToFilter()

        if self.name_in and obj.name not in self.name_in:
            return False
        if self.name_prefix and not obj.name.startswith(self.name_prefix):
            return False

        metadata = obj.metadata or {}
        if self.no_metadata and metadata:
            return False
        for key, value in self.metadata.items():
            if key not in metadata:
                return False
            if value and metadata[key] != value:
                return False

        if isinstance(obj, Endpoint):
            if self.cidr and not is_inside_cidr(self.cidr, obj.address):
                return False
            if self.address_family is AddressFamily.IPV4 and not is_ipv4(obj.address):
                return False
            if self.address_family is AddressFamily.IPV6 and not is_ipv6(obj.address):
                return False
            if self.port_in and obj.port != 0 and obj.port not in self.port_in:
                return False
            if self.port_ranges and not any(lo <= obj.port <= hi for lo, hi in self.port_ranges):
                return False

        return True


def validate_metadata(metadata: Optional[Mapping[str, str]]) -> Dict[str, str]:
    md = dict(metadata or {})
    if any(k == "" for k in md):
        raise EmptyMetadataKey()
    return md


def validate_address(address: str) -> str:
    address = address or ""
    if address and not is_valid_ip(address):
        raise InvalidAddress(details={"address": address})
    return address


def validate_port(port: int) -> int:
    port = int(port or 0)
    if port != 0 and (port < MIN_PORT or port > MAX_PORT):
        raise InvalidPort(details={"port": port})
    return port


# =============================================================================
# Async Operation Poller
# =============================================================================


class OperationState:
    SUBMITTED = "SUBMITTED"
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAIL = "FAIL"

    IN_FLIGHT = frozenset({SUBMITTED, PENDING})


@dataclass(frozen=True)
class OperationStatus:
    """
    Snapshot of an in-flight backend operation.

    Attributes:
        state: One of OperationState values (other strings are terminal successes)
        error_message: Backend-supplied failure reason when state is FAIL
        payload: Raw backend operation object (e.g. targets of a Cloud Map operation)
        operation_id: Backend operation identifier
    """
    state: str
    error_message: Optional[str] = None
    payload: Any = None
    operation_id: Optional[str] = None


class OperationPoller:
    """
    Bounded polling loop turning "operation submitted" into success/failure.

    Every tick issues one status query under its own query_timeout_s budget.
    SUBMITTED/PENDING wait for the next tick, FAIL raises OperationFailed with
    the backend message, anything else is returned as the final status.
    """

    def __init__(
        self,
        *,
        tick_s: float = DEFAULT_POLL_TICK_S,
        query_timeout_s: float = DEFAULT_POLL_QUERY_TIMEOUT_S,
    ) -> None:
        if tick_s <= 0 or query_timeout_s <= 0:
            raise BadRequest("tick_s and query_timeout_s must be positive")
        self.tick_s = float(tick_s)
        self.query_timeout_s = float(query_timeout_s)

    async def wait(
        self,
        query: Callable[[], Awaitable[OperationStatus]],
        *,
        ctx: Optional[OperationContext] = None,
        operation_id: Optional[str] = None,
    ) -> OperationStatus:
        while True:
            await self._sleep_tick(ctx, operation_id)

            remaining = ctx.remaining_s() if ctx is not None else None
            budget = self.query_timeout_s if remaining is None else min(self.query_timeout_s, remaining)
            try:
                status = await asyncio.wait_for(query(), timeout=budget)
            except asyncio.TimeoutError:
                if remaining is not None and budget >= remaining:
                    raise DeadlineExceeded(
                        "deadline reached while waiting for operation",
                        details={"operation_id": operation_id},
                    )
                raise TransientNetwork(
                    "operation status query timed out",
                    details={"operation_id": operation_id, "timeout_s": self.query_timeout_s},
                )

            if status.state in OperationState.IN_FLIGHT:
                LOG.debug("operation %s still %s", operation_id or status.operation_id, status.state)
                continue
            if status.state == OperationState.FAIL:
                msg = status.error_message
                raise OperationFailed(
                    f"operation failed: {msg}" if msg else "operation failed",
                    details={"operation_id": operation_id or status.operation_id},
                )
            return status

    async def _sleep_tick(self, ctx: Optional[OperationContext], operation_id: Optional[str]) -> None:
        remaining = ctx.remaining_s() if ctx is not None else None
        if remaining is None:
            await asyncio.sleep(self.tick_s)
            return
        if remaining <= self.tick_s:
            await asyncio.sleep(remaining)
            raise DeadlineExceeded(
                "deadline reached while waiting for operation",
                details={"operation_id": operation_id},
            )
        await asyncio.sleep(self.tick_s)


# =============================================================================
# Paginated Iterator
# =============================================================================


@dataclass
class Page:
    """
    One page of raw backend records.

    Attributes:
        items: Backend-native records, decoded lazily by the iterator
        cursor: Opaque continuation token for the next page
        has_more: Whether another page may exist
    """
    items: List[Any] = field(default_factory=list)
    cursor: Any = None
    has_more: bool = False


class ResourceIterator(Generic[T]):
    """
    Lazy listing over one hierarchy level.

    `next()` returns (object, scoped_handle) for the next record passing the
    options filter, fetching pages on demand, and raises IteratorDone once the
    backend is exhausted (and on every later call). Also supports `async for`.

    Not safe for concurrent use: each iterator carries its own scan position.
    """

    def __init__(
        self,
        adapter: "BaseRegistryAdapter",
        *,
        op: str,
        options: ListOptions,
        fetch_page: Callable[[Any, Optional[OperationContext]], Awaitable[Page]],
        decode: Callable[[Any, Optional[OperationContext]], Awaitable[T]],
        make_handle: Callable[[T], Any],
        error: Optional[BaseException] = None,
    ) -> None:
        self._adapter = adapter
        self._op = op
        self._options = options
        self._fetch_page = fetch_page
        self._decode = decode
        self._make_handle = make_handle
        self._error = error

        self._items: List[Any] = []
        self._index = 0
        self._cursor: Any = None
        self._has_more = True

    @property
    def options(self) -> ListOptions:
        return self._options

    async def next(self, ctx: Optional[OperationContext] = None) -> Tuple[T, Any]:
        if self._error is not None:
            raise self._error

        while True:
            while self._index < len(self._items):
                raw = self._items[self._index]
                try:
                    obj = await self._decode(raw, ctx)
                except ResourceDecodeError as exc:
                    LOG.debug("%s: skipping undecodable record: %s", self._op, exc)
                    self._index += 1
                    continue
                self._index += 1

                if self._options.filter(obj):
                    handle = self._make_handle(obj)
                    await self._adapter._remember(handle.path, obj)
                    return obj, handle

            if not self._has_more:
                raise IteratorDone()
            await self._load_page(ctx)

    async def _load_page(self, ctx: Optional[OperationContext]) -> None:
        self._items = []
        self._index = 0
        t0 = time.monotonic()
        try:
            page = await self._adapter._apply_deadline(self._fetch_page(self._cursor, ctx), ctx)
        except BaseException as exc:
            self._has_more = False
            code = getattr(exc, "code", None) if isinstance(exc, RegistryAdapterError) else "UNAVAILABLE"
            self._adapter._record(f"{self._op}.page", t0, False, code=code or "UNAVAILABLE", ctx=ctx)
            raise
        LOG.debug("%s: fetched page of %d records (more=%s)", self._op, len(page.items), page.has_more)
        self._items = list(page.items or [])
        self._cursor = page.cursor
        self._has_more = bool(page.has_more)
        self._adapter._record(f"{self._op}.page", t0, True, ctx=ctx, records=len(self._items))

    async def collect(self, ctx: Optional[OperationContext] = None) -> List[T]:
        """Drain the iterator into a list of objects."""
        out: List[T] = []
        while True:
            try:
                obj, _ = await self.next(ctx)
            except IteratorDone:
                return out
            out.append(obj)

    def __aiter__(self) -> "ResourceIterator[T]":
        return self

    async def __anext__(self) -> Tuple[T, Any]:
        try:
            return await self.next()
        except IteratorDone:
            raise StopAsyncIteration from None


# =============================================================================
# Register helpers
# =============================================================================


class RegisterMode(enum.Enum):
    CREATE_OR_UPDATE = "create_or_update"
    CREATE = "create"
    UPDATE = "update"


def _prepare_register(
    mode: RegisterMode,
    existing: Optional[Resource],
    metadata: Optional[Mapping[str, str]],
    replace_metadata: bool,
    *,
    not_found: type,
    already_exists: type,
) -> Tuple[RegisterMode, Dict[str, str]]:
    """Resolve the effective mode and the metadata to write."""
    if not isinstance(mode, RegisterMode):
        raise BadRequest("unknown register mode", code="UNKNOWN_REGISTER_MODE")
    if existing is not None:
        if mode is RegisterMode.CREATE:
            raise already_exists()
        mode = RegisterMode.UPDATE
    else:
        if mode is RegisterMode.UPDATE:
            raise not_found()
        mode = RegisterMode.CREATE

    new_metadata: Dict[str, str] = {}
    if existing is not None and not replace_metadata:
        new_metadata.update(existing.metadata)
    new_metadata.update(validate_metadata(metadata))
    return mode, new_metadata


def generate_endpoint_name(service: str) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=8))
    return f"{service}-{suffix}"


async def _get_or_none(getter: Callable[[], Awaitable[T]]) -> Optional[T]:
    try:
        return await getter()
    except Exception as exc:
        if is_not_found(exc):
            return None
        raise


# =============================================================================
# Scoped operation handles
# =============================================================================


class NamespaceOperation:
    """Operations scoped to one namespace."""

    def __init__(self, adapter: "BaseRegistryAdapter", name: str) -> None:
        self._adapter = adapter
        self.name = name or ""

    def __repr__(self) -> str:
        return f"NamespaceOperation(name={self.name!r})"

    @property
    def path(self) -> str:
        return namespace_path(self.name)

    def check_names(self) -> None:
        if not self.name:
            raise EmptyNamespaceName()

    async def get(
        self,
        ctx: Optional[OperationContext] = None,
        *,
        force_refresh: bool = False,
    ) -> Namespace:
        self.check_names()
        return await self._adapter._read(
            "namespace.get",
            self.path,
            lambda: self._adapter._do_get_namespace(self.name, ctx=ctx),
            ctx=ctx,
            force_refresh=force_refresh,
        )

    async def create(
        self,
        metadata: Optional[Mapping[str, str]] = None,
        ctx: Optional[OperationContext] = None,
    ) -> Namespace:
        self.check_names()
        md = validate_metadata(metadata)
        return await self._adapter._mutate(
            "namespace.create",
            self.path,
            lambda: self._adapter._do_create_namespace(self.name, md, ctx=ctx),
            ctx=ctx,
        )

    async def update(
        self,
        metadata: Optional[Mapping[str, str]] = None,
        ctx: Optional[OperationContext] = None,
    ) -> Namespace:
        self.check_names()
        md = validate_metadata(metadata)
        return await self._adapter._mutate(
            "namespace.update",
            self.path,
            lambda: self._adapter._do_update_namespace(self.name, md, ctx=ctx),
            ctx=ctx,
        )

    async def delete(self, ctx: Optional[OperationContext] = None) -> None:
        self.check_names()
        await self._adapter._mutate(
            "namespace.delete",
            self.path,
            lambda: self._adapter._do_delete_namespace(self.name, ctx=ctx),
            ctx=ctx,
            descendants=True,
        )

    async def register(
        self,
        ctx: Optional[OperationContext] = None,
        *,
        mode: RegisterMode = RegisterMode.CREATE_OR_UPDATE,
        metadata: Optional[Mapping[str, str]] = None,
        replace_metadata: bool = False,
    ) -> Namespace:
        """Create or update this namespace depending on whether it exists."""
        self.check_names()
        existing = await _get_or_none(lambda: self.get(ctx))
        mode, new_metadata = _prepare_register(
            mode, existing, metadata, replace_metadata,
            not_found=NamespaceNotFound, already_exists=NamespaceAlreadyExists,
        )
        if mode is RegisterMode.CREATE:
            return await self.create(new_metadata, ctx)
        if existing.deep_equal_to(Namespace(name=self.name, metadata=new_metadata)):
            return existing
        return await self.update(new_metadata, ctx)

    async def deregister(
        self,
        ctx: Optional[OperationContext] = None,
        *,
        fail_if_not_exists: bool = False,
    ) -> None:
        self.check_names()
        try:
            await self.delete(ctx)
        except Exception as exc:
            if is_not_found(exc) and not fail_if_not_exists:
                return
            raise

    def list(self, options: Optional[ListOptions] = None) -> ResourceIterator[Namespace]:
        """List namespaces; a non-empty handle name is folded into Name-In."""
        options = options or ListOptions()
        return self._adapter._iterator(
            "namespace.list",
            options,
            fetch_page=lambda opts: lambda cursor, ctx: self._adapter._do_list_namespaces(opts, cursor, ctx=ctx),
            decode=lambda raw, ctx: self._adapter._decode_namespace(raw, ctx=ctx),
            make_handle=lambda obj: self._adapter.namespace(obj.name),
            scope_name=self.name,
        )

    def service(self, name: str) -> "ServiceOperation":
        return ServiceOperation(self._adapter, self, name)

    def list_services(self, options: Optional[ListOptions] = None) -> ResourceIterator[Service]:
        return self.service("").list(options)


class ServiceOperation:
    """Operations scoped to one service of a namespace."""

    def __init__(self, adapter: "BaseRegistryAdapter", parent: NamespaceOperation, name: str) -> None:
        self._adapter = adapter
        self.parent = parent
        self.name = name or ""

    def __repr__(self) -> str:
        return f"ServiceOperation(namespace={self.parent.name!r}, name={self.name!r})"

    @property
    def namespace(self) -> str:
        return self.parent.name

    @property
    def path(self) -> str:
        return service_path(self.namespace, self.name)

    def check_names(self) -> None:
        self.parent.check_names()
        if not self.name:
            raise EmptyServiceName()

    async def get(
        self,
        ctx: Optional[OperationContext] = None,
        *,
        force_refresh: bool = False,
    ) -> Service:
        self.check_names()
        return await self._adapter._read(
            "service.get",
            self.path,
            lambda: self._adapter._do_get_service(self.namespace, self.name, ctx=ctx),
            ctx=ctx,
            force_refresh=force_refresh,
        )

    async def create(
        self,
        metadata: Optional[Mapping[str, str]] = None,
        ctx: Optional[OperationContext] = None,
    ) -> Service:
        self.check_names()
        md = validate_metadata(metadata)
        return await self._adapter._mutate(
            "service.create",
            self.path,
            lambda: self._adapter._do_create_service(self.namespace, self.name, md, ctx=ctx),
            ctx=ctx,
        )

    async def update(
        self,
        metadata: Optional[Mapping[str, str]] = None,
        ctx: Optional[OperationContext] = None,
    ) -> Service:
        self.check_names()
        md = validate_metadata(metadata)
        return await self._adapter._mutate(
            "service.update",
            self.path,
            lambda: self._adapter._do_update_service(self.namespace, self.name, md, ctx=ctx),
            ctx=ctx,
        )

    async def delete(self, ctx: Optional[OperationContext] = None) -> None:
        self.check_names()
        await self._adapter._mutate(
            "service.delete",
            self.path,
            lambda: self._adapter._do_delete_service(self.namespace, self.name, ctx=ctx),
            ctx=ctx,
            descendants=True,
        )

    async def register(
        self,
        ctx: Optional[OperationContext] = None,
        *,
        mode: RegisterMode = RegisterMode.CREATE_OR_UPDATE,
        metadata: Optional[Mapping[str, str]] = None,
        replace_metadata: bool = False,
    ) -> Service:
        self.check_names()
        existing = await _get_or_none(lambda: self.get(ctx))
        mode, new_metadata = _prepare_register(
            mode, existing, metadata, replace_metadata,
            not_found=ServiceNotFound, already_exists=ServiceAlreadyExists,
        )
        if mode is RegisterMode.CREATE:
            return await self.create(new_metadata, ctx)
        desired = Service(name=self.name, namespace=self.namespace, metadata=new_metadata)
        if existing.deep_equal_to(desired):
            return existing
        return await self.update(new_metadata, ctx)

    async def deregister(
        self,
        ctx: Optional[OperationContext] = None,
        *,
        fail_if_not_exists: bool = False,
    ) -> None:
        self.check_names()
        try:
            await self.delete(ctx)
        except Exception as exc:
            if is_not_found(exc) and not fail_if_not_exists:
                return
            raise

    def list(self, options: Optional[ListOptions] = None) -> ResourceIterator[Service]:
        """List services of the parent namespace."""
        options = options or ListOptions()
        error = None
        if not self.namespace:
            error = EmptyNamespaceName()
        namespace = self.namespace
        return self._adapter._iterator(
            "service.list",
            options,
            fetch_page=lambda opts: lambda cursor, ctx: self._adapter._do_list_services(namespace, opts, cursor, ctx=ctx),
            decode=lambda raw, ctx: self._adapter._decode_service(namespace, raw, ctx=ctx),
            make_handle=lambda obj: self.parent.service(obj.name),
            error=error,
            scope_name=self.name,
        )

    def endpoint(self, name: str) -> "EndpointOperation":
        return EndpointOperation(self._adapter, self, name)

    def list_endpoints(self, options: Optional[ListOptions] = None) -> ResourceIterator[Endpoint]:
        return self.endpoint("").list(options)


class EndpointOperation:
    """Operations scoped to one endpoint of a service."""

    def __init__(self, adapter: "BaseRegistryAdapter", parent: ServiceOperation, name: str) -> None:
        self._adapter = adapter
        self.parent = parent
        self.name = name or ""

    def __repr__(self) -> str:
        return (
            f"EndpointOperation(namespace={self.namespace!r}, "
            f"service={self.service!r}, name={self.name!r})"
        )

    @property
    def namespace(self) -> str:
        return self.parent.namespace

    @property
    def service(self) -> str:
        return self.parent.name

    @property
    def path(self) -> str:
        return endpoint_path(self.namespace, self.service, self.name)

    def check_names(self) -> None:
        self.parent.check_names()
        if not self.name:
            raise EmptyEndpointName()

    async def get(
        self,
        ctx: Optional[OperationContext] = None,
        *,
        force_refresh: bool = False,
    ) -> Endpoint:
        self.check_names()
        return await self._adapter._read(
            "endpoint.get",
            self.path,
            lambda: self._adapter._do_get_endpoint(self.namespace, self.service, self.name, ctx=ctx),
            ctx=ctx,
            force_refresh=force_refresh,
        )

    async def create(
        self,
        address: str = "",
        port: int = 0,
        metadata: Optional[Mapping[str, str]] = None,
        ctx: Optional[OperationContext] = None,
    ) -> Endpoint:
        self.check_names()
        address, port, md = validate_address(address), validate_port(port), validate_metadata(metadata)
        return await self._adapter._mutate(
            "endpoint.create",
            self.path,
            lambda: self._adapter._do_create_endpoint(
                self.namespace, self.service, self.name, address, port, md, ctx=ctx
            ),
            ctx=ctx,
        )

    async def update(
        self,
        address: str = "",
        port: int = 0,
        metadata: Optional[Mapping[str, str]] = None,
        ctx: Optional[OperationContext] = None,
    ) -> Endpoint:
        self.check_names()
        address, port, md = validate_address(address), validate_port(port), validate_metadata(metadata)
        return await self._adapter._mutate(
            "endpoint.update",
            self.path,
            lambda: self._adapter._do_update_endpoint(
                self.namespace, self.service, self.name, address, port, md, ctx=ctx
            ),
            ctx=ctx,
        )

    async def delete(self, ctx: Optional[OperationContext] = None) -> None:
        self.check_names()
        await self._adapter._mutate(
            "endpoint.delete",
            self.path,
            lambda: self._adapter._do_delete_endpoint(self.namespace, self.service, self.name, ctx=ctx),
            ctx=ctx,
            descendants=True,
        )

    async def register(
        self,
        ctx: Optional[OperationContext] = None,
        *,
        mode: RegisterMode = RegisterMode.CREATE_OR_UPDATE,
        metadata: Optional[Mapping[str, str]] = None,
        replace_metadata: bool = False,
        address: Optional[str] = None,
        port: Optional[int] = None,
        generate_name: bool = False,
    ) -> Endpoint:
        """
        Create or update this endpoint.

        Address and port keep their current values when not given. With
        generate_name=True a nameless handle registers a new endpoint called
        "<service>-<8 random characters>".
        """
        self.parent.check_names()
        target = self
        if not self.name:
            if not generate_name or mode is RegisterMode.UPDATE:
                raise EmptyEndpointName()
            target = self.parent.endpoint(generate_endpoint_name(self.service))

        if address is not None:
            validate_address(address)
        if port is not None:
            validate_port(port)

        existing = await _get_or_none(lambda: target.get(ctx))
        mode, new_metadata = _prepare_register(
            mode, existing, metadata, replace_metadata,
            not_found=EndpointNotFound, already_exists=EndpointAlreadyExists,
        )
        if address is None:
            address = existing.address if existing is not None else ""
        if port is None:
            port = existing.port if existing is not None else 0

        if mode is RegisterMode.CREATE:
            return await target.create(address, port, new_metadata, ctx)
        desired = Endpoint(
            name=target.name,
            service=target.service,
            namespace=target.namespace,
            address=address,
            port=port,
            metadata=new_metadata,
        )
        if existing.deep_equal_to(desired):
            return existing
        return await target.update(address, port, new_metadata, ctx)

    async def deregister(
        self,
        ctx: Optional[OperationContext] = None,
        *,
        fail_if_not_exists: bool = False,
    ) -> None:
        self.check_names()
        try:
            await self.delete(ctx)
        except Exception as exc:
            if is_not_found(exc) and not fail_if_not_exists:
                return
            raise

    def list(self, options: Optional[ListOptions] = None) -> ResourceIterator[Endpoint]:
        """List endpoints of the parent service."""
        options = options or ListOptions()
        error = None
        if not self.namespace:
            error = EmptyNamespaceName()
        elif not self.service:
            error = EmptyServiceName()
        namespace, service = self.namespace, self.service
        return self._adapter._iterator(
            "endpoint.list",
            options,
            fetch_page=lambda opts: lambda cursor, ctx: self._adapter._do_list_endpoints(
                namespace, service, opts, cursor, ctx=ctx
            ),
            decode=lambda raw, ctx: self._adapter._decode_endpoint(namespace, service, raw, ctx=ctx),
            make_handle=lambda obj: self.parent.endpoint(obj.name),
            error=error,
            scope_name=self.name,
        )


# =============================================================================
# Base Instrumented Adapter
# =============================================================================


class BaseRegistryAdapter:
    """
    Base class for Service Registry Protocol V1.0 adapters.

    Owns name validation, the object cache and its identity index, deadline
    enforcement, metrics, the iterator state machine and the async-operation
    poller. Implementers override the `_do_*` hooks (vendor calls) and the
    `_decode_*` hooks (vendor record -> resource model) and, when they need a
    fast name -> vendor id lookup, `_identity_of`.

    Example:
        class ConsulRegistryAdapter(BaseRegistryAdapter):
            async def _do_get_namespace(self, name, *, ctx=None) -> Namespace:
                ...
    """

    _component = "registry"

    def __init__(
        self,
        *,
        config: Optional[RegistryAdapterConfig] = None,
        metrics: Optional[MetricsSink] = None,
        cache: Optional[Cache] = None,
        poller: Optional[OperationPoller] = None,
        deadline_policy: Optional[DeadlinePolicy] = None,
        cache_ttl_s: Optional[float] = None,
    ) -> None:
        cfg = config or RegistryAdapterConfig()
        if cache_ttl_s is not None:
            cfg = replace(cfg, cache_ttl_s=cache_ttl_s)
        cfg.validate()
        self._config = cfg

        self._metrics: MetricsSink = metrics or NoopMetrics()
        self._deadline: DeadlinePolicy = deadline_policy or SimpleDeadline()
        self._poller = poller or OperationPoller(
            tick_s=cfg.poll_tick_s, query_timeout_s=cfg.poll_query_timeout_s
        )
        if cache is not None:
            self._cache: Cache = cache
        elif cfg.cache_ttl_s > 0:
            self._cache = InMemoryTTLCache(cleanup_interval_s=cfg.cache_cleanup_interval_s)
        else:
            self._cache = NoopCache()

        if cache is not None and cfg.cache_ttl_s == 0:
            LOG.warning("An explicit cache was provided with cache_ttl_s=0; nothing will be cached")

    @property
    def config(self) -> RegistryAdapterConfig:
        return self._config

    @property
    def cache(self) -> Cache:
        return self._cache

    @property
    def poller(self) -> OperationPoller:
        return self._poller

    # --- entry points ---

    def namespace(self, name: str) -> NamespaceOperation:
        return NamespaceOperation(self, name)

    def list_namespaces(self, options: Optional[ListOptions] = None) -> ResourceIterator[Namespace]:
        return self.namespace("").list(options)

    # --- instrumentation ---

    @staticmethod
    def _tenant_hash(tenant: Optional[str]) -> Optional[str]:
        if not tenant:
            return None
        return hashlib.sha256(tenant.encode()).hexdigest()[:12]

    def _record(
        self,
        op: str,
        t0: float,
        ok: bool,
        *,
        code: str = "OK",
        ctx: Optional[OperationContext] = None,
        **extra: Any,
    ) -> None:
        try:
            ms = (time.monotonic() - t0) * 1000.0
            x = dict(extra or {})
            if ctx is not None:
                tenant_h = self._tenant_hash(ctx.tenant)
                if tenant_h:
                    x.setdefault("tenant_hash", tenant_h)
            self._metrics.observe(
                component=self._component, op=op, ms=ms, ok=ok, code=code, extra=x or None
            )
        except Exception:
            # Never let metrics recording break the operation
            pass

    async def _apply_deadline(self, coro, ctx: Optional[OperationContext]):
        try:
            return await self._deadline.wrap(coro, ctx)
        except DeadlineExceeded:
            raise
        except asyncio.TimeoutError:
            raise DeadlineExceeded("operation timed out")

    @staticmethod
    def _fail_if_expired(ctx: Optional[OperationContext]) -> None:
        if ctx is None or ctx.deadline_ms is None:
            return
        if ctx.remaining_ms() == 0:
            raise DeadlineExceeded("operation timed out (preflight)", details={"preflight": True})

    # --- cache ---

    def _identity_of(self, obj: Resource) -> Mapping[str, Any]:
        """Secondary identity entries (e.g. {"id": ..., "arn": ...}) for obj."""
        return {}

    async def _remember(self, path: str, obj: Resource) -> None:
        await self._cache.set(path, obj.clone(), self._config.cache_ttl_s)
        for suffix, value in self._identity_of(obj).items():
            if value:
                await self._cache.set(f"{path}/{suffix}", value, self._config.identity_ttl_s)

    async def _forget(self, path: str, *, descendants: bool = False) -> None:
        await self._cache.delete(path)
        await self._cache.delete(f"{path}/{IDENTITY_ID}")
        await self._cache.delete(f"{path}/{IDENTITY_ARN}")
        if descendants:
            await self._cache.delete_prefix(f"{path}/")

    async def _cached_identity(self, path: str, suffix: str = IDENTITY_ID) -> Optional[Any]:
        return await self._cache.get(f"{path}/{suffix}")

    # --- generic runners used by the scoped handles ---

    async def _read(
        self,
        op: str,
        path: str,
        fetch: Callable[[], Awaitable[T]],
        *,
        ctx: Optional[OperationContext],
        force_refresh: bool,
    ) -> T:
        self._fail_if_expired(ctx)
        t0 = time.monotonic()
        try:
            if not force_refresh:
                cached = await self._cache.get(path)
                if cached is not None:
                    LOG.debug("cache hit for %s", path)
                    self._metrics.counter(component=self._component, name="cache_hits", value=1, extra={"op": op})
                    self._record(op, t0, True, ctx=ctx, cached=1)
                    return cached.clone()

            obj = await self._apply_deadline(fetch(), ctx)
            await self._remember(path, obj)
            self._record(op, t0, True, ctx=ctx)
            return obj
        except RegistryAdapterError as e:
            self._record(op, t0, False, code=e.code or type(e).__name__, ctx=ctx)
            raise
        except Exception:
            self._record(op, t0, False, code="UNAVAILABLE", ctx=ctx)
            raise

    async def _mutate(
        self,
        op: str,
        path: str,
        action: Callable[[], Awaitable[Optional[T]]],
        *,
        ctx: Optional[OperationContext],
        descendants: bool = False,
    ) -> Optional[T]:
        self._fail_if_expired(ctx)
        t0 = time.monotonic()
        try:
            try:
                result = await self._apply_deadline(action(), ctx)
            finally:
                await self._forget(path, descendants=descendants)
            if result is not None:
                await self._remember(path, result)
            self._record(op, t0, True, ctx=ctx)
            return result
        except RegistryAdapterError as e:
            self._record(op, t0, False, code=e.code or type(e).__name__, ctx=ctx)
            raise
        except Exception:
            self._record(op, t0, False, code="UNAVAILABLE", ctx=ctx)
            raise

    def _iterator(
        self,
        op: str,
        options: ListOptions,
        *,
        fetch_page: Callable[[ListOptions], Callable[[Any, Optional[OperationContext]], Awaitable[Page]]],
        decode: Callable[[Any, Optional[OperationContext]], Awaitable[T]],
        make_handle: Callable[[T], Any],
        error: Optional[BaseException] = None,
        scope_name: str = "",
    ) -> ResourceIterator[T]:
        if error is None:
            try:
                options.validate()
            except BadRequest as exc:
                error = exc
        if scope_name:
            options = options.with_name_in(scope_name)
        if options.results is None:
            options = replace(options, results=self._config.default_page_size)
        return ResourceIterator(
            self,
            op=op,
            options=options,
            fetch_page=fetch_page(options),
            decode=decode,
            make_handle=make_handle,
            error=error,
        )

    async def _wait_operation(
        self,
        query: Callable[[], Awaitable[OperationStatus]],
        *,
        ctx: Optional[OperationContext],
        operation_id: Optional[str] = None,
    ) -> OperationStatus:
        t0 = time.monotonic()
        try:
            status = await self._poller.wait(query, ctx=ctx, operation_id=operation_id)
        except RegistryAdapterError as e:
            self._record("operation.wait", t0, False, code=e.code, ctx=ctx)
            raise
        self._record("operation.wait", t0, True, ctx=ctx)
        return status

    # --- default decoders ---

    async def _decode_namespace(self, raw: Any, *, ctx: Optional[OperationContext] = None) -> Namespace:
        if isinstance(raw, Namespace):
            return raw
        raise ResourceDecodeError(details={"kind": "namespace"})

    async def _decode_service(
        self, namespace: str, raw: Any, *, ctx: Optional[OperationContext] = None
    ) -> Service:
        if isinstance(raw, Service):
            return raw
        raise ResourceDecodeError(details={"kind": "service"})

    async def _decode_endpoint(
        self, namespace: str, service: str, raw: Any, *, ctx: Optional[OperationContext] = None
    ) -> Endpoint:
        if isinstance(raw, Endpoint):
            return raw
        raise ResourceDecodeError(details={"kind": "endpoint"})

    # --- hooks to implement per backend (override these) ---

    async def _do_get_namespace(self, name: str, *, ctx: Optional[OperationContext] = None) -> Namespace:
        raise NotImplementedError

    async def _do_create_namespace(
        self, name: str, metadata: Dict[str, str], *, ctx: Optional[OperationContext] = None
    ) -> Namespace:
        raise NotImplementedError

    async def _do_update_namespace(
        self, name: str, metadata: Dict[str, str], *, ctx: Optional[OperationContext] = None
    ) -> Namespace:
        raise NotImplementedError

    async def _do_delete_namespace(self, name: str, *, ctx: Optional[OperationContext] = None) -> None:
        raise NotImplementedError

    async def _do_list_namespaces(
        self, options: ListOptions, cursor: Any, *, ctx: Optional[OperationContext] = None
    ) -> Page:
        raise NotImplementedError

    async def _do_get_service(
        self, namespace: str, name: str, *, ctx: Optional[OperationContext] = None
    ) -> Service:
        raise NotImplementedError

    async def _do_create_service(
        self, namespace: str, name: str, metadata: Dict[str, str], *, ctx: Optional[OperationContext] = None
    ) -> Service:
        raise NotImplementedError

    async def _do_update_service(
        self, namespace: str, name: str, metadata: Dict[str, str], *, ctx: Optional[OperationContext] = None
    ) -> Service:
        raise NotImplementedError

    async def _do_delete_service(
        self, namespace: str, name: str, *, ctx: Optional[OperationContext] = None
    ) -> None:
        raise NotImplementedError

    async def _do_list_services(
        self, namespace: str, options: ListOptions, cursor: Any, *, ctx: Optional[OperationContext] = None
    ) -> Page:
        raise NotImplementedError

    async def _do_get_endpoint(
        self, namespace: str, service: str, name: str, *, ctx: Optional[OperationContext] = None
    ) -> Endpoint:
        raise NotImplementedError

    async def _do_create_endpoint(
        self,
        namespace: str,
        service: str,
        name: str,
        address: str,
        port: int,
        metadata: Dict[str, str],
        *,
        ctx: Optional[OperationContext] = None,
    ) -> Endpoint:
        raise NotImplementedError

    async def _do_update_endpoint(
        self,
        namespace: str,
        service: str,
        name: str,
        address: str,
        port: int,
        metadata: Dict[str, str],
        *,
        ctx: Optional[OperationContext] = None,
    ) -> Endpoint:
        raise NotImplementedError

    async def _do_delete_endpoint(
        self, namespace: str, service: str, name: str, *, ctx: Optional[OperationContext] = None
    ) -> None:
        raise NotImplementedError

    async def _do_list_endpoints(
        self,
        namespace: str,
        service: str,
        options: ListOptions,
        cursor: Any,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> Page:
        raise NotImplementedError


# =============================================================================
# Public Exports
# =============================================================================

__all__ = [
    "REGISTRY_PROTOCOL_VERSION",
    "REGISTRY_PROTOCOL_ID",
    "DEFAULT_LIST_RESULTS",
    # model
    "Namespace",
    "Service",
    "Endpoint",
    "Resource",
    "namespace_path",
    "service_path",
    "endpoint_path",
    # errors
    "RegistryAdapterError",
    "NotFound",
    "NamespaceNotFound",
    "ServiceNotFound",
    "EndpointNotFound",
    "AlreadyExists",
    "NamespaceAlreadyExists",
    "ServiceAlreadyExists",
    "EndpointAlreadyExists",
    "IteratorDone",
    "BadRequest",
    "EmptyNamespaceName",
    "EmptyServiceName",
    "EmptyEndpointName",
    "NoClientProvided",
    "InvalidObjectToFilter",
    "IncompatibleNameFilters",
    "IncompatibleMetadataFilters",
    "IncompatibleAddressFilters",
    "EmptyMetadataKey",
    "InvalidResultsNumber",
    "InvalidCIDR",
    "InvalidPort",
    "InvalidPortRange",
    "InvalidAddress",
    "InvalidCacheExpirationTime",
    "NoProjectIDSet",
    "NoLocationSet",
    "ResourceDecodeError",
    "OperationFailed",
    "TransientNetwork",
    "DeadlineExceeded",
    "is_not_found",
    "is_already_exists",
    "is_iterator_done",
    # context, metrics, deadlines
    "OperationContext",
    "MetricsSink",
    "NoopMetrics",
    "DeadlinePolicy",
    "NoopDeadline",
    "SimpleDeadline",
    # cache
    "Cache",
    "NoopCache",
    "InMemoryTTLCache",
    # config
    "RegistryAdapterConfig",
    # filter
    "AddressFamily",
    "ListOptions",
    "is_valid_ip",
    "is_ipv4",
    "is_ipv6",
    "is_inside_cidr",
    # poller
    "OperationState",
    "OperationStatus",
    "OperationPoller",
    # iteration
    "Page",
    "ResourceIterator",
    # handles
    "RegisterMode",
    "NamespaceOperation",
    "ServiceOperation",
    "EndpointOperation",
    "BaseRegistryAdapter",
]
