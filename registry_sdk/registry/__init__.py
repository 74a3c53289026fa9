# registry_sdk/registry/__init__.py
# SPDX-License-Identifier: Apache-2.0

"""
Service Registry Protocol V1 - Public API

This module provides the public interface for the Service Registry Protocol.
All public types and the base adapter are re-exported here for clean imports.
Vendor adapters live in their own modules so their SDKs stay optional:

    from registry_sdk.registry.etcd_adapter import EtcdRegistryAdapter
"""

from registry_sdk.registry.registry_base import (
    # Protocol version
    REGISTRY_PROTOCOL_VERSION,
    REGISTRY_PROTOCOL_ID,
    DEFAULT_LIST_RESULTS,

    # Resource model
    Namespace,
    Service,
    Endpoint,
    Resource,
    namespace_path,
    service_path,
    endpoint_path,

    # Error types
    RegistryAdapterError,
    NotFound,
    NamespaceNotFound,
    ServiceNotFound,
    EndpointNotFound,
    AlreadyExists,
    NamespaceAlreadyExists,
    ServiceAlreadyExists,
    EndpointAlreadyExists,
    IteratorDone,
    BadRequest,
    EmptyNamespaceName,
    EmptyServiceName,
    EmptyEndpointName,
    NoClientProvided,
    InvalidObjectToFilter,
    IncompatibleNameFilters,
    IncompatibleMetadataFilters,
    IncompatibleAddressFilters,
    EmptyMetadataKey,
    InvalidResultsNumber,
    InvalidCIDR,
    InvalidPort,
    InvalidPortRange,
    InvalidAddress,
    InvalidCacheExpirationTime,
    NoProjectIDSet,
    NoLocationSet,
    ResourceDecodeError,
    OperationFailed,
    TransientNetwork,
    DeadlineExceeded,
    is_not_found,
    is_already_exists,
    is_iterator_done,

    # Context and metrics
    OperationContext,
    MetricsSink,
    NoopMetrics,

    # Policy interfaces and implementations
    DeadlinePolicy,
    NoopDeadline,
    SimpleDeadline,
    Cache,
    NoopCache,
    InMemoryTTLCache,

    # Configuration
    RegistryAdapterConfig,

    # Filtering
    AddressFamily,
    ListOptions,

    # Async operations
    OperationState,
    OperationStatus,
    OperationPoller,

    # Iteration
    Page,
    ResourceIterator,

    # Handles and base adapter
    RegisterMode,
    NamespaceOperation,
    ServiceOperation,
    EndpointOperation,
    BaseRegistryAdapter,
)

__all__ = [
    "REGISTRY_PROTOCOL_VERSION",
    "REGISTRY_PROTOCOL_ID",
    "DEFAULT_LIST_RESULTS",
    "Namespace",
    "Service",
    "Endpoint",
    "Resource",
    "namespace_path",
    "service_path",
    "endpoint_path",
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
    "OperationContext",
    "MetricsSink",
    "NoopMetrics",
    "DeadlinePolicy",
    "NoopDeadline",
    "SimpleDeadline",
    "Cache",
    "NoopCache",
    "InMemoryTTLCache",
    "RegistryAdapterConfig",
    "AddressFamily",
    "ListOptions",
    "OperationState",
    "OperationStatus",
    "OperationPoller",
    "Page",
    "ResourceIterator",
    "RegisterMode",
    "NamespaceOperation",
    "ServiceOperation",
    "EndpointOperation",
    "BaseRegistryAdapter",
]
