# registry_sdk/registry/cloudmap_adapter.py
# SPDX-License-Identifier: Apache-2.0
"""
AWS Cloud Map adapter for the Service Registry Protocol V1.0.

Mapping
-------
- Namespace -> HTTP namespace, metadata -> resource tags
- Service   -> service (type HTTP) inside the namespace, metadata -> tags
- Endpoint  -> instance; address/port live in the AWS_INSTANCE_IPV4 /
  AWS_INSTANCE_IPV6 / AWS_INSTANCE_PORT attributes, every other attribute
  is metadata

Cloud Map addresses resources by generated IDs, not names. The adapter keeps
`<path>/id` and `<path>/arn` identity entries in the cache and falls back to a
filtered listing when an ID is unknown. Namespace create/delete and instance
register/deregister are asynchronous on the AWS side; they block on the
operation poller before returning.

Usage
-----
    import boto3
    from registry_sdk.registry.cloudmap_adapter import CloudMapRegistryAdapter

    adapter = CloudMapRegistryAdapter(client=boto3.client("servicediscovery", region_name="eu-west-1"))
    await adapter.namespace("hr").service("payroll").endpoint("payroll-1").create("10.0.0.7", 8080)
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, TypeVar

from registry_sdk.registry.registry_base import (
    IDENTITY_ARN,
    IDENTITY_ID,
    BaseRegistryAdapter,
    Endpoint,
    EndpointNotFound,
    IteratorDone,
    ListOptions,
    Namespace,
    NamespaceAlreadyExists,
    NamespaceNotFound,
    NoClientProvided,
    NotFound,
    OperationContext,
    OperationStatus,
    Page,
    RegistryAdapterError,
    Resource,
    ResourceDecodeError,
    Service,
    ServiceAlreadyExists,
    ServiceNotFound,
    is_ipv4,
    namespace_path,
    service_path,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

try:  # pragma: no cover - import surface only
    import boto3  # type: ignore
except Exception:  # pragma: no cover
    boto3 = None  # type: ignore[assignment]

ATTR_IPV4 = "AWS_INSTANCE_IPV4"
ATTR_IPV6 = "AWS_INSTANCE_IPV6"
ATTR_PORT = "AWS_INSTANCE_PORT"
RESERVED_ATTRIBUTES = frozenset({ATTR_IPV4, ATTR_IPV6, ATTR_PORT})

TARGET_NAMESPACE = "NAMESPACE"
SERVICE_TYPE_HTTP = "HTTP"

_NOT_FOUND_CODES: Dict[str, type] = {
    "NamespaceNotFound": NamespaceNotFound,
    "ServiceNotFound": ServiceNotFound,
    "InstanceNotFound": EndpointNotFound,
    "OperationNotFound": NotFound,
    "ResourceNotFoundException": NotFound,
}

_ALREADY_EXISTS_CODES: Dict[str, type] = {
    "NamespaceAlreadyExists": NamespaceAlreadyExists,
    "ServiceAlreadyExists": ServiceAlreadyExists,
}


# ---------------------------------------------------------------------------
# Vendor representations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Summary:
    """A `*Summary` shape returned by Cloud Map list calls."""
    payload: Mapping[str, Any]


@dataclass(frozen=True)
class Full:
    """A full shape returned by Cloud Map get calls."""
    payload: Mapping[str, Any]


_SUMMARY_FIELDS = {
    "namespace": (
        "Id", "Arn", "Name", "Type", "Description", "ServiceCount", "Properties", "CreateDate",
    ),
    "service": (
        "Id", "Arn", "Name", "Type", "Description", "InstanceCount", "DnsConfig",
        "HealthCheckConfig", "HealthCheckCustomConfig", "CreateDate", "NamespaceId",
    ),
    "endpoint": ("Id", "Attributes"),
}


def to_full(record: Any, kind: str) -> Dict[str, Any]:
    """Resolve a Summary/Full variant into the full vendor dict."""
    if isinstance(record, Full):
        return dict(record.payload)
    if isinstance(record, Summary):
        return {k: record.payload[k] for k in _SUMMARY_FIELDS[kind] if k in record.payload}
    raise ResourceDecodeError(details={"kind": kind})


def tags_to_metadata(tags: Optional[List[Mapping[str, Any]]]) -> Dict[str, str]:
    return {str(t.get("Key", "")): str(t.get("Value", "")) for t in (tags or [])}


def metadata_to_tags(metadata: Mapping[str, str]) -> List[Dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in metadata.items()]


def instance_to_endpoint(namespace: str, service: str, instance: Mapping[str, Any]) -> Endpoint:
    attributes = dict(instance.get("Attributes") or {})
    address = attributes.get(ATTR_IPV4) or attributes.get(ATTR_IPV6) or ""
    try:
        port = int(attributes.get(ATTR_PORT) or 0)
    except ValueError:
        port = 0
    return Endpoint(
        name=str(instance.get("Id", "")),
        service=service,
        namespace=namespace,
        address=address,
        port=port,
        metadata={k: v for k, v in attributes.items() if k not in RESERVED_ATTRIBUTES},
        original_object=dict(instance),
    )


def endpoint_attributes(address: str, port: int, metadata: Mapping[str, str]) -> Dict[str, str]:
    attributes = {k: v for k, v in metadata.items() if k not in RESERVED_ATTRIBUTES}
    if address:
        attributes[ATTR_IPV4 if is_ipv4(address) else ATTR_IPV6] = address
    if port:
        attributes[ATTR_PORT] = str(port)
    return attributes


class CloudMapRegistryAdapter(BaseRegistryAdapter):
    """
    Registry adapter backed by AWS Cloud Map (boto3 `servicediscovery` client).

    Design notes
    ------------
    - Async-first: all boto3 calls run via `asyncio.to_thread`.
    - Vendor not-found / already-exists error codes are translated into the
      registry error taxonomy; every other client error is raised verbatim.
    - `original_object` is the full Cloud Map dict (namespace, service or
      instance) with summaries already expanded.
    """

    _component = "registry_cloudmap"

    def __init__(
        self,
        *,
        client: Any = None,
        region_name: Optional[str] = None,
        # BaseRegistryAdapter infra
        config=None,
        metrics=None,
        cache=None,
        poller=None,
        deadline_policy=None,
        cache_ttl_s: Optional[float] = None,
    ) -> None:
        if client is None:
            if boto3 is None:
                raise NoClientProvided(
                    "CloudMapRegistryAdapter requires the `boto3` Python package or an explicit client. "
                    "Install via `pip install boto3`."
                )
            region_name = region_name or os.getenv("AWS_REGION")
            client = boto3.client("servicediscovery", region_name=region_name)

        self._client = client

        super().__init__(
            config=config,
            metrics=metrics,
            cache=cache,
            poller=poller,
            deadline_policy=deadline_policy,
            cache_ttl_s=cache_ttl_s,
        )

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    async def _run_in_thread(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(func, *args, **kwargs)

    @staticmethod
    def _error_code(err: Exception) -> Optional[str]:
        response = getattr(err, "response", None)
        if isinstance(response, Mapping):
            code = (response.get("Error") or {}).get("Code")
            if code:
                return str(code)
        return None

    def _translate_error(self, err: Exception, *, op: str, not_found: type = NotFound) -> Optional[RegistryAdapterError]:
        """
        Map Cloud Map client errors into registry errors.

        Returns None when the error has no registry equivalent and must be
        raised as-is.
        """
        code = self._error_code(err)
        if code is None:
            return None
        details = {"op": op, "aws_code": code}
        if code in _NOT_FOUND_CODES:
            cls = _NOT_FOUND_CODES[code]
            if cls is NotFound:
                cls = not_found
            return cls(details=details)
        if code in _ALREADY_EXISTS_CODES:
            return _ALREADY_EXISTS_CODES[code](details=details)
        return None

    async def _call(self, method: str, *, not_found: type = NotFound, **kwargs: Any) -> Dict[str, Any]:
        func = getattr(self._client, method)
        params = {k: v for k, v in kwargs.items() if v is not None}
        try:
            return await self._run_in_thread(func, **params)
        except Exception as exc:  # noqa: BLE001
            translated = self._translate_error(exc, op=method, not_found=not_found)
            if translated is None:
                raise
            logger.debug("Cloud Map error in %s: %r", method, exc)
            raise translated from exc

    async def _wait(self, operation_id: str, ctx: Optional[OperationContext]) -> OperationStatus:
        async def query() -> OperationStatus:
            out = await self._call("get_operation", OperationId=operation_id)
            op = out.get("Operation") or {}
            return OperationStatus(
                state=str(op.get("Status", "")),
                error_message=op.get("ErrorMessage"),
                payload=op,
                operation_id=operation_id,
            )

        return await self._wait_operation(query, ctx=ctx, operation_id=operation_id)

    async def _tags(self, arn: str, *, not_found: type) -> Dict[str, str]:
        out = await self._call("list_tags_for_resource", ResourceARN=arn, not_found=not_found)
        return tags_to_metadata(out.get("Tags"))

    async def _update_tags(self, arn: str, metadata: Mapping[str, str], *, not_found: type) -> None:
        """Tag first, then untag what is no longer wanted (TagResource is additive)."""
        if metadata:
            await self._call("tag_resource", ResourceARN=arn, Tags=metadata_to_tags(metadata), not_found=not_found)
        existing = await self._tags(arn, not_found=not_found)
        to_remove = [k for k in existing if k not in metadata]
        if to_remove:
            await self._call("untag_resource", ResourceARN=arn, TagKeys=to_remove, not_found=not_found)

    def _identity_of(self, obj: Resource) -> Mapping[str, Any]:
        original = obj.original_object
        if isinstance(obj, Endpoint) or not isinstance(original, Mapping):
            return {}
        return {IDENTITY_ID: original.get("Id"), IDENTITY_ARN: original.get("Arn")}

    async def _first(self, iterator, ctx: Optional[OperationContext], not_found: type):
        try:
            obj, _ = await iterator.next(ctx)
        except IteratorDone:
            raise not_found()
        return obj

    async def _namespace_id(self, name: str, ctx: Optional[OperationContext]) -> str:
        cached = await self._cached_identity(namespace_path(name), IDENTITY_ID)
        if cached:
            return cached
        ns = await self.namespace(name).get(ctx)
        return ns.original_object["Id"]

    async def _service_id(self, namespace: str, name: str, ctx: Optional[OperationContext]) -> str:
        cached = await self._cached_identity(service_path(namespace, name), IDENTITY_ID)
        if cached:
            return cached
        svc = await self.namespace(namespace).service(name).get(ctx)
        return svc.original_object["Id"]

    # ------------------------------------------------------------------ #
    # Decoders
    # ------------------------------------------------------------------ #

    async def _decode_namespace(self, raw: Any, *, ctx: Optional[OperationContext] = None) -> Namespace:
        full = to_full(raw, "namespace")
        try:
            metadata = await self._tags(full["Arn"], not_found=NamespaceNotFound)
        except NotFound as exc:
            # deleted between the listing and the tag lookup
            raise ResourceDecodeError(details={"kind": "namespace"}) from exc
        return Namespace(name=str(full.get("Name", "")), metadata=metadata, original_object=full)

    async def _decode_service(
        self, namespace: str, raw: Any, *, ctx: Optional[OperationContext] = None
    ) -> Service:
        full = to_full(raw, "service")
        if isinstance(raw, Summary) and "NamespaceId" not in full:
            ns_id = await self._cached_identity(namespace_path(namespace), IDENTITY_ID)
            if ns_id:
                full["NamespaceId"] = ns_id
        try:
            metadata = await self._tags(full["Arn"], not_found=ServiceNotFound)
        except NotFound as exc:
            raise ResourceDecodeError(details={"kind": "service"}) from exc
        return Service(
            name=str(full.get("Name", "")),
            namespace=namespace,
            metadata=metadata,
            original_object=full,
        )

    async def _decode_endpoint(
        self, namespace: str, service: str, raw: Any, *, ctx: Optional[OperationContext] = None
    ) -> Endpoint:
        return instance_to_endpoint(namespace, service, to_full(raw, "endpoint"))

    # ------------------------------------------------------------------ #
    # Namespaces
    # ------------------------------------------------------------------ #

    async def _namespace_by_id(self, name: str, ns_id: str, ctx: Optional[OperationContext]) -> Namespace:
        try:
            out = await self._call("get_namespace", Id=ns_id, not_found=NamespaceNotFound)
        except Exception:
            await self._forget(namespace_path(name))
            raise
        return await self._decode_namespace(Full(out["Namespace"]), ctx=ctx)

    async def _do_get_namespace(self, name: str, *, ctx: Optional[OperationContext] = None) -> Namespace:
        ns_id = await self._cached_identity(namespace_path(name), IDENTITY_ID)
        if ns_id:
            return await self._namespace_by_id(name, ns_id, ctx)
        return await self._first(self.namespace(name).list(), ctx, NamespaceNotFound)

    async def _do_create_namespace(
        self, name: str, metadata: Dict[str, str], *, ctx: Optional[OperationContext] = None
    ) -> Namespace:
        out = await self._call("create_http_namespace", Name=name, Tags=metadata_to_tags(metadata))
        status = await self._wait(out["OperationId"], ctx)
        ns_id = ((status.payload or {}).get("Targets") or {}).get(TARGET_NAMESPACE)
        if not ns_id:
            return await self._first(self.namespace(name).list(), ctx, NamespaceNotFound)
        return await self._namespace_by_id(name, ns_id, ctx)

    async def _do_update_namespace(
        self, name: str, metadata: Dict[str, str], *, ctx: Optional[OperationContext] = None
    ) -> Namespace:
        current = await self.namespace(name).get(ctx)
        original = current.original_object
        await self._update_tags(original["Arn"], metadata, not_found=NamespaceNotFound)
        return await self._namespace_by_id(name, original["Id"], ctx)

    async def _do_delete_namespace(self, name: str, *, ctx: Optional[OperationContext] = None) -> None:
        current = await self.namespace(name).get(ctx)
        out = await self._call("delete_namespace", Id=current.original_object["Id"], not_found=NamespaceNotFound)
        await self._wait(out["OperationId"], ctx)

    async def _do_list_namespaces(
        self, options: ListOptions, cursor: Any, *, ctx: Optional[OperationContext] = None
    ) -> Page:
        filters = None
        if len(options.name_in) == 1:
            filters = [{"Name": "NAME", "Values": list(options.name_in), "Condition": "EQ"}]
        elif options.name_prefix:
            filters = [{"Name": "NAME", "Values": [options.name_prefix], "Condition": "BEGINS_WITH"}]
        out = await self._call(
            "list_namespaces",
            MaxResults=options.page_size(self.config.default_page_size),
            NextToken=cursor,
            Filters=filters,
        )
        token = out.get("NextToken")
        return Page(
            items=[Summary(ns) for ns in out.get("Namespaces") or []],
            cursor=token,
            has_more=token is not None,
        )

    # ------------------------------------------------------------------ #
    # Services
    # ------------------------------------------------------------------ #

    async def _service_by_id(
        self, namespace: str, name: str, svc_id: str, ctx: Optional[OperationContext]
    ) -> Service:
        try:
            out = await self._call("get_service", Id=svc_id, not_found=ServiceNotFound)
        except Exception:
            await self._forget(service_path(namespace, name))
            raise
        return await self._decode_service(namespace, Full(out["Service"]), ctx=ctx)

    async def _do_get_service(
        self, namespace: str, name: str, *, ctx: Optional[OperationContext] = None
    ) -> Service:
        svc_id = await self._cached_identity(service_path(namespace, name), IDENTITY_ID)
        if svc_id:
            return await self._service_by_id(namespace, name, svc_id, ctx)
        return await self._first(self.namespace(namespace).service(name).list(), ctx, ServiceNotFound)

    async def _do_create_service(
        self, namespace: str, name: str, metadata: Dict[str, str], *, ctx: Optional[OperationContext] = None
    ) -> Service:
        ns_id = await self._namespace_id(namespace, ctx)
        out = await self._call(
            "create_service",
            Name=name,
            NamespaceId=ns_id,
            Tags=metadata_to_tags(metadata),
            Type=SERVICE_TYPE_HTTP,
        )
        return await self._service_by_id(namespace, name, out["Service"]["Id"], ctx)

    async def _do_update_service(
        self, namespace: str, name: str, metadata: Dict[str, str], *, ctx: Optional[OperationContext] = None
    ) -> Service:
        current = await self.namespace(namespace).service(name).get(ctx)
        original = current.original_object
        await self._update_tags(original["Arn"], metadata, not_found=ServiceNotFound)
        return await self._service_by_id(namespace, name, original["Id"], ctx)

    async def _do_delete_service(
        self, namespace: str, name: str, *, ctx: Optional[OperationContext] = None
    ) -> None:
        current = await self.namespace(namespace).service(name).get(ctx)
        await self._call("delete_service", Id=current.original_object["Id"], not_found=ServiceNotFound)

    async def _do_list_services(
        self, namespace: str, options: ListOptions, cursor: Any, *, ctx: Optional[OperationContext] = None
    ) -> Page:
        if cursor is None:
            ns_id, token = await self._namespace_id(namespace, ctx), None
        else:
            ns_id, token = cursor
        out = await self._call(
            "list_services",
            Filters=[{"Name": "NAMESPACE_ID", "Values": [ns_id], "Condition": "EQ"}],
            MaxResults=options.page_size(self.config.default_page_size),
            NextToken=token,
        )
        token = out.get("NextToken")
        items = []
        for svc in out.get("Services") or []:
            items.append(Summary({**svc, "NamespaceId": ns_id}))
        return Page(items=items, cursor=(ns_id, token), has_more=token is not None)

    # ------------------------------------------------------------------ #
    # Endpoints
    # ------------------------------------------------------------------ #

    async def _do_get_endpoint(
        self, namespace: str, service: str, name: str, *, ctx: Optional[OperationContext] = None
    ) -> Endpoint:
        svc_id = await self._service_id(namespace, service, ctx)
        out = await self._call("get_instance", ServiceId=svc_id, InstanceId=name, not_found=EndpointNotFound)
        return await self._decode_endpoint(namespace, service, Full(out["Instance"]), ctx=ctx)

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
        svc_id = await self._service_id(namespace, service, ctx)
        out = await self._call(
            "register_instance",
            ServiceId=svc_id,
            InstanceId=name,
            Attributes=endpoint_attributes(address, port, metadata),
            not_found=ServiceNotFound,
        )
        await self._wait(out["OperationId"], ctx)
        return await self._do_get_endpoint(namespace, service, name, ctx=ctx)

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
        # RegisterInstance overwrites an instance with the same ID
        return await self._do_create_endpoint(namespace, service, name, address, port, metadata, ctx=ctx)

    async def _do_delete_endpoint(
        self, namespace: str, service: str, name: str, *, ctx: Optional[OperationContext] = None
    ) -> None:
        svc_id = await self._service_id(namespace, service, ctx)
        out = await self._call(
            "deregister_instance", ServiceId=svc_id, InstanceId=name, not_found=EndpointNotFound
        )
        await self._wait(out["OperationId"], ctx)

    async def _do_list_endpoints(
        self,
        namespace: str,
        service: str,
        options: ListOptions,
        cursor: Any,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> Page:
        if cursor is None:
            svc_id, token = await self._service_id(namespace, service, ctx), None
        else:
            svc_id, token = cursor
        out = await self._call(
            "list_instances",
            ServiceId=svc_id,
            MaxResults=options.page_size(self.config.default_page_size),
            NextToken=token,
        )
        token = out.get("NextToken")
        return Page(
            items=[Summary(inst) for inst in out.get("Instances") or []],
            cursor=(svc_id, token),
            has_more=token is not None,
        )


__all__ = [
    "CloudMapRegistryAdapter",
    "Summary",
    "Full",
    "to_full",
    "instance_to_endpoint",
    "endpoint_attributes",
]
