# registry_sdk/registry/servicedirectory_adapter.py
# SPDX-License-Identifier: Apache-2.0
"""
Google Cloud Service Directory adapter for the Service Registry Protocol V1.0.

Resources live under `projects/<project>/locations/<region>`:

    .../namespaces/<ns>
    .../namespaces/<ns>/services/<svc>
    .../namespaces/<ns>/services/<svc>/endpoints/<ep>

Namespace metadata maps to labels; service and endpoint metadata map to
annotations. Listings push name and metadata predicates down as a Service
Directory filter string, and the filter engine still runs client-side.

Usage
-----
    from google.cloud import servicedirectory_v1
    from registry_sdk.registry.servicedirectory_adapter import ServiceDirectoryRegistryAdapter

    adapter = ServiceDirectoryRegistryAdapter(
        client=servicedirectory_v1.RegistrationServiceClient(),
        project_id="my-project",
        region="europe-west1",
    )
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Callable, Dict, Mapping, Optional, TypeVar

from registry_sdk.registry.registry_base import (
    PATH_ENDPOINTS,
    PATH_NAMESPACES,
    PATH_SERVICES,
    BaseRegistryAdapter,
    Endpoint,
    EndpointAlreadyExists,
    EndpointNotFound,
    ListOptions,
    Namespace,
    NamespaceAlreadyExists,
    NamespaceNotFound,
    NoClientProvided,
    NoLocationSet,
    NoProjectIDSet,
    OperationContext,
    Page,
    RegistryAdapterError,
    ResourceDecodeError,
    Service,
    ServiceAlreadyExists,
    ServiceNotFound,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

try:  # pragma: no cover - import surface only
    from google.cloud import servicedirectory_v1  # type: ignore
except Exception:  # pragma: no cover
    servicedirectory_v1 = None  # type: ignore[assignment]

LABELS = "labels"
ANNOTATIONS = "annotations"


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Support both dict-style and attribute-style (proto-plus) access."""
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _basename(path: str) -> str:
    return path.rstrip("/").rsplit("/", 1)[-1]


def build_list_filter(base_path: str, options: ListOptions, metadata_field: str) -> str:
    """
    Translate name and metadata predicates into a Service Directory filter.

    Names become `name=<base_path>/<name>` terms joined by OR; metadata
    entries with a non-empty value become `<labels|annotations>.<k>=<v>` terms
    joined by AND. Key-only metadata predicates are left to the client side.
    """
    parts = []

    names = [f"name={base_path}/{n}" for n in options.name_in]
    if len(names) == 1:
        parts.append(names[0])
    elif names:
        parts.append("(" + " OR ".join(names) + ")")

    values = [f"{metadata_field}.{k}={v}" for k, v in sorted(options.metadata.items()) if v]
    if len(values) == 1:
        parts.append(values[0])
    elif values:
        parts.append("(" + " AND ".join(values) + ")")

    return " AND ".join(parts)


class ServiceDirectoryRegistryAdapter(BaseRegistryAdapter):
    """
    Registry adapter backed by Google Cloud Service Directory
    (`servicedirectory_v1.RegistrationServiceClient`).

    Design notes
    ------------
    - Async-first: all client calls run via `asyncio.to_thread`.
    - Each listing call fetches exactly one page (`page_size`, `page_token`).
    - Vendor 404 / 409 errors become the registry not-found / already-exists
      errors; everything else is raised verbatim.
    """

    _component = "registry_servicedirectory"

    def __init__(
        self,
        *,
        client: Any = None,
        project_id: Optional[str] = None,
        region: Optional[str] = None,
        # BaseRegistryAdapter infra
        config=None,
        metrics=None,
        cache=None,
        poller=None,
        deadline_policy=None,
        cache_ttl_s: Optional[float] = None,
    ) -> None:
        project_id = project_id or os.getenv("GOOGLE_CLOUD_PROJECT") or ""
        region = region or os.getenv("SERVICE_DIRECTORY_REGION") or ""
        if not project_id:
            raise NoProjectIDSet()
        if not region:
            raise NoLocationSet()

        if client is None:
            if servicedirectory_v1 is None:
                raise NoClientProvided(
                    "ServiceDirectoryRegistryAdapter requires the `google-cloud-service-directory` "
                    "Python package or an explicit client."
                )
            client = servicedirectory_v1.RegistrationServiceClient()

        self._client = client
        self._project_id = project_id
        self._region = region
        self._base_path = f"projects/{project_id}/locations/{region}"

        super().__init__(
            config=config,
            metrics=metrics,
            cache=cache,
            poller=poller,
            deadline_policy=deadline_policy,
            cache_ttl_s=cache_ttl_s,
        )

    @property
    def base_path(self) -> str:
        return self._base_path

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    async def _run_in_thread(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(func, *args, **kwargs)

    def _namespace_name(self, namespace: str) -> str:
        return f"{self._base_path}/{PATH_NAMESPACES}/{namespace}"

    def _service_name(self, namespace: str, service: str) -> str:
        return f"{self._namespace_name(namespace)}/{PATH_SERVICES}/{service}"

    def _endpoint_name(self, namespace: str, service: str, endpoint: str) -> str:
        return f"{self._service_name(namespace, service)}/{PATH_ENDPOINTS}/{endpoint}"

    @staticmethod
    def _status_code(err: Exception) -> Optional[int]:
        code = getattr(err, "code", None)
        if code is None or callable(code):
            return None
        try:
            return int(code)
        except (TypeError, ValueError):
            return None

    async def _call(
        self,
        method: str,
        request: Dict[str, Any],
        *,
        not_found: type,
        already_exists: Optional[type] = None,
    ) -> Any:
        func = getattr(self._client, method)
        try:
            return await self._run_in_thread(func, request=request)
        except Exception as exc:  # noqa: BLE001
            status = self._status_code(exc)
            translated: Optional[RegistryAdapterError] = None
            if status == 404:
                translated = not_found(details={"op": method})
            elif status == 409 and already_exists is not None:
                translated = already_exists(details={"op": method})
            if translated is None:
                raise
            logger.debug("Service Directory error in %s: %r", method, exc)
            raise translated from exc

    @staticmethod
    def _metadata(raw: Any, field_name: str) -> Dict[str, str]:
        values = _field(raw, field_name) or {}
        return {str(k): str(v) for k, v in dict(values).items()}

    async def _list_page(
        self,
        method: str,
        parent: str,
        items_field: str,
        metadata_field: str,
        kind_path: str,
        options: ListOptions,
        cursor: Any,
        not_found: type,
    ) -> Page:
        request: Dict[str, Any] = {
            "parent": parent,
            "page_size": options.page_size(self.config.default_page_size),
        }
        flt = build_list_filter(f"{parent}/{kind_path}", options, metadata_field)
        if flt:
            request["filter"] = flt
        if cursor:
            request["page_token"] = cursor
        response = await self._call(method, request, not_found=not_found)
        token = _field(response, "next_page_token") or None
        return Page(items=list(_field(response, items_field) or []), cursor=token, has_more=bool(token))

    # ------------------------------------------------------------------ #
    # Decoders
    # ------------------------------------------------------------------ #

    async def _decode_namespace(self, raw: Any, *, ctx: Optional[OperationContext] = None) -> Namespace:
        name = _field(raw, "name")
        if not name:
            raise ResourceDecodeError(details={"kind": "namespace"})
        return Namespace(name=_basename(name), metadata=self._metadata(raw, LABELS), original_object=raw)

    async def _decode_service(
        self, namespace: str, raw: Any, *, ctx: Optional[OperationContext] = None
    ) -> Service:
        name = _field(raw, "name")
        if not name:
            raise ResourceDecodeError(details={"kind": "service"})
        return Service(
            name=_basename(name),
            namespace=namespace,
            metadata=self._metadata(raw, ANNOTATIONS),
            original_object=raw,
        )

    async def _decode_endpoint(
        self, namespace: str, service: str, raw: Any, *, ctx: Optional[OperationContext] = None
    ) -> Endpoint:
        name = _field(raw, "name")
        if not name:
            raise ResourceDecodeError(details={"kind": "endpoint"})
        return Endpoint(
            name=_basename(name),
            service=service,
            namespace=namespace,
            address=str(_field(raw, "address") or ""),
            port=int(_field(raw, "port") or 0),
            metadata=self._metadata(raw, ANNOTATIONS),
            original_object=raw,
        )

    # ------------------------------------------------------------------ #
    # Namespaces
    # ------------------------------------------------------------------ #

    async def _do_get_namespace(self, name: str, *, ctx: Optional[OperationContext] = None) -> Namespace:
        raw = await self._call(
            "get_namespace", {"name": self._namespace_name(name)}, not_found=NamespaceNotFound
        )
        return await self._decode_namespace(raw, ctx=ctx)

    async def _do_create_namespace(
        self, name: str, metadata: Dict[str, str], *, ctx: Optional[OperationContext] = None
    ) -> Namespace:
        raw = await self._call(
            "create_namespace",
            {
                "parent": self._base_path,
                "namespace_id": name,
                "namespace": {"name": self._namespace_name(name), LABELS: dict(metadata)},
            },
            not_found=NamespaceNotFound,
            already_exists=NamespaceAlreadyExists,
        )
        return await self._decode_namespace(raw, ctx=ctx)

    async def _do_update_namespace(
        self, name: str, metadata: Dict[str, str], *, ctx: Optional[OperationContext] = None
    ) -> Namespace:
        raw = await self._call(
            "update_namespace",
            {
                "namespace": {"name": self._namespace_name(name), LABELS: dict(metadata)},
                "update_mask": {"paths": [LABELS]},
            },
            not_found=NamespaceNotFound,
        )
        return await self._decode_namespace(raw, ctx=ctx)

    async def _do_delete_namespace(self, name: str, *, ctx: Optional[OperationContext] = None) -> None:
        await self._call(
            "delete_namespace", {"name": self._namespace_name(name)}, not_found=NamespaceNotFound
        )

    async def _do_list_namespaces(
        self, options: ListOptions, cursor: Any, *, ctx: Optional[OperationContext] = None
    ) -> Page:
        return await self._list_page(
            "list_namespaces", self._base_path, "namespaces", LABELS, PATH_NAMESPACES,
            options, cursor, NamespaceNotFound,
        )

    # ------------------------------------------------------------------ #
    # Services
    # ------------------------------------------------------------------ #

    async def _do_get_service(
        self, namespace: str, name: str, *, ctx: Optional[OperationContext] = None
    ) -> Service:
        raw = await self._call(
            "get_service", {"name": self._service_name(namespace, name)}, not_found=ServiceNotFound
        )
        return await self._decode_service(namespace, raw, ctx=ctx)

    async def _do_create_service(
        self, namespace: str, name: str, metadata: Dict[str, str], *, ctx: Optional[OperationContext] = None
    ) -> Service:
        raw = await self._call(
            "create_service",
            {
                "parent": self._namespace_name(namespace),
                "service_id": name,
                "service": {"name": self._service_name(namespace, name), ANNOTATIONS: dict(metadata)},
            },
            not_found=NamespaceNotFound,
            already_exists=ServiceAlreadyExists,
        )
        return await self._decode_service(namespace, raw, ctx=ctx)

    async def _do_update_service(
        self, namespace: str, name: str, metadata: Dict[str, str], *, ctx: Optional[OperationContext] = None
    ) -> Service:
        raw = await self._call(
            "update_service",
            {
                "service": {"name": self._service_name(namespace, name), ANNOTATIONS: dict(metadata)},
                "update_mask": {"paths": [ANNOTATIONS]},
            },
            not_found=ServiceNotFound,
        )
        return await self._decode_service(namespace, raw, ctx=ctx)

    async def _do_delete_service(
        self, namespace: str, name: str, *, ctx: Optional[OperationContext] = None
    ) -> None:
        await self._call(
            "delete_service", {"name": self._service_name(namespace, name)}, not_found=ServiceNotFound
        )

    async def _do_list_services(
        self, namespace: str, options: ListOptions, cursor: Any, *, ctx: Optional[OperationContext] = None
    ) -> Page:
        return await self._list_page(
            "list_services", self._namespace_name(namespace), "services", ANNOTATIONS, PATH_SERVICES,
            options, cursor, NamespaceNotFound,
        )

    # ------------------------------------------------------------------ #
    # Endpoints
    # ------------------------------------------------------------------ #

    async def _do_get_endpoint(
        self, namespace: str, service: str, name: str, *, ctx: Optional[OperationContext] = None
    ) -> Endpoint:
        raw = await self._call(
            "get_endpoint",
            {"name": self._endpoint_name(namespace, service, name)},
            not_found=EndpointNotFound,
        )
        return await self._decode_endpoint(namespace, service, raw, ctx=ctx)

    def _endpoint_body(
        self, namespace: str, service: str, name: str, address: str, port: int, metadata: Dict[str, str]
    ) -> Dict[str, Any]:
        return {
            "name": self._endpoint_name(namespace, service, name),
            "address": address,
            "port": port,
            ANNOTATIONS: dict(metadata),
        }

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
        raw = await self._call(
            "create_endpoint",
            {
                "parent": self._service_name(namespace, service),
                "endpoint_id": name,
                "endpoint": self._endpoint_body(namespace, service, name, address, port, metadata),
            },
            not_found=ServiceNotFound,
            already_exists=EndpointAlreadyExists,
        )
        return await self._decode_endpoint(namespace, service, raw, ctx=ctx)

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
        raw = await self._call(
            "update_endpoint",
            {
                "endpoint": self._endpoint_body(namespace, service, name, address, port, metadata),
                "update_mask": {"paths": [ANNOTATIONS, "address", "port"]},
            },
            not_found=EndpointNotFound,
        )
        return await self._decode_endpoint(namespace, service, raw, ctx=ctx)

    async def _do_delete_endpoint(
        self, namespace: str, service: str, name: str, *, ctx: Optional[OperationContext] = None
    ) -> None:
        await self._call(
            "delete_endpoint",
            {"name": self._endpoint_name(namespace, service, name)},
            not_found=EndpointNotFound,
        )

    async def _do_list_endpoints(
        self,
        namespace: str,
        service: str,
        options: ListOptions,
        cursor: Any,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> Page:
        return await self._list_page(
            "list_endpoints", self._service_name(namespace, service), "endpoints", ANNOTATIONS,
            PATH_ENDPOINTS, options, cursor, ServiceNotFound,
        )


__all__ = ["ServiceDirectoryRegistryAdapter", "build_list_filter"]
