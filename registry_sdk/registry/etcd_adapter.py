# registry_sdk/registry/etcd_adapter.py
# SPDX-License-Identifier: Apache-2.0
"""
etcd adapter for the Service Registry Protocol V1.0.

Each resource is one YAML document stored under a hierarchical key:

    /namespaces/<ns>
    /namespaces/<ns>/services/<svc>
    /namespaces/<ns>/services/<svc>/endpoints/<ep>

Goals
-----
- Map registry operations onto plain etcd key/value calls.
- Keep every blocking client call off the event loop (`asyncio.to_thread`).
- Page listings with key-range scans; the cursor is the last key seen.

Usage
-----
    import etcd3
    from registry_sdk.registry.etcd_adapter import EtcdRegistryAdapter

    adapter = EtcdRegistryAdapter(client=etcd3.client(host="localhost", port=2379))
    await adapter.namespace("hr").create({"team": "people"})
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

import yaml

from registry_sdk.registry.registry_base import (
    PATH_ENDPOINTS,
    PATH_NAMESPACES,
    PATH_SERVICES,
    BaseRegistryAdapter,
    Endpoint,
    EndpointNotFound,
    ListOptions,
    Namespace,
    NamespaceNotFound,
    NoClientProvided,
    OperationContext,
    Page,
    ResourceDecodeError,
    Service,
    ServiceNotFound,
    endpoint_path,
    is_not_found,
    namespace_path,
    service_path,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

try:  # pragma: no cover - import surface only
    import etcd3  # type: ignore
except Exception:  # pragma: no cover
    etcd3 = None  # type: ignore[assignment]

DEFAULT_ETCD_HOST = "localhost"
DEFAULT_ETCD_PORT = 2379


def _prefix_range_end(prefix: str) -> str:
    """Smallest key greater than every key starting with prefix."""
    return prefix[:-1] + chr(ord(prefix[-1]) + 1)


def _to_text(raw: Any) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8")
    return str(raw)


class EtcdRegistryAdapter(BaseRegistryAdapter):
    """
    Registry adapter backed by an etcd v3 cluster (python-etcd3 client).

    Design notes
    ------------
    - Create and update are the same `put`; etcd has no conditional insert here.
    - Delete removes the key and every key below it.
    - Child reads and creates check that the parent exists first. With
      `delete_orphans=True` a child read whose parent is gone deletes the child
      before raising the parent's not-found error.
    - `original_object` holds the raw `(key, value)` pair read from etcd.
    """

    _component = "registry_etcd"

    def __init__(
        self,
        *,
        client: Any = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        delete_orphans: bool = False,
        # BaseRegistryAdapter infra
        config=None,
        metrics=None,
        cache=None,
        poller=None,
        deadline_policy=None,
        cache_ttl_s: Optional[float] = None,
    ) -> None:
        if client is None:
            if etcd3 is None:
                raise NoClientProvided(
                    "EtcdRegistryAdapter requires the `etcd3` Python package or an explicit client. "
                    "Install via `pip install etcd3`."
                )
            host = host or os.getenv("ETCD_HOST") or DEFAULT_ETCD_HOST
            port = int(port or os.getenv("ETCD_PORT") or DEFAULT_ETCD_PORT)
            client = etcd3.client(host=host, port=port)

        self._client = client
        self._delete_orphans = bool(delete_orphans)

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

    async def _get_key(self, key: str) -> Optional[Tuple[str, bytes]]:
        value, meta = await self._run_in_thread(self._client.get, key)
        if value is None:
            return None
        return (_to_text(getattr(meta, "key", key)), value)

    async def _put(self, key: str, document: Mapping[str, Any]) -> None:
        body = yaml.safe_dump(dict(document), default_flow_style=False, sort_keys=False)
        await self._run_in_thread(self._client.put, key, body)

    async def _delete_tree(self, key: str) -> None:
        await self._run_in_thread(self._client.delete, key)
        await self._run_in_thread(self._client.delete_prefix, key + "/")

    async def _list_children(self, prefix: str, options: ListOptions, cursor: Any) -> Page:
        """
        One key-range scan below prefix.

        Keys that are not direct children (e.g. services while listing
        namespaces) still advance the cursor but are not returned.
        """
        limit = options.page_size(self.config.default_page_size)
        start = (cursor + "\0") if cursor else prefix
        results = await self._run_in_thread(
            lambda: list(self._client.get_range(start, _prefix_range_end(prefix), limit=limit))
        )

        items: List[Tuple[str, bytes]] = []
        last_key = cursor
        for value, meta in results:
            key = _to_text(meta.key)
            last_key = key
            if "/" in key[len(prefix):]:
                continue
            items.append((key, value))

        return Page(items=items, cursor=last_key, has_more=len(results) >= limit)

    @staticmethod
    def _load(raw: Any, kind: str) -> Dict[str, Any]:
        try:
            key, value = raw
            doc = yaml.safe_load(value)
        except (ValueError, TypeError, yaml.YAMLError) as exc:
            raise ResourceDecodeError(details={"kind": kind}) from exc
        if not isinstance(doc, dict) or not doc.get("name"):
            raise ResourceDecodeError(details={"kind": kind, "key": _to_text(key)})
        return doc

    @staticmethod
    def _metadata(doc: Mapping[str, Any]) -> Dict[str, str]:
        md = doc.get("metadata") or {}
        if not isinstance(md, dict):
            raise ResourceDecodeError("metadata is not a mapping")
        return {str(k): "" if v is None else str(v) for k, v in md.items()}

    async def _check_parent(
        self,
        check: Callable[[], Any],
        child_key: str,
        *,
        orphan_cleanup: bool,
    ) -> None:
        try:
            await check()
        except Exception as exc:
            if orphan_cleanup and self._delete_orphans and is_not_found(exc):
                logger.warning("Deleting orphaned registry key %s", child_key)
                await self._delete_tree(child_key)
            raise

    # ------------------------------------------------------------------ #
    # Decoders
    # ------------------------------------------------------------------ #

    async def _decode_namespace(self, raw: Any, *, ctx: Optional[OperationContext] = None) -> Namespace:
        doc = self._load(raw, "namespace")
        return Namespace(name=str(doc["name"]), metadata=self._metadata(doc), original_object=raw)

    async def _decode_service(
        self, namespace: str, raw: Any, *, ctx: Optional[OperationContext] = None
    ) -> Service:
        doc = self._load(raw, "service")
        return Service(
            name=str(doc["name"]),
            namespace=namespace,
            metadata=self._metadata(doc),
            original_object=raw,
        )

    async def _decode_endpoint(
        self, namespace: str, service: str, raw: Any, *, ctx: Optional[OperationContext] = None
    ) -> Endpoint:
        doc = self._load(raw, "endpoint")
        try:
            port = int(doc.get("port") or 0)
        except (TypeError, ValueError) as exc:
            raise ResourceDecodeError(details={"kind": "endpoint"}) from exc
        return Endpoint(
            name=str(doc["name"]),
            service=service,
            namespace=namespace,
            address=str(doc.get("address") or ""),
            port=port,
            metadata=self._metadata(doc),
            original_object=raw,
        )

    # ------------------------------------------------------------------ #
    # Namespaces
    # ------------------------------------------------------------------ #

    async def _do_get_namespace(self, name: str, *, ctx: Optional[OperationContext] = None) -> Namespace:
        raw = await self._get_key(namespace_path(name))
        if raw is None:
            raise NamespaceNotFound(details={"namespace": name})
        return await self._decode_namespace(raw, ctx=ctx)

    async def _do_create_namespace(
        self, name: str, metadata: Dict[str, str], *, ctx: Optional[OperationContext] = None
    ) -> Namespace:
        await self._put(namespace_path(name), Namespace(name=name, metadata=metadata).to_dict())
        return await self._do_get_namespace(name, ctx=ctx)

    async def _do_update_namespace(
        self, name: str, metadata: Dict[str, str], *, ctx: Optional[OperationContext] = None
    ) -> Namespace:
        return await self._do_create_namespace(name, metadata, ctx=ctx)

    async def _do_delete_namespace(self, name: str, *, ctx: Optional[OperationContext] = None) -> None:
        await self._delete_tree(namespace_path(name))

    async def _do_list_namespaces(
        self, options: ListOptions, cursor: Any, *, ctx: Optional[OperationContext] = None
    ) -> Page:
        return await self._list_children(f"/{PATH_NAMESPACES}/", options, cursor)

    # ------------------------------------------------------------------ #
    # Services
    # ------------------------------------------------------------------ #

    async def _do_get_service(
        self, namespace: str, name: str, *, ctx: Optional[OperationContext] = None
    ) -> Service:
        key = service_path(namespace, name)
        await self._check_parent(lambda: self.namespace(namespace).get(ctx), key, orphan_cleanup=True)
        raw = await self._get_key(key)
        if raw is None:
            raise ServiceNotFound(details={"namespace": namespace, "service": name})
        return await self._decode_service(namespace, raw, ctx=ctx)

    async def _do_create_service(
        self, namespace: str, name: str, metadata: Dict[str, str], *, ctx: Optional[OperationContext] = None
    ) -> Service:
        key = service_path(namespace, name)
        await self._check_parent(lambda: self.namespace(namespace).get(ctx), key, orphan_cleanup=False)
        await self._put(key, Service(name=name, namespace=namespace, metadata=metadata).to_dict())
        raw = await self._get_key(key)
        if raw is None:
            raise ServiceNotFound(details={"namespace": namespace, "service": name})
        return await self._decode_service(namespace, raw, ctx=ctx)

    async def _do_update_service(
        self, namespace: str, name: str, metadata: Dict[str, str], *, ctx: Optional[OperationContext] = None
    ) -> Service:
        return await self._do_create_service(namespace, name, metadata, ctx=ctx)

    async def _do_delete_service(
        self, namespace: str, name: str, *, ctx: Optional[OperationContext] = None
    ) -> None:
        await self._delete_tree(service_path(namespace, name))

    async def _do_list_services(
        self, namespace: str, options: ListOptions, cursor: Any, *, ctx: Optional[OperationContext] = None
    ) -> Page:
        return await self._list_children(f"{namespace_path(namespace)}/{PATH_SERVICES}/", options, cursor)

    # ------------------------------------------------------------------ #
    # Endpoints
    # ------------------------------------------------------------------ #

    async def _do_get_endpoint(
        self, namespace: str, service: str, name: str, *, ctx: Optional[OperationContext] = None
    ) -> Endpoint:
        key = endpoint_path(namespace, service, name)
        await self._check_parent(
            lambda: self.namespace(namespace).service(service).get(ctx), key, orphan_cleanup=True
        )
        raw = await self._get_key(key)
        if raw is None:
            raise EndpointNotFound(details={"endpoint": name})
        return await self._decode_endpoint(namespace, service, raw, ctx=ctx)

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
        key = endpoint_path(namespace, service, name)
        await self._check_parent(
            lambda: self.namespace(namespace).service(service).get(ctx), key, orphan_cleanup=False
        )
        document = Endpoint(
            name=name, service=service, namespace=namespace,
            address=address, port=port, metadata=metadata,
        ).to_dict()
        await self._put(key, document)
        raw = await self._get_key(key)
        if raw is None:
            raise EndpointNotFound(details={"endpoint": name})
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
        return await self._do_create_endpoint(
            namespace, service, name, address, port, metadata, ctx=ctx
        )

    async def _do_delete_endpoint(
        self, namespace: str, service: str, name: str, *, ctx: Optional[OperationContext] = None
    ) -> None:
        await self._delete_tree(endpoint_path(namespace, service, name))

    async def _do_list_endpoints(
        self,
        namespace: str,
        service: str,
        options: ListOptions,
        cursor: Any,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> Page:
        prefix = f"{service_path(namespace, service)}/{PATH_ENDPOINTS}/"
        return await self._list_children(prefix, options, cursor)


__all__ = ["EtcdRegistryAdapter"]
