"""
Kubernetes Platform: the declarative resource API spoken over HTTP.

URL construction is driven by the Kind Registry (group, version, plural,
namespaced). Status codes map onto the error taxonomy:

  404 on read        → None
  409                → ConflictError
  5xx, 429, transport → PlatformUnavailable
  other 4xx          → ResourceApplyError

Creates and updates are server-side applies under the `gitops-kernel`
field manager, so fields owned by other controllers survive a sync.
"""

import json
from typing import Dict, List, Optional

import httpx
import structlog

from gitops_kernel.errors import ConflictError, PlatformUnavailable, ResourceApplyError
from gitops_kernel.models.resource import ResourceKey, split_api_version
from gitops_kernel.render.kinds import KindRegistry, KindSpec

logger = structlog.get_logger(__name__)

FIELD_MANAGER = "gitops-kernel"
APPLY_PATCH_CONTENT_TYPE = "application/apply-patch+yaml"


class KubernetesPlatform:
    """Async client for the Kubernetes REST API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        registry: Optional[KindRegistry] = None,
        verify: bool = True,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.server = base_url.rstrip("/")
        self.registry = registry or KindRegistry()
        self.http_client = httpx.AsyncClient(
            base_url=self.server,
            headers=headers,
            verify=verify,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        """Close HTTP client."""
        await self.http_client.aclose()

    async def __aenter__(self) -> "KubernetesPlatform":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    # --- URL construction ---

    def _spec(self, key: ResourceKey) -> KindSpec:
        spec = self.registry.for_key(key)
        if spec is None:
            raise ResourceApplyError(f"no API mapping for kind {key.group}/{key.kind}",
                                     key=str(key))
        return spec

    @staticmethod
    def _collection_path(spec: KindSpec, version: str, namespace: str = "") -> str:
        root = f"/api/{version}" if not spec.group else f"/apis/{spec.group}/{version}"
        if spec.namespaced and namespace:
            return f"{root}/namespaces/{namespace}/{spec.plural}"
        return f"{root}/{spec.plural}"

    def _object_path(self, key: ResourceKey, version: Optional[str] = None) -> str:
        spec = self._spec(key)
        collection = self._collection_path(spec, version or spec.versions[0], key.namespace)
        return f"{collection}/{key.name}"

    # --- Request handling ---

    async def _request(
        self,
        method: str,
        path: str,
        key: Optional[ResourceKey] = None,
        allow_not_found: bool = False,
        **kwargs,
    ) -> Optional[dict]:
        try:
            response = await self.http_client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise PlatformUnavailable(f"{method} {path}: {e}")

        if response.status_code == 404 and allow_not_found:
            return None
        if response.status_code == 409:
            raise ConflictError(_message(response), key=str(key) if key else None)
        if response.status_code == 429 or response.status_code >= 500:
            raise PlatformUnavailable(f"{method} {path}: HTTP {response.status_code} "
                                      f"{_message(response)}")
        if response.status_code >= 400:
            raise ResourceApplyError(
                f"{method} {path}: HTTP {response.status_code} {_message(response)}",
                key=str(key) if key else None,
            )
        if not response.content:
            return {}
        return response.json()

    # --- Platform protocol ---

    async def list(self, selector: Dict[str, str]) -> List[dict]:
        """List every registered kind cluster-wide by label selector."""
        label_selector = ",".join(f"{k}={v}" for k, v in sorted(selector.items()))
        items: List[dict] = []
        for spec in self.registry.kinds():
            version = spec.versions[0]
            path = self._collection_path(spec, version)
            body = await self._request(
                "GET", path, allow_not_found=True, params={"labelSelector": label_selector}
            )
            if not body:
                continue
            api_version = f"{spec.group}/{version}" if spec.group else version
            for item in body.get("items") or []:
                # List responses omit apiVersion/kind on items
                item.setdefault("apiVersion", api_version)
                item.setdefault("kind", spec.kind)
                items.append(item)
        return items

    async def get(self, key: ResourceKey) -> Optional[dict]:
        return await self._request("GET", self._object_path(key), key=key, allow_not_found=True)

    async def _apply(self, manifest: dict, force: bool) -> dict:
        """
        Server-side apply. Only fields present in the manifest are owned by
        the kernel; fields set by other controllers are left alone, and
        fields the kernel applied before but no longer declares are removed.
        """
        key = ResourceKey.from_manifest(manifest)
        _, version = split_api_version(manifest["apiVersion"])
        return await self._request(
            "PATCH",
            self._object_path(key, version),
            key=key,
            content=json.dumps(manifest),
            headers={"Content-Type": APPLY_PATCH_CONTENT_TYPE},
            params={"fieldManager": FIELD_MANAGER, "force": "true" if force else "false"},
        )

    async def create(self, manifest: dict) -> dict:
        logger.debug("kube_create", key=str(ResourceKey.from_manifest(manifest)))
        return await self._apply(manifest, force=False)

    async def update(self, manifest: dict) -> dict:
        # A resourceVersion in the manifest makes the apply conditional (409 when stale)
        logger.debug("kube_update", key=str(ResourceKey.from_manifest(manifest)))
        return await self._apply(manifest, force=True)

    async def delete(self, key: ResourceKey) -> bool:
        logger.debug("kube_delete", key=str(key))
        body = await self._request(
            "DELETE",
            self._object_path(key),
            key=key,
            allow_not_found=True,
            params={"propagationPolicy": "Foreground"},
        )
        return body is not None


def _message(response: httpx.Response) -> str:
    """Extract the Status message from an error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return body.get("message") or body.get("reason") or ""
    return ""
