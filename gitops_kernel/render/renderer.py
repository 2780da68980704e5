"""
Desired-State Renderer: materializes fetched source files into resources.

Behavioral Contract:
- Input: the files under the application's path at one content hash
- Reads YAML (multi-document) and JSON files in sorted filename order
- Validates every resource against the Kind Registry
- All-or-nothing: the first invalid resource aborts the render with a
  RenderValidationError naming it; no partial set is ever returned
- Stamps the ownership label and defaults the destination namespace
"""

import copy
import json
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import structlog
import yaml

from gitops_kernel.errors import RenderValidationError
from gitops_kernel.models.application import Application
from gitops_kernel.models.resource import (
    OWNERSHIP_LABEL,
    DesiredResourceSet,
    ResourceKey,
)
from gitops_kernel.render.kinds import KindRegistry

logger = structlog.get_logger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


class _ManifestLoader(yaml.SafeLoader):
    """SafeLoader that keeps timestamps as the strings the platform receives."""


_ManifestLoader.add_constructor(
    "tag:yaml.org,2002:timestamp", yaml.SafeLoader.construct_yaml_str
)


def _lookup(document: dict, dotted: str):
    node = document
    for part in dotted.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


class DesiredStateRenderer:
    """Turns source files into a validated DesiredResourceSet."""

    def __init__(self, registry: Optional[KindRegistry] = None):
        self.registry = registry or KindRegistry()

    def render(
        self,
        app: Application,
        content_hash: str,
        files: Dict[str, str],
    ) -> DesiredResourceSet:
        """Render and validate every manifest file. Raises RenderValidationError."""
        documents: List[Tuple[str, dict]] = []
        for filename in sorted(files):
            if not filename.endswith(MANIFEST_SUFFIXES):
                continue
            for index, doc in enumerate(self._parse_file(filename, files[filename])):
                documents.append((f"{filename}#{index}", doc))

        resources = []
        seen: Dict[ResourceKey, str] = {}
        for location, doc in documents:
            manifest = self._prepare(app, location, doc)
            key = ResourceKey.from_manifest(manifest)
            if key in seen:
                raise RenderValidationError(
                    f"duplicate resource, first declared at {seen[key]}",
                    resource=f"{location} ({key})",
                )
            seen[key] = location
            resources.append(manifest)

        logger.debug(
            "rendered",
            application=app.name,
            content_hash=content_hash,
            resources=len(resources),
        )
        return DesiredResourceSet(
            application=app.name,
            revision=app.source.revision,
            content_hash=content_hash,
            resources=resources,
            rendered_at=datetime.now(timezone.utc),
        )

    def _parse_file(self, filename: str, text: str) -> List[dict]:
        try:
            if filename.endswith(".json"):
                loaded = [json.loads(text)] if text.strip() else []
            else:
                loaded = list(yaml.load_all(text, Loader=_ManifestLoader))
        except (yaml.YAMLError, ValueError) as e:
            raise RenderValidationError(f"unparseable manifest: {e}", resource=filename)

        documents = []
        for index, doc in enumerate(loaded):
            if doc is None:
                continue
            if not isinstance(doc, dict):
                raise RenderValidationError(
                    "document is not a mapping", resource=f"{filename}#{index}"
                )
            if doc.get("kind") == "List":
                for item in doc.get("items") or []:
                    if not isinstance(item, dict):
                        raise RenderValidationError(
                            "List item is not a mapping", resource=f"{filename}#{index}"
                        )
                    documents.append(item)
            else:
                documents.append(doc)
        return documents

    def _prepare(self, app: Application, location: str, doc: dict) -> dict:
        """Validate one document and return the manifest to apply."""
        api_version = doc.get("apiVersion")
        kind = doc.get("kind")
        metadata = doc.get("metadata")
        if not api_version or not isinstance(api_version, str):
            raise RenderValidationError("missing apiVersion", resource=location)
        if not kind or not isinstance(kind, str):
            raise RenderValidationError("missing kind", resource=location)
        if not isinstance(metadata, dict) or not metadata.get("name"):
            raise RenderValidationError("missing metadata.name", resource=f"{location} ({kind})")
        if not isinstance(metadata["name"], str):
            raise RenderValidationError("metadata.name must be a string", resource=f"{location} ({kind})")

        label = f"{location} ({kind}/{metadata['name']})"
        namespace = metadata.get("namespace")
        if namespace is not None and not isinstance(namespace, str):
            raise RenderValidationError("metadata.namespace must be a string", resource=label)
        for field in ("labels", "annotations"):
            value = metadata.get(field)
            if value is None:
                continue
            if not isinstance(value, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in value.items()
            ):
                raise RenderValidationError(
                    f"metadata.{field} must map strings to strings", resource=label
                )

        spec = self.registry.for_api_version(api_version, kind)
        if spec is None:
            raise RenderValidationError(
                f"unsupported resource kind {api_version}/{kind}", resource=label
            )

        for field in spec.required_fields:
            if _lookup(doc, field) is None:
                raise RenderValidationError(f"missing required field {field}", resource=label)

        manifest = copy.deepcopy(doc)
        manifest.pop("status", None)
        meta = manifest["metadata"]
        if spec.namespaced:
            if not meta.get("namespace"):
                meta["namespace"] = app.destination.namespace
        elif meta.get("namespace"):
            raise RenderValidationError(
                f"{kind} is cluster-scoped and cannot set a namespace", resource=label
            )

        labels = meta.get("labels") or {}
        labels[OWNERSHIP_LABEL] = app.name
        meta["labels"] = labels

        try:
            json.dumps(manifest)
        except (TypeError, ValueError) as e:
            raise RenderValidationError(f"value not representable as JSON: {e}", resource=label)
        return manifest
