"""
Resource Model - Generic resource objects reconciled by the controller.

Resources use the Kubernetes object layout (apiVersion, kind, metadata,
spec, status). Provider-specific configuration is held opaquely inside the
spec and only typed by the codec.
"""

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from errors import MalformedPayloadError

CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"


@dataclass(frozen=True)
class ResourceRef:
    """Identity of a reconcile target."""

    namespace: str
    name: str
    kind: str

    def __str__(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}"


@dataclass
class ObjectMeta:
    """Standard object metadata."""

    name: str
    namespace: str = "default"
    uid: str = ""
    generation: int = 1
    resource_version: str = ""
    deletion_timestamp: Optional[str] = None
    annotations: Optional[Dict[str, str]] = None
    labels: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "uid": self.uid,
            "generation": self.generation,
            "resourceVersion": self.resource_version,
            "labels": dict(self.labels),
        }
        if self.deletion_timestamp is not None:
            data["deletionTimestamp"] = self.deletion_timestamp
        if self.annotations is not None:
            data["annotations"] = dict(self.annotations)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectMeta":
        annotations = data.get("annotations")
        return cls(
            name=data["name"],
            namespace=data.get("namespace") or "default",
            uid=data.get("uid", ""),
            generation=data.get("generation", 1),
            resource_version=str(data.get("resourceVersion", "")),
            deletion_timestamp=data.get("deletionTimestamp"),
            annotations=dict(annotations) if annotations is not None else None,
            labels=dict(data.get("labels") or {}),
        )


@dataclass
class GenericResource:
    """A reconcilable object: Machine, MachineSet, Cluster, Secret, ..."""

    api_version: str
    kind: str
    metadata: ObjectMeta
    spec: Dict[str, Any] = field(default_factory=dict)
    status: Dict[str, Any] = field(default_factory=dict)
    data: Dict[str, str] = field(default_factory=dict)

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(
            namespace=self.metadata.namespace,
            name=self.metadata.name,
            kind=self.kind,
        )

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def owning_cluster_name(self) -> Optional[str]:
        return self.metadata.labels.get(CLUSTER_NAME_LABEL)

    def deep_copy(self) -> "GenericResource":
        return copy.deepcopy(self)

    def provider_spec_raw(self) -> bytes:
        """
        Return the raw provider-spec payload.

        Machines carry it at ``spec.providerSpec.value``; machine sets at
        ``spec.template.spec.providerSpec.value``. A payload stored as an
        embedded mapping is serialized to JSON.

        Raises:
            MalformedPayloadError: If the resource has no provider spec, or a
                level of it is not a mapping
        """
        provider_spec = self.spec.get("providerSpec")
        if provider_spec is None:
            template = self.spec.get("template") or {}
            if not isinstance(template, dict):
                raise MalformedPayloadError(
                    f"{self.ref} spec.template is not a mapping"
                )
            template_spec = template.get("spec") or {}
            if not isinstance(template_spec, dict):
                raise MalformedPayloadError(
                    f"{self.ref} spec.template.spec is not a mapping"
                )
            provider_spec = template_spec.get("providerSpec")

        if provider_spec is not None and not isinstance(provider_spec, dict):
            raise MalformedPayloadError(f"{self.ref} providerSpec is not a mapping")

        value = (provider_spec or {}).get("value")
        if value is None:
            raise MalformedPayloadError(f"{self.ref} has no providerSpec value")
        if isinstance(value, bytes):
            return value
        if isinstance(value, str):
            return value.encode("utf-8")
        try:
            return json.dumps(value, sort_keys=True).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise MalformedPayloadError(
                f"{self.ref} providerSpec value cannot be serialized: {e}"
            ) from e

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": self.metadata.to_dict(),
            "spec": copy.deepcopy(self.spec),
            "status": copy.deepcopy(self.status),
        }
        if self.data:
            data["data"] = dict(self.data)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenericResource":
        return cls(
            api_version=data.get("apiVersion", ""),
            kind=data["kind"],
            metadata=ObjectMeta.from_dict(data["metadata"]),
            spec=copy.deepcopy(data.get("spec") or {}),
            status=copy.deepcopy(data.get("status") or {}),
            data=dict(data.get("data") or {}),
        )
