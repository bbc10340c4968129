"""
Object Store - get/patch/list primitives with optimistic concurrency.

Every stored object carries a ``resourceVersion`` token. A patch may name the
token it was computed against; the store rejects it with ConflictError if
the object has moved on since. An empty patch is always a successful no-op.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from errors import ConflictError, NotFoundError
from patch import apply_merge_patch
from resources import GenericResource, ResourceRef

logger = logging.getLogger(__name__)

# Metadata fields a merge patch may not change
_PROTECTED_METADATA = (
    "name",
    "namespace",
    "uid",
    "resourceVersion",
    "generation",
    "deletionTimestamp",
)


def utc_timestamp() -> str:
    """Return the current time in RFC 3339 form."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def check_precondition(
    ref: ResourceRef, current: GenericResource, precondition: Optional[str]
) -> None:
    """
    Raise ConflictError if ``precondition`` does not match ``current``.

    A None precondition always holds.
    """
    actual = current.metadata.resource_version
    if precondition is not None and precondition != actual:
        raise ConflictError(
            f"{ref} has been modified: expected resourceVersion "
            f"{precondition}, found {actual}",
            expected=precondition,
            actual=actual,
        )


def apply_resource_patch(
    current: GenericResource, delta: Dict[str, Any], new_version: str
) -> GenericResource:
    """
    Apply a merge patch to a stored resource.

    Identity fields are preserved, the resource version is replaced by
    ``new_version``, and the generation is bumped when the spec changed.
    """
    document = current.to_dict()
    patched = apply_merge_patch(document, delta)
    patched["kind"] = document["kind"]

    metadata = patched.setdefault("metadata", {})
    for key in _PROTECTED_METADATA:
        if key in document["metadata"]:
            metadata[key] = document["metadata"][key]
        else:
            metadata.pop(key, None)
    metadata["resourceVersion"] = new_version
    if patched.get("spec") != document.get("spec"):
        metadata["generation"] = document["metadata"]["generation"] + 1

    return GenericResource.from_dict(patched)


class Store(ABC):
    """Abstract object store used by reconcilers."""

    @abstractmethod
    async def get(self, ref: ResourceRef) -> GenericResource:
        """
        Fetch an object.

        Raises:
            NotFoundError: If the object does not exist
        """
        pass

    @abstractmethod
    async def patch(
        self,
        ref: ResourceRef,
        delta: Dict[str, Any],
        precondition: Optional[str] = None,
    ) -> GenericResource:
        """
        Apply a merge patch to an object.

        Args:
            ref: The object to patch
            delta: RFC 7386 merge patch
            precondition: resourceVersion the patch was computed against

        Returns:
            The updated object

        Raises:
            NotFoundError: If the object does not exist
            ConflictError: If the precondition does not hold
        """
        pass

    @abstractmethod
    async def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[GenericResource]:
        """List objects of a kind, optionally filtered by namespace and labels."""
        pass


class MemoryStore(Store):
    """In-process Store with the same semantics as the database store."""

    def __init__(self):
        self._objects: Dict[ResourceRef, Dict[str, Any]] = {}
        self._revision = 0
        self._lock = asyncio.Lock()

    def _next_version(self) -> str:
        self._revision += 1
        return str(self._revision)

    async def create(self, resource: GenericResource) -> GenericResource:
        """
        Store a new object, assigning uid, generation and resourceVersion.

        Raises:
            ConflictError: If the object already exists
        """
        async with self._lock:
            ref = resource.ref
            if ref in self._objects:
                raise ConflictError(f"{ref} already exists")
            stored = resource.deep_copy()
            stored.metadata.uid = stored.metadata.uid or str(uuid.uuid4())
            stored.metadata.generation = 1
            stored.metadata.resource_version = self._next_version()
            self._objects[ref] = stored.to_dict()
            logger.info(f"Created {ref}")
            return GenericResource.from_dict(self._objects[ref])

    async def get(self, ref: ResourceRef) -> GenericResource:
        async with self._lock:
            document = self._objects.get(ref)
            if document is None:
                raise NotFoundError(f"{ref} not found")
            return GenericResource.from_dict(document)

    async def patch(
        self,
        ref: ResourceRef,
        delta: Dict[str, Any],
        precondition: Optional[str] = None,
    ) -> GenericResource:
        async with self._lock:
            document = self._objects.get(ref)
            if document is None:
                raise NotFoundError(f"{ref} not found")
            current = GenericResource.from_dict(document)
            if not delta:
                return current

            check_precondition(ref, current, precondition)
            updated = apply_resource_patch(current, delta, self._next_version())
            self._objects[ref] = updated.to_dict()
            logger.debug(
                f"Patched {ref} to resourceVersion "
                f"{updated.metadata.resource_version}"
            )
            return updated

    async def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[GenericResource]:
        async with self._lock:
            results = []
            ordered = sorted(
                self._objects.items(),
                key=lambda item: (item[0].namespace, item[0].name),
            )
            for ref, document in ordered:
                if ref.kind != kind:
                    continue
                if namespace is not None and ref.namespace != namespace:
                    continue
                obj_labels = document["metadata"].get("labels") or {}
                if labels and any(obj_labels.get(k) != v for k, v in labels.items()):
                    continue
                results.append(GenericResource.from_dict(document))
            return results

    async def delete(self, ref: ResourceRef) -> GenericResource:
        """
        Mark an object as deleting by setting its deletionTimestamp.

        The timestamp is set once; deleting twice keeps the first value.

        Raises:
            NotFoundError: If the object does not exist
        """
        async with self._lock:
            document = self._objects.get(ref)
            if document is None:
                raise NotFoundError(f"{ref} not found")
            if document["metadata"].get("deletionTimestamp") is None:
                document["metadata"]["deletionTimestamp"] = utc_timestamp()
                document["metadata"]["resourceVersion"] = self._next_version()
                logger.info(f"Marked {ref} for deletion")
            return GenericResource.from_dict(document)
