"""
Merge Patch - JSON merge-patch (RFC 7386) computation and application.

Reconcilers mutate an in-memory copy of a resource and persist only what
changed. ``create_merge_patch`` is the pure "what changed" function; the
PatchHelper binds it to a snapshot taken before any mutation and to the
store's optimistic-concurrency precondition.
"""

import copy
import logging
from typing import Any, Dict, Optional

from resources import GenericResource

logger = logging.getLogger(__name__)


def create_merge_patch(
    original: Dict[str, Any], modified: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Compute the merge patch turning ``original`` into ``modified``.

    Removed keys map to None. Nested mappings are diffed recursively; any
    other changed value (including lists) is replaced whole.

    Args:
        original: The document before mutation
        modified: The document after mutation

    Returns:
        The merge patch; empty if the documents are equal
    """
    patch: Dict[str, Any] = {}

    for key in original:
        if key not in modified:
            patch[key] = None

    for key, value in modified.items():
        if key not in original:
            patch[key] = copy.deepcopy(value)
            continue

        old = original[key]
        if isinstance(old, dict) and isinstance(value, dict):
            nested = create_merge_patch(old, value)
            if nested:
                patch[key] = nested
        elif old != value:
            patch[key] = copy.deepcopy(value)

    return patch


def apply_merge_patch(target: Any, patch: Any) -> Any:
    """
    Apply a merge patch to a document, returning a new document.

    Args:
        target: The document to patch (not modified)
        patch: The merge patch

    Returns:
        The patched document
    """
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)

    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result


def resource_merge_patch(
    original: GenericResource, modified: GenericResource
) -> Dict[str, Any]:
    """Compute the merge patch between two versions of a resource."""
    return create_merge_patch(original.to_dict(), modified.to_dict())


class PatchHelper:
    """
    Snapshot of a resource used to persist later changes as a merge patch.

    The snapshot is consumed exactly once by :meth:`patch`.
    """

    def __init__(self, obj: GenericResource, store: Any):
        self._base = obj.deep_copy()
        self._store = store
        self._consumed = False

    @property
    def base(self) -> GenericResource:
        return self._base

    @property
    def consumed(self) -> bool:
        return self._consumed

    def delta(self, obj: GenericResource) -> Dict[str, Any]:
        """Return the merge patch from the snapshot to ``obj``."""
        return resource_merge_patch(self._base, obj)

    async def patch(self, obj: GenericResource) -> Optional[GenericResource]:
        """
        Persist the changes made to ``obj`` since the snapshot.

        Uses the snapshot's resource version as precondition, so the store
        rejects the patch if the object changed in the meantime.

        Returns:
            The updated resource, or None if nothing changed

        Raises:
            RuntimeError: If the snapshot was already consumed
            ConflictError: If the precondition does not hold
        """
        if self._consumed:
            raise RuntimeError(f"patch snapshot for {obj.ref} was already consumed")
        self._consumed = True

        delta = self.delta(obj)
        if not delta:
            logger.debug(f"No changes to patch for {obj.ref}")
            return None

        return await self._store.patch(
            obj.ref, delta, precondition=self._base.metadata.resource_version
        )
