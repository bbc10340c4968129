"""
Reconcilers - Level-triggered reconcile loops for MachineSets and guest clusters.

A reconciler is handed a ResourceRef and drives the stored object toward its
declared state. It never raises for expected failures: every outcome is a
ReconcileResult that tells the controller whether to forget the key, requeue
it later, or retry it with backoff.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

from codec import ProviderConfigCodec, new_codec
from errors import (
    DecodeError,
    InvalidInputError,
    NotFoundError,
    OperatorError,
    StoreError,
)
from events import (
    REASON_ANNOTATED,
    REASON_READY,
    REASON_RECONCILE_ERROR,
    EventRecorder,
)
from instance_types import lookup
from patch import PatchHelper
from resources import CLUSTER_NAME_LABEL, GenericResource, ResourceRef
from scope import Scope, ScopeParams
from session import ServiceEndpoint, SessionFactory

logger = logging.getLogger(__name__)

MACHINE_SET_KIND = "MachineSet"
GUEST_CLUSTER_KIND = "GuestCluster"
CLUSTER_KIND = "Cluster"

# Capability annotations written onto MachineSets
VCPU_ANNOTATION = "machine.openshift.io/vCPU"
MEMORY_ANNOTATION = "machine.openshift.io/memoryMb"
GPU_ANNOTATION = "machine.openshift.io/GPU"


@dataclass
class ReconcileResult:
    """Result from a reconciler's reconcile() call."""

    requeue: bool = False
    requeue_after: Optional[float] = None  # seconds
    error: Optional[OperatorError] = None

    @property
    def done(self) -> bool:
        return not self.requeue and self.requeue_after is None and self.error is None


def wrap_error(error: OperatorError, step: str, ref: ResourceRef) -> OperatorError:
    """
    Return a copy of ``error`` whose message names the step and resource.

    The copy keeps the original type and attributes and chains the original
    as its cause.
    """
    wrapped = copy.copy(error)
    wrapped.message = f"{step} {ref}: {error.message}"
    wrapped.args = (wrapped.message,)
    wrapped.__cause__ = error
    return wrapped


class Reconciler(ABC):
    """Abstract base class for reconcilers."""

    def __init__(self, store, recorder: Optional[EventRecorder] = None):
        self.store = store
        self.recorder = recorder

    @property
    @abstractmethod
    def kind(self) -> str:
        """Kind of object this reconciler handles."""
        pass

    @abstractmethod
    async def reconcile(self, ref: ResourceRef) -> ReconcileResult:
        """
        Reconcile a single object.

        Args:
            ref: Identity of the object to reconcile

        Returns:
            ReconcileResult describing whether and when to retry
        """
        pass

    async def _fetch(self, ref: ResourceRef) -> GenericResource:
        """
        Fetch an object, mapping store timeouts to StoreError.

        Raises:
            NotFoundError: If the object does not exist
            OperatorError: If the store fails
        """
        try:
            return await self.store.get(ref)
        except asyncio.TimeoutError as e:
            raise StoreError(f"timed out fetching {ref}") from e

    def _requeue(
        self, ref: ResourceRef, step: str, error: OperatorError
    ) -> ReconcileResult:
        wrapped = wrap_error(error, step, ref)
        logger.error(f"Failed to reconcile {ref}: {wrapped.message}")
        if self.recorder is not None:
            self.recorder.warning(ref, REASON_RECONCILE_ERROR, wrapped.message)
        return ReconcileResult(requeue=True, error=wrapped)


class MachineSetReconciler(Reconciler):
    """
    Annotates MachineSets with the capabilities of their instance type.

    The autoscaler reads these annotations to size node groups from zero,
    when no Machine exists yet to report its capacity.
    """

    def __init__(
        self,
        store,
        codec: Optional[ProviderConfigCodec] = None,
        recorder: Optional[EventRecorder] = None,
        target_version: Optional[str] = None,
    ):
        super().__init__(store, recorder)
        self.codec = codec or new_codec()
        self.target_version = target_version

    @property
    def kind(self) -> str:
        return MACHINE_SET_KIND

    async def reconcile(self, ref: ResourceRef) -> ReconcileResult:
        logger.debug(f"Reconciling {ref}")

        try:
            machine_set = await self._fetch(ref)
        except NotFoundError:
            # Deleted and garbage-collected upstream
            logger.debug(f"{ref} not found, nothing to do")
            return ReconcileResult()
        except OperatorError as e:
            return self._requeue(ref, "fetch", e)

        if machine_set.is_deleting:
            logger.debug(f"{ref} is being deleted, skipping")
            return ReconcileResult()

        helper = PatchHelper(machine_set, self.store)

        try:
            provider_config = self.codec.decode_provider_spec(
                machine_set, self.target_version
            )
        except DecodeError as e:
            return self._requeue(ref, "decode provider config of", e)

        capabilities = lookup(provider_config.instance_type)
        if machine_set.metadata.annotations is None:
            machine_set.metadata.annotations = {}
        machine_set.metadata.annotations.update(
            {
                VCPU_ANNOTATION: str(capabilities.vcpu),
                MEMORY_ANNOTATION: str(capabilities.memory_mib),
                GPU_ANNOTATION: str(capabilities.gpu_count),
            }
        )

        try:
            updated = await helper.patch(machine_set)
        except asyncio.TimeoutError:
            return self._requeue(
                ref, "patch", StoreError(f"timed out patching {ref}")
            )
        except OperatorError as e:
            return self._requeue(ref, "patch", e)

        if updated is not None:
            logger.info(
                f"Annotated {ref} for instance type {provider_config.instance_type}"
            )
            if self.recorder is not None:
                self.recorder.normal(
                    ref,
                    REASON_ANNOTATED,
                    f"capabilities of {provider_config.instance_type!r}: "
                    f"vCPU={capabilities.vcpu} memoryMb={capabilities.memory_mib} "
                    f"GPU={capabilities.gpu_count}",
                )
        return ReconcileResult()


class GuestClusterReconciler(Reconciler):
    """
    Reconciles guest clusters through a Scope.

    Resolves the owning Cluster, opens a session for the guest cluster's
    region and reports the region and readiness in its status.
    """

    def __init__(
        self,
        store,
        session_factory: Optional[SessionFactory] = None,
        recorder: Optional[EventRecorder] = None,
        controller_name: str = "",
        endpoints: Sequence[ServiceEndpoint] = (),
    ):
        super().__init__(store, recorder)
        self.session_factory = session_factory or SessionFactory(store=store)
        self.controller_name = controller_name
        self.endpoints = tuple(endpoints)

    @property
    def kind(self) -> str:
        return GUEST_CLUSTER_KIND

    async def _owning_cluster(self, guest_cluster: GenericResource) -> GenericResource:
        """
        Resolve the Cluster that owns a guest cluster.

        Raises:
            InvalidInputError: If the cluster label is missing
            NotFoundError: If the labelled Cluster does not exist
        """
        cluster_name = guest_cluster.owning_cluster_name
        if not cluster_name:
            raise InvalidInputError(
                f"{guest_cluster.ref} has no {CLUSTER_NAME_LABEL} label"
            )
        return await self._fetch(
            ResourceRef(
                namespace=guest_cluster.metadata.namespace,
                name=cluster_name,
                kind=CLUSTER_KIND,
            )
        )

    async def reconcile(self, ref: ResourceRef) -> ReconcileResult:
        logger.debug(f"Reconciling {ref}")

        try:
            guest_cluster = await self._fetch(ref)
        except NotFoundError:
            logger.debug(f"{ref} not found, nothing to do")
            return ReconcileResult()
        except OperatorError as e:
            return self._requeue(ref, "fetch", e)

        if guest_cluster.is_deleting:
            logger.debug(f"{ref} is being deleted, skipping")
            return ReconcileResult()

        try:
            cluster = await self._owning_cluster(guest_cluster)
        except OperatorError as e:
            return self._requeue(ref, "resolve owning cluster of", e)

        try:
            scope = await Scope.create(
                ScopeParams(
                    store=self.store,
                    session_factory=self.session_factory,
                    cluster=cluster,
                    target=guest_cluster,
                    controller_name=self.controller_name,
                    endpoints=self.endpoints,
                )
            )
        except OperatorError as e:
            return self._requeue(ref, "create scope for", e)

        was_ready = guest_cluster.status.get("ready") is True
        try:
            async with scope:
                scope.target.status["region"] = scope.region
                scope.target.status["ready"] = True
        except OperatorError as e:
            return self._requeue(ref, "patch", e)

        if not was_ready:
            logger.info(f"{ref} is ready in {scope.region}")
            if self.recorder is not None:
                self.recorder.normal(
                    ref, REASON_READY, f"session established in {scope.region}"
                )
        return ReconcileResult()
