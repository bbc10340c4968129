"""
Reconcile Scope - Per-reconcile binding of target, cluster and session.

A Scope is created at the start of one reconcile and discarded at its end.
It resolves the target's region, obtains a fresh cloud session, and takes a
snapshot of the target so that ``close()`` can persist only what changed.

Accessors are pure projections of the held objects. Features that guest
clusters do not carry yet return declared zero values, so generic
reconciliation code can treat every cluster kind uniformly.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from errors import (
    ConfigurationError,
    InvalidInputError,
    SessionCreationError,
    StoreError,
)
from patch import PatchHelper
from resources import CLUSTER_NAME_LABEL, GenericResource, ResourceRef
from session import ServiceEndpoint, SessionFactory, SessionHandle

logger = logging.getLogger(__name__)

DEFAULT_API_SERVER_PORT = 6443
ELB_SCHEME_INTERNET_FACING = "internet-facing"


@dataclass
class ScopeParams:
    """Input parameters used to create a Scope."""

    store: Any
    session_factory: SessionFactory
    cluster: Optional[GenericResource] = None
    target: Optional[GenericResource] = None
    controller_name: str = ""
    endpoints: Sequence[ServiceEndpoint] = ()


def _declared_region(resource: GenericResource) -> str:
    region = resource.spec.get("region")
    return region if isinstance(region, str) else ""


def _credentials_secret_ref(resource: GenericResource) -> Optional[ResourceRef]:
    secret = resource.spec.get("credentialsSecret") or {}
    name = secret.get("name") if isinstance(secret, dict) else None
    if not name:
        return None
    return ResourceRef(namespace=resource.metadata.namespace, name=name, kind="Secret")


class Scope:
    """The context a cluster reconcile operates upon."""

    def __init__(
        self,
        store: Any,
        cluster: GenericResource,
        target: GenericResource,
        session: SessionHandle,
        patch_helper: PatchHelper,
        controller_name: str = "",
    ):
        self._store = store
        self.cluster = cluster
        self.target = target
        self._session = session
        self._patch_helper = patch_helper
        self._controller_name = controller_name

    @classmethod
    async def create(cls, params: ScopeParams) -> "Scope":
        """
        Create a Scope for one reconcile.

        Raises:
            InvalidInputError: If the cluster or target is missing
            ConfigurationError: If no region is declared
            SessionCreationError: If the cloud session cannot be created
        """
        if params.cluster is None:
            raise InvalidInputError("failed to generate new scope from nil Cluster")
        if params.target is None:
            raise InvalidInputError("failed to generate new scope from nil target")

        target = params.target
        region = _declared_region(target) or _declared_region(params.cluster)
        if not region:
            raise ConfigurationError(
                f"{target.ref} and its cluster declare no spec.region"
            )

        try:
            session = await params.session_factory.new_session(
                region,
                params.endpoints,
                credentials_secret=_credentials_secret_ref(target),
            )
        except (ConfigurationError, StoreError) as e:
            raise SessionCreationError(
                f"failed to create AWS session for {target.ref}: {e.message}"
            ) from e

        # Snapshot last, once every fallible step has succeeded
        helper = PatchHelper(target, params.store)
        return cls(
            store=params.store,
            cluster=params.cluster,
            target=target,
            session=session,
            patch_helper=helper,
            controller_name=params.controller_name,
        )

    async def __aenter__(self) -> "Scope":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            await self.close()
        return False

    async def patch_object(self) -> None:
        """
        Persist changes made to the target since the scope was created.

        Raises:
            ConflictError: If the target changed in the store meanwhile
        """
        updated = await self._patch_helper.patch(self.target)
        if updated is not None:
            self.target.metadata.resource_version = updated.metadata.resource_version

    async def close(self) -> None:
        """Close the scope, persisting the target's configuration and status."""
        await self.patch_object()

    # ==================== Accessors ====================

    @property
    def name(self) -> str:
        return self.cluster.metadata.name

    @property
    def namespace(self) -> str:
        return self.cluster.metadata.namespace

    @property
    def kubernetes_cluster_name(self) -> str:
        return self.cluster.metadata.name

    @property
    def region(self) -> str:
        return _declared_region(self.target) or _declared_region(self.cluster)

    @property
    def session(self) -> SessionHandle:
        return self._session

    @property
    def controller_name(self) -> str:
        return self._controller_name

    @property
    def infra_cluster(self) -> GenericResource:
        return self.target

    @property
    def network(self) -> Optional[Dict[str, Any]]:
        return None

    @property
    def vpc(self) -> Dict[str, Any]:
        return {}

    @property
    def subnets(self) -> List[Dict[str, Any]]:
        return []

    @property
    def cni_ingress_rules(self) -> List[Dict[str, Any]]:
        return []

    @property
    def security_groups(self) -> Dict[str, Dict[str, Any]]:
        return {}

    @property
    def additional_tags(self) -> Dict[str, str]:
        return {}

    @property
    def control_plane_load_balancer(self) -> Optional[Dict[str, Any]]:
        return None

    @property
    def control_plane_load_balancer_scheme(self) -> str:
        lb = self.control_plane_load_balancer
        if lb is not None and lb.get("scheme"):
            return lb["scheme"]
        return ELB_SCHEME_INTERNET_FACING

    @property
    def control_plane_config_map_name(self) -> str:
        return f"{self.cluster.metadata.uid}-controlplane"

    @property
    def list_options_label_selector(self) -> Dict[str, str]:
        return {CLUSTER_NAME_LABEL: self.cluster.metadata.name}

    @property
    def api_server_port(self) -> int:
        network = self.cluster.spec.get("clusterNetwork") or {}
        port = network.get("apiServerPort")
        return port if isinstance(port, int) else DEFAULT_API_SERVER_PORT

    @property
    def bastion(self) -> Optional[Dict[str, Any]]:
        return None

    @property
    def ssh_key_name(self) -> Optional[str]:
        return None

    @property
    def image_lookup_format(self) -> str:
        return ""

    @property
    def image_lookup_org(self) -> str:
        return ""

    @property
    def image_lookup_base_os(self) -> str:
        return ""

    # Guest clusters do not track these yet; the setters are no-ops.

    def set_subnets(self, subnets: List[Dict[str, Any]]) -> None:
        pass

    def set_failure_domain(self, name: str, spec: Dict[str, Any]) -> None:
        pass

    def set_bastion_instance(self, instance: Dict[str, Any]) -> None:
        pass
