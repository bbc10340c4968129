"""Unit tests for scope.py - Per-reconcile scope."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from conftest import cluster_resource, guest_cluster_resource
from errors import (
    ConfigurationError,
    ConflictError,
    CredentialError,
    InvalidInputError,
    SessionCreationError,
)
from resources import CLUSTER_NAME_LABEL, ResourceRef
from scope import Scope, ScopeParams


@pytest.fixture
def session_factory():
    factory = AsyncMock()
    factory.new_session = AsyncMock(return_value=MagicMock(region="us-east-1"))
    return factory


def params(store, session_factory, cluster=None, target=None, **kwargs):
    return ScopeParams(
        store=store,
        session_factory=session_factory,
        cluster=cluster,
        target=target,
        **kwargs,
    )


async def new_scope(store, session_factory, cluster=None):
    """Store a labelled guest cluster and open a scope on it."""
    target = await store.create(guest_cluster_resource(secret_name="aws-creds"))
    scope = await Scope.create(
        params(
            store,
            session_factory,
            cluster=cluster or cluster_resource(),
            target=target,
        )
    )
    return scope, target


@pytest.mark.asyncio
class TestScopeCreate:
    """Tests for Scope.create()."""

    async def test_missing_cluster(self, store, session_factory):
        target = guest_cluster_resource()

        with pytest.raises(InvalidInputError, match="nil Cluster"):
            await Scope.create(params(store, session_factory, target=target))

        session_factory.new_session.assert_not_called()

    async def test_missing_target(self, store, session_factory):
        with pytest.raises(InvalidInputError, match="nil target"):
            await Scope.create(
                params(store, session_factory, cluster=cluster_resource())
            )

        session_factory.new_session.assert_not_called()

    async def test_session_built_for_target_region(self, store, session_factory):
        target = await store.create(guest_cluster_resource(secret_name="aws-creds"))

        scope = await Scope.create(
            params(
                store,
                session_factory,
                cluster=cluster_resource(region="eu-west-1"),
                target=target,
                controller_name="capa-operator",
            )
        )

        assert scope.region == "us-east-1"
        assert scope.controller_name == "capa-operator"
        session_factory.new_session.assert_called_once_with(
            "us-east-1",
            (),
            credentials_secret=ResourceRef("default", "aws-creds", "Secret"),
        )

    async def test_region_falls_back_to_cluster(self, store, session_factory):
        target = await store.create(guest_cluster_resource(region=None))

        scope = await Scope.create(
            params(
                store,
                session_factory,
                cluster=cluster_resource(region="eu-west-1"),
                target=target,
            )
        )

        assert scope.region == "eu-west-1"
        assert session_factory.new_session.call_args[0][0] == "eu-west-1"
        assert session_factory.new_session.call_args[1] == {
            "credentials_secret": None
        }

    async def test_no_region(self, store, session_factory):
        target = await store.create(guest_cluster_resource(region=None))

        with pytest.raises(ConfigurationError, match="declare no spec.region"):
            await Scope.create(
                params(
                    store,
                    session_factory,
                    cluster=cluster_resource(region=None),
                    target=target,
                )
            )

        session_factory.new_session.assert_not_called()

    async def test_session_failure_wrapped(self, store, session_factory):
        cause = CredentialError("no AWS credentials found")
        session_factory.new_session = AsyncMock(side_effect=cause)

        with pytest.raises(SessionCreationError) as exc_info:
            await new_scope(store, session_factory)

        assert "no AWS credentials found" in exc_info.value.message
        assert "GuestCluster default/test-cluster-guest" in exc_info.value.message
        assert exc_info.value.__cause__ is cause


@pytest.mark.asyncio
class TestScopeClose:
    """Tests for persisting the target on close."""

    async def test_close_persists_changes(self, store, session_factory):
        scope, target = await new_scope(store, session_factory)

        scope.target.status["ready"] = True
        await scope.close()

        stored = await store.get(target.ref)
        assert stored.status == {"ready": True}
        assert scope.target.metadata.resource_version == (
            stored.metadata.resource_version
        )

    async def test_close_without_changes(self, store, session_factory):
        scope, target = await new_scope(store, session_factory)

        await scope.close()

        stored = await store.get(target.ref)
        assert stored.metadata.resource_version == target.metadata.resource_version

    async def test_close_conflict(self, store, session_factory):
        scope, target = await new_scope(store, session_factory)
        await store.patch(target.ref, {"metadata": {"labels": {"x": "y"}}})

        scope.target.status["ready"] = True
        with pytest.raises(ConflictError):
            await scope.close()

    async def test_close_twice(self, store, session_factory):
        scope, _ = await new_scope(store, session_factory)
        await scope.close()

        with pytest.raises(RuntimeError):
            await scope.close()

    async def test_context_manager_closes(self, store, session_factory):
        scope, target = await new_scope(store, session_factory)

        async with scope:
            scope.target.status["region"] = scope.region

        stored = await store.get(target.ref)
        assert stored.status == {"region": "us-east-1"}

    async def test_context_manager_skips_patch_on_error(
        self, store, session_factory
    ):
        scope, target = await new_scope(store, session_factory)

        with pytest.raises(ValueError):
            async with scope:
                scope.target.status["ready"] = True
                raise ValueError("boom")

        stored = await store.get(target.ref)
        assert stored.status == {}


@pytest.mark.asyncio
class TestScopeAccessors:
    """Tests for accessor projections."""

    async def test_projections(self, store, session_factory):
        scope, target = await new_scope(
            store, session_factory, cluster=cluster_resource(api_server_port=8443)
        )

        assert scope.name == "test-cluster"
        assert scope.namespace == "default"
        assert scope.kubernetes_cluster_name == "test-cluster"
        assert scope.infra_cluster is target
        assert scope.session is session_factory.new_session.return_value
        assert scope.api_server_port == 8443
        assert scope.control_plane_config_map_name == "c1d2-controlplane"
        assert scope.list_options_label_selector == {
            CLUSTER_NAME_LABEL: "test-cluster"
        }

    async def test_zero_values(self, store, session_factory):
        scope, _ = await new_scope(store, session_factory)

        assert scope.api_server_port == 6443
        assert scope.network is None
        assert scope.vpc == {}
        assert scope.subnets == []
        assert scope.cni_ingress_rules == []
        assert scope.security_groups == {}
        assert scope.additional_tags == {}
        assert scope.control_plane_load_balancer is None
        assert scope.control_plane_load_balancer_scheme == "internet-facing"
        assert scope.bastion is None
        assert scope.ssh_key_name is None
        assert scope.image_lookup_format == ""
        assert scope.image_lookup_org == ""
        assert scope.image_lookup_base_os == ""

    async def test_setters_are_noops(self, store, session_factory):
        scope, target = await new_scope(store, session_factory)

        scope.set_subnets([{"id": "subnet-1"}])
        scope.set_failure_domain("us-east-1a", {"controlPlane": True})
        scope.set_bastion_instance({"id": "i-1"})

        assert scope.subnets == []
        assert scope.bastion is None
        await scope.close()
        assert (await store.get(target.ref)).status == {}
