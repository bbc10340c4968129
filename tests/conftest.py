"""Pytest configuration and fixtures."""

import base64
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from codec import KIND, V1BETA1
from resources import CLUSTER_NAME_LABEL, GenericResource, ObjectMeta
from store import MemoryStore

CLUSTER_ID = "test-cluster"


def provider_config_document(instance_type="m4.xlarge", api_version=V1BETA1):
    """A worker machine provider config in wire form."""
    public_ip_field = "publicIP" if api_version == V1BETA1 else "publicIp"
    return {
        "apiVersion": api_version,
        "kind": KIND,
        "ami": {
            "filters": [
                {"name": "tag:image_stage", "values": ["base"]},
                {"name": "tag:operating_system", "values": ["rhel"]},
                {"name": "tag:ready", "values": ["yes"]},
            ]
        },
        "credentialsSecret": {"name": "aws-credentials-secret"},
        "instanceType": instance_type,
        "placement": {"region": "us-east-1", "availabilityZone": "us-east-1a"},
        "subnet": {
            "filters": [{"name": "tag:Name", "values": [f"{CLUSTER_ID}-worker-*"]}]
        },
        "tags": [
            {"name": "openshift-node-group-config", "value": "node-config-worker"},
            {"name": "host-type", "value": "worker"},
        ],
        "securityGroups": [
            {"filters": [{"name": "tag:Name", "values": [f"{CLUSTER_ID}-*"]}]}
        ],
        "userDataSecret": {"name": "worker-user-data-secret"},
        public_ip_field: True,
    }


def machine_set_resource(
    name="worker", instance_type="m4.xlarge", annotations=None, provider_value=None
):
    """A MachineSet embedding a provider config in its machine template."""
    value = provider_value
    if value is None:
        value = provider_config_document(instance_type)
    return GenericResource(
        api_version="machine.openshift.io/v1beta1",
        kind="MachineSet",
        metadata=ObjectMeta(
            name=name,
            namespace="default",
            annotations=annotations,
            labels={CLUSTER_NAME_LABEL: CLUSTER_ID},
        ),
        spec={
            "replicas": 1,
            "template": {"spec": {"providerSpec": {"value": value}}},
        },
    )


def cluster_resource(region="us-east-1", api_server_port=None):
    spec = {"region": region} if region else {}
    if api_server_port is not None:
        spec["clusterNetwork"] = {"apiServerPort": api_server_port}
    return GenericResource(
        api_version="cluster.x-k8s.io/v1alpha3",
        kind="Cluster",
        metadata=ObjectMeta(name=CLUSTER_ID, namespace="default", uid="c1d2"),
        spec=spec,
    )


def guest_cluster_resource(region="us-east-1", labelled=True, secret_name=None):
    spec = {"region": region} if region else {}
    if secret_name:
        spec["credentialsSecret"] = {"name": secret_name}
    return GenericResource(
        api_version="infrastructure.cluster.x-k8s.io/v1alpha3",
        kind="GuestCluster",
        metadata=ObjectMeta(
            name=f"{CLUSTER_ID}-guest",
            namespace="default",
            labels={CLUSTER_NAME_LABEL: CLUSTER_ID} if labelled else {},
        ),
        spec=spec,
    )


def credentials_secret(name="aws-credentials-secret", key_id="AKIDSECRET"):
    def encode(value):
        return base64.b64encode(value.encode("utf-8")).decode("ascii")

    return GenericResource(
        api_version="v1",
        kind="Secret",
        metadata=ObjectMeta(name=name, namespace="default"),
        data={
            "aws_access_key_id": encode(key_id),
            "aws_secret_access_key": encode("secret-from-secret"),
        },
    )


@pytest.fixture
def aws_env(monkeypatch):
    """Static credentials in the process environment."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "AKIDENV")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "secret-from-env")


@pytest.fixture
def no_aws_env(monkeypatch):
    monkeypatch.delenv("AWS_ACCESS_KEY_ID", raising=False)
    monkeypatch.delenv("AWS_SECRET_ACCESS_KEY", raising=False)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection with a working transaction()."""
    conn = AsyncMock()
    transaction = AsyncMock()
    transaction.__aenter__ = AsyncMock(return_value=transaction)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)
    return conn


@pytest.fixture
def mock_pool(mock_connection):
    """Create a mock asyncpg pool handing out mock_connection."""
    pool = AsyncMock()

    @asynccontextmanager
    async def mock_acquire():
        yield mock_connection

    pool.acquire = mock_acquire
    return pool
