#!/usr/bin/env python3
"""
CLI tool for the capa operator.

Inspects instance capabilities, converts provider configs between schema
versions, and runs a single reconcile against the database or local
manifests.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

import click
import yaml
from tabulate import tabulate

from codec import new_codec
from config import DatabaseConfig
from db import DatabaseManager
from errors import OperatorError
from events import EventRecorder, ReconcileEvent
from instance_types import INSTANCE_TYPES
from reconciler import (
    GUEST_CLUSTER_KIND,
    MACHINE_SET_KIND,
    GuestClusterReconciler,
    MachineSetReconciler,
    ReconcileResult,
)
from resources import GenericResource, ResourceRef
from store import MemoryStore


def _load_documents(filename: str) -> List[Dict[str, Any]]:
    """Load every YAML/JSON document in a file."""
    with open(filename, "r") as f:
        try:
            documents = [d for d in yaml.safe_load_all(f) if d is not None]
        except yaml.YAMLError as e:
            raise click.ClickException(f"{filename}: {e}")
    for document in documents:
        if not isinstance(document, dict):
            raise click.ClickException(f"{filename}: expected a mapping document")
    return documents


def _to_resource(document: Dict[str, Any], filename: str) -> GenericResource:
    try:
        return GenericResource.from_dict(document)
    except (KeyError, TypeError) as e:
        raise click.ClickException(f"{filename}: not a valid object, missing {e}")


def _dump(data: Any, output: str) -> str:
    if output == "json":
        return json.dumps(data, indent=2, sort_keys=True)
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=True)


@click.group()
def cli():
    """capa operator CLI"""
    pass


@cli.command("instance-types")
@click.option("--family", "-f", help="Only show one family, e.g. m5")
@click.option("--output", "-o", type=click.Choice(["table", "json"]), default="table")
def instance_types(family, output):
    """List known instance types and their capabilities"""
    rows = []
    for name in sorted(INSTANCE_TYPES):
        if family and name.split(".", 1)[0] != family:
            continue
        caps = INSTANCE_TYPES[name]
        rows.append([name, caps.vcpu, caps.memory_mib, caps.gpu_count])

    if output == "json":
        data = {
            row[0]: {"vCPU": row[1], "memoryMb": row[2], "GPU": row[3]}
            for row in rows
        }
        click.echo(json.dumps(data, indent=2))
    else:
        headers = ["Instance Type", "vCPU", "Memory (MiB)", "GPU"]
        click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.option("--target-version", "-t", help="API version to decode into")
@click.option("--output", "-o", type=click.Choice(["yaml", "json"]), default="yaml")
def decode(filename, target_version, output):
    """Decode a provider config, or the one embedded in a Machine/MachineSet"""
    codec = new_codec()
    documents = _load_documents(filename)
    if not documents:
        raise click.ClickException(f"{filename}: no documents found")

    document = documents[0]
    try:
        if "metadata" in document and "spec" in document:
            config = codec.decode_provider_spec(
                _to_resource(document, filename), target_version
            )
        else:
            config = codec.decode(json.dumps(document), target_version)
    except OperatorError as e:
        raise click.ClickException(e.message)
    except TypeError as e:
        raise click.ClickException(f"{filename}: cannot be represented as JSON: {e}")

    click.echo(_dump(codec.to_document(config), output))


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.option(
    "--provider-spec",
    is_flag=True,
    help="Wrap the result in a providerSpec block for a Machine template",
)
def encode(filename, provider_spec):
    """Re-encode a provider config at the current schema version"""
    codec = new_codec()
    with open(filename, "rb") as f:
        raw = f.read()

    try:
        config = codec.decode(raw)
        if provider_spec:
            block = {"providerSpec": codec.encode_provider_spec(config)}
            click.echo(_dump(block, "yaml"))
        else:
            click.echo(codec.encode(config).decode("utf-8"))
    except OperatorError as e:
        raise click.ClickException(e.message)


async def _reconcile_once(
    kind: str, ref: ResourceRef, manifests: List[str]
) -> Tuple[ReconcileResult, Optional[GenericResource], List[ReconcileEvent]]:
    if manifests:
        store = MemoryStore()
        for filename in manifests:
            for document in _load_documents(filename):
                await store.create(_to_resource(document, filename))
        db: Optional[DatabaseManager] = None
    else:
        db_config = DatabaseConfig.from_env()
        db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=1,
            max_pool_size=2,
        )
        await db.connect()
        store = db

    recorder = EventRecorder("capactl")
    try:
        if kind == MACHINE_SET_KIND:
            reconciler = MachineSetReconciler(store, recorder=recorder)
        else:
            reconciler = GuestClusterReconciler(store, recorder=recorder)
        result = await reconciler.reconcile(ref)
        try:
            after = await store.get(ref)
        except OperatorError:
            after = None
    finally:
        if db is not None:
            await db.close()

    return result, after, recorder.history(ref)


@cli.command()
@click.argument("kind", type=click.Choice([MACHINE_SET_KIND, GUEST_CLUSTER_KIND]))
@click.argument("namespace")
@click.argument("name")
@click.option(
    "--filename",
    "-f",
    "manifests",
    multiple=True,
    type=click.Path(exists=True),
    help="Reconcile against these manifests instead of the database",
)
@click.option("--output", "-o", type=click.Choice(["yaml", "json"]), default="yaml")
def reconcile(kind, namespace, name, manifests, output):
    """Run one reconcile of an object and show the result"""
    ref = ResourceRef(namespace=namespace, name=name, kind=kind)
    try:
        result, after, events = asyncio.run(_reconcile_once(kind, ref, manifests))
    except (OperatorError, ValueError) as e:
        raise click.ClickException(getattr(e, "message", str(e)))

    if result.error is not None:
        click.echo(f"Requeue: {result.error.message}", err=True)
    elif result.requeue_after is not None:
        click.echo(f"Requeue after {result.requeue_after}s")
    else:
        click.echo(f"Reconciled {ref}")

    report: Dict[str, Any] = {"events": [e.to_dict() for e in events]}
    if after is not None:
        report["object"] = after.to_dict()
    click.echo(_dump(report, output))

    if not result.done:
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
