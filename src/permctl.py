#!/usr/bin/env python3
"""
CLI tool for the permission operator.

Provides a kubectl-like interface for managing provider configs and managed
resources directly in the operator's database.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

import click
import yaml
from pydantic import ValidationError
from tabulate import tabulate

from config import DatabaseConfig, UpboundConfig
from db import DatabaseManager
from managedresource import DEFAULT_PROVIDER_CONFIG, DeletionPolicy
from plugins.registry import PluginRegistry, build_registry
from providerconfig import CredentialsSource

PROVIDER_CONFIG_KIND = "ProviderConfig"


class ManifestError(ValueError):
    """A manifest document cannot be applied."""


def parse_provider_config(
    doc: Dict[str, Any], default_endpoint: str
) -> Dict[str, Any]:
    """
    Turn a ProviderConfig document into upsert_provider_config arguments.

    Example:

        kind: ProviderConfig
        metadata: {name: default}
        spec:
          endpoint: https://api.upbound.io
          credentials:
            source: Environment
            env: {name: UP_TOKEN}
    """
    name = _metadata_name(doc)
    spec = doc.get("spec") or {}
    credentials = spec.get("credentials") or {}

    try:
        source = CredentialsSource(credentials.get("source", "None"))
    except ValueError:
        raise ManifestError(
            f"ProviderConfig {name}: unknown credentials source "
            f"{credentials.get('source')!r}"
        )

    ref = None
    if source == CredentialsSource.ENVIRONMENT:
        ref = (credentials.get("env") or {}).get("name")
    elif source == CredentialsSource.FILESYSTEM:
        ref = (credentials.get("fs") or {}).get("path")
    if source != CredentialsSource.NONE and not ref:
        raise ManifestError(
            f"ProviderConfig {name}: credentials source {source.value} "
            f"needs a reference"
        )

    return {
        "name": name,
        "endpoint": spec.get("endpoint") or default_endpoint,
        "credentials_source": source.value,
        "credentials_ref": ref,
    }


def parse_managed_resource(
    doc: Dict[str, Any], registry: PluginRegistry
) -> Dict[str, Any]:
    """
    Turn a managed resource document into create_managed_resource arguments.

    The forProvider block is validated against the kind's parameters model.
    """
    kind = doc.get("kind")
    if not registry.has_managed_kind(kind):
        available = ", ".join(registry.list_managed_kinds())
        raise ManifestError(f"Unknown kind {kind!r}. Available kinds: {available}")

    name = _metadata_name(doc)
    spec = doc.get("spec") or {}
    parameters = spec.get("forProvider") or {}

    try:
        registry.get_managed_kind(kind).parse_parameters(parameters)
    except ValidationError as e:
        raise ManifestError(f"{kind} {name}: invalid forProvider: {e}")

    try:
        deletion_policy = DeletionPolicy(
            spec.get("deletionPolicy", DeletionPolicy.DELETE.value)
        )
    except ValueError:
        raise ManifestError(
            f"{kind} {name}: unknown deletion policy {spec.get('deletionPolicy')!r}"
        )

    return {
        "name": name,
        "kind": kind,
        "spec": parameters,
        "provider_config_name": (spec.get("providerConfigRef") or {}).get(
            "name", DEFAULT_PROVIDER_CONFIG
        ),
        "deletion_policy": deletion_policy,
    }


def _metadata_name(doc: Dict[str, Any]) -> str:
    name = (doc.get("metadata") or {}).get("name")
    if not name:
        raise ManifestError(f"{doc.get('kind', 'document')} is missing metadata.name")
    return name


def condition_status(resource: Dict[str, Any], condition_type: str) -> str:
    """Return 'True', 'False' or '' for a condition of a parsed row."""
    for condition in resource.get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition.get("status", "")
    return ""


class PermissionOperatorCLI:
    """Runs CLI commands against the operator database."""

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        registry: Optional[PluginRegistry] = None,
    ):
        self.db_config = db_config
        self.registry = registry

    def _database(self) -> DatabaseManager:
        cfg = self.db_config or DatabaseConfig.from_env()
        return DatabaseManager(
            host=cfg.host,
            port=cfg.port,
            database=cfg.database,
            user=cfg.user,
            password=cfg.password,
            min_pool_size=1,
            max_pool_size=2,
        )

    def run(self, operation):
        """Run operation(db) against a freshly connected database."""

        async def runner():
            db = self._database()
            await db.connect()
            try:
                await db.initialize_schema()
                return await operation(db)
            finally:
                await db.close()

        return asyncio.run(runner())

    def get_registry(self) -> PluginRegistry:
        if self.registry is None:
            self.registry = build_registry()
        return self.registry

    async def apply_documents(
        self,
        db: DatabaseManager,
        docs: List[Dict[str, Any]],
        default_endpoint: str,
    ) -> List[Tuple[str, str, str]]:
        """
        Apply manifest documents in order.

        Returns:
            (kind, name, action) for every document applied.
        """
        applied = []
        for doc in docs:
            if doc.get("kind") == PROVIDER_CONFIG_KIND:
                args = parse_provider_config(doc, default_endpoint)
                await db.upsert_provider_config(**args)
                applied.append((PROVIDER_CONFIG_KIND, args["name"], "configured"))
                continue

            args = parse_managed_resource(doc, self.get_registry())
            existing = await db.get_managed_resource_by_name(
                args["kind"], args["name"]
            )
            if existing is None:
                await db.create_managed_resource(**args)
                applied.append((args["kind"], args["name"], "created"))
            elif existing.get("deleted_at") is not None:
                raise ManifestError(
                    f"{args['kind']} {args['name']} is being deleted"
                )
            elif (
                existing["spec"] == args["spec"]
                and existing["provider_config_name"]
                == args["provider_config_name"]
                and existing["deletion_policy"] == args["deletion_policy"].value
            ):
                applied.append((args["kind"], args["name"], "unchanged"))
            else:
                await db.update_managed_resource(
                    existing["id"],
                    spec=args["spec"],
                    provider_config_name=args["provider_config_name"],
                    deletion_policy=args["deletion_policy"],
                )
                applied.append((args["kind"], args["name"], "configured"))
        return applied


def _load_documents(filename: str) -> List[Dict[str, Any]]:
    with open(filename, "r") as f:
        if filename.endswith(".json"):
            data = json.load(f)
            return data if isinstance(data, list) else [data]
        return [doc for doc in yaml.safe_load_all(f) if doc]


async def _require_resource(db: DatabaseManager, kind: str, name: str):
    resource = await db.get_managed_resource_by_name(kind, name)
    if resource is None:
        raise click.ClickException(f"{kind} {name} not found")
    return resource


@click.group()
@click.pass_context
def cli(ctx):
    """Permission operator CLI - kubectl-like interface for managed resources"""
    ctx.ensure_object(dict)
    ctx.obj.setdefault("client", PermissionOperatorCLI())


@cli.command()
@click.option(
    "--filename", "-f", required=True, type=click.Path(exists=True, dir_okay=False)
)
@click.pass_context
def apply(ctx, filename):
    """Apply provider configs and managed resources from a YAML/JSON file"""
    client: PermissionOperatorCLI = ctx.obj["client"]
    docs = _load_documents(filename)
    default_endpoint = UpboundConfig.from_env().endpoint

    try:
        applied = client.run(
            lambda db: client.apply_documents(db, docs, default_endpoint)
        )
    except ManifestError as e:
        raise click.ClickException(str(e))

    for kind, name, action in applied:
        click.echo(f"{kind.lower()}/{name} {action}")


@cli.command()
@click.argument("kind", required=False)
@click.option("--output", "-o", type=click.Choice(["table", "json"]), default="table")
@click.pass_context
def get(ctx, kind, output):
    """List managed resources, optionally of one KIND, or provider configs"""
    client: PermissionOperatorCLI = ctx.obj["client"]

    if kind == PROVIDER_CONFIG_KIND:
        configs = client.run(lambda db: db.list_provider_configs())
        if output == "json":
            click.echo(json.dumps(configs, indent=2, default=str))
            return
        table = [
            [c["name"], c["endpoint"], c["credentials_source"], c["usages"]]
            for c in configs
        ]
        click.echo(
            tabulate(
                table, headers=["NAME", "ENDPOINT", "SOURCE", "USAGES"], tablefmt="plain"
            )
        )
        return

    resources = client.run(lambda db: db.list_managed_resources(kind=kind))
    if output == "json":
        click.echo(json.dumps(resources, indent=2, default=str))
        return

    table = [
        [
            r["kind"],
            r["name"],
            condition_status(r, "Ready"),
            condition_status(r, "Synced"),
            r.get("external_name") or "",
            r["status"],
        ]
        for r in resources
    ]
    click.echo(
        tabulate(
            table,
            headers=["KIND", "NAME", "READY", "SYNCED", "EXTERNAL-NAME", "STATUS"],
            tablefmt="plain",
        )
    )


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.option("--output", "-o", type=click.Choice(["yaml", "json"]), default="yaml")
@click.option("--limit", "-l", default=5, help="Number of history entries to show")
@click.pass_context
def describe(ctx, kind, name, output, limit):
    """Describe a managed resource and its recent reconciliations"""
    client: PermissionOperatorCLI = ctx.obj["client"]

    async def load(db):
        resource = await _require_resource(db, kind, name)
        resource["history"] = await db.get_reconciliation_history(
            resource["id"], limit=limit
        )
        return resource

    resource = client.run(load)
    # Round-trip through JSON so timestamps render as strings
    data = json.loads(json.dumps(resource, default=str))
    if output == "json":
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.confirmation_option(prompt="Are you sure you want to delete this resource?")
@click.pass_context
def delete(ctx, kind, name):
    """Delete a managed resource (and its external object, per deletion policy)"""
    client: PermissionOperatorCLI = ctx.obj["client"]

    async def mark(db):
        resource = await _require_resource(db, kind, name)
        await db.delete_managed_resource(resource["id"])

    client.run(mark)
    click.echo(f"{kind.lower()}/{name} marked for deletion")


@cli.command()
@click.argument("kind")
@click.argument("name")
@click.pass_context
def reconcile(ctx, kind, name):
    """Trigger an immediate reconciliation of a managed resource"""
    client: PermissionOperatorCLI = ctx.obj["client"]

    async def trigger(db):
        resource = await _require_resource(db, kind, name)
        await db.mark_resource_for_reconciliation(resource["id"])

    client.run(trigger)
    click.echo(f"Reconciliation triggered for {kind.lower()}/{name}")


@cli.command("delete-provider-config")
@click.argument("name")
@click.pass_context
def delete_provider_config(ctx, name):
    """Delete a provider config no managed resource uses"""
    client: PermissionOperatorCLI = ctx.obj["client"]

    try:
        deleted = client.run(lambda db: db.delete_provider_config(name))
    except ValueError as e:
        raise click.ClickException(str(e))

    if not deleted:
        raise click.ClickException(f"ProviderConfig {name} not found")
    click.echo(f"providerconfig/{name} deleted")


if __name__ == "__main__":
    cli()
