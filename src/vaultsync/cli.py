"""
vaultsync CLI - plan and apply Vault resource manifests.

Reads a YAML or JSON manifest, compares every resource in it with what Vault
currently holds, and converges Vault onto the manifest.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import click
import yaml
from tabulate import tabulate

from vaultsync.config import Config, load_config
from vaultsync.errors import ReconcileError
from vaultsync.reconciler import (
    ActionType,
    Reconciler,
    ReconciliationPlan,
    RetryPolicy,
    plan,
)
from vaultsync.registry import ResourceRegistry, build_registry
from vaultsync.transport import Transport
from vaultsync.validation import ManifestEntry, load_manifest
from vaultsync.vault.client import VaultClient

logger = logging.getLogger(__name__)


@dataclass
class PlannedResource:
    """A manifest entry together with its plan."""

    entry: ManifestEntry
    transport: Transport
    resource_id: str
    plan: ReconciliationPlan


def _read_file(filename: str) -> Any:
    with open(filename, "r") as f:
        try:
            if filename.endswith(".json"):
                return json.load(f)
            return yaml.safe_load(f)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise click.ClickException(f"Could not parse {filename}: {e}")


def _build_reconciler(config: Config) -> Reconciler:
    settings = config.reconciler
    policy = RetryPolicy(
        max_attempts=settings.max_attempts,
        base_delay=settings.backoff_base_delay,
        max_delay=settings.backoff_max_delay,
    )
    return Reconciler(retry_policy=policy, allow_replace=settings.allow_replace)


async def _plan_entries(
    entries: List[ManifestEntry],
    registry: ResourceRegistry,
    client: VaultClient,
    reconciler: Reconciler,
) -> List[PlannedResource]:
    planned = []
    for entry in entries:
        kind = registry.get(entry.kind)
        transport = kind.transport_factory(client)
        wanted = kind.fields.coerce_desired(entry.spec)
        resource_id, remote = await reconciler.locate(transport, wanted, entry.id)
        planned.append(
            PlannedResource(
                entry=entry,
                transport=transport,
                resource_id=resource_id,
                plan=plan(entry.spec, remote, kind.fields),
            )
        )
    return planned


def _describe_action(reconciliation_plan: ReconciliationPlan) -> str:
    action = reconciliation_plan.action
    if action.type is ActionType.REPLACE:
        return f"'{action.reason}' cannot change in place"
    if action.type is ActionType.UPDATE:
        summary = reconciliation_plan.describe()["changes"]
        return ", ".join(
            f"{name}: {change['from']!r} -> {change['to']!r}"
            for name, change in summary.items()
        )
    return ""


def _plan_table(planned: List[PlannedResource]) -> str:
    headers = ["Kind", "ID", "Action", "Details"]
    rows = [
        [
            p.entry.kind,
            p.resource_id,
            p.plan.action.type.value,
            _describe_action(p.plan),
        ]
        for p in planned
    ]
    return tabulate(rows, headers=headers, tablefmt="grid")


class CLIContext:
    """Objects shared by all commands of one invocation."""

    def __init__(self, config: Config, registry: ResourceRegistry):
        self.config = config
        self.registry = registry
        self._client: Optional[VaultClient] = None

    @property
    def client(self) -> VaultClient:
        if self._client is None:
            self._client = VaultClient(self.config.vault)
        return self._client

    @property
    def reconciler(self) -> Reconciler:
        return _build_reconciler(self.config)


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
@click.pass_context
def cli(ctx, log_level):
    """vaultsync - converge Vault resources onto a manifest"""
    try:
        config = load_config()
    except ValueError as e:
        raise click.ClickException(str(e))

    if log_level:
        config.logging.level = log_level.upper()
    config.logging.configure()

    ctx.obj = CLIContext(config, build_registry())


@cli.command()
@click.pass_obj
def kinds(obj: CLIContext):
    """List the resource kinds that can be reconciled"""
    rows = []
    for name in obj.registry.list_kinds():
        kind = obj.registry.get(name)
        rows.append([name, len(kind.fields), kind.description])
    headers = ["Kind", "Fields", "Description"]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command(name="plan")
@click.argument("filename", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Choice(["table", "json"]), default="table")
@click.pass_obj
def plan_command(obj: CLIContext, filename, output):
    """Show what apply would change, without changing anything"""
    try:
        entries = load_manifest(_read_file(filename), obj.registry)
        planned = asyncio.run(
            _plan_entries(entries, obj.registry, obj.client, obj.reconciler)
        )
    except ReconcileError as e:
        raise click.ClickException(e.message)

    if output == "json":
        result = [
            dict(p.plan.describe(), id=p.resource_id) for p in planned
        ]
        click.echo(json.dumps(result, indent=2, default=str))
        return

    click.echo(_plan_table(planned))
    changes = sum(1 for p in planned if not p.plan.is_noop)
    click.echo(f"\n{changes} of {len(planned)} resource(s) to change")


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.option("--auto-approve", is_flag=True, help="Skip the replacement prompt")
@click.pass_obj
def apply(obj: CLIContext, filename, auto_approve):
    """Converge Vault onto the resources in a YAML/JSON manifest"""
    reconciler = obj.reconciler

    try:
        entries = load_manifest(_read_file(filename), obj.registry)
        planned = asyncio.run(
            _plan_entries(entries, obj.registry, obj.client, reconciler)
        )
    except ReconcileError as e:
        raise click.ClickException(e.message)

    pending = [p for p in planned if not p.plan.is_noop]
    if not pending:
        click.echo("No changes. Vault matches the manifest.")
        return

    click.echo(_plan_table(pending))

    replacements = [p for p in pending if p.plan.requires_replacement]
    if replacements and not auto_approve:
        click.confirm(
            f"{len(replacements)} resource(s) will be deleted and recreated. Continue?",
            abort=True,
        )

    async def run() -> List[List[Any]]:
        rows = []
        for p in pending:
            result = await reconciler.apply(p.plan, p.transport, p.resource_id)
            rows.append(
                [p.entry.kind, result.resource_id, result.phase.value, result.calls]
            )
        return rows

    try:
        rows = asyncio.run(run())
    except ReconcileError as e:
        raise click.ClickException(e.message)

    headers = ["Kind", "ID", "Phase", "Calls"]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))
    click.echo(f"\nApplied {len(rows)} change(s)")


@cli.command()
@click.argument("kind")
@click.argument("resource_id")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="json")
@click.pass_obj
def show(obj: CLIContext, kind, resource_id, output):
    """Show the current state of a resource as Vault reports it"""
    try:
        resource_kind = obj.registry.get(kind)
    except ValueError as e:
        raise click.ClickException(str(e))

    transport = resource_kind.transport_factory(obj.client)
    try:
        remote = asyncio.run(obj.reconciler.read(transport, resource_id))
    except ReconcileError as e:
        raise click.ClickException(e.message)

    if remote is None:
        raise click.ClickException(f"{kind} {resource_id} not found")

    state: Dict[str, Any] = resource_kind.fields.coerce_remote(remote)
    if output == "yaml":
        click.echo(yaml.dump(state, default_flow_style=False))
    else:
        click.echo(json.dumps(state, indent=2))


@cli.command()
@click.argument("kind")
@click.argument("resource_id")
@click.confirmation_option(prompt="Are you sure you want to delete this resource?")
@click.pass_obj
def destroy(obj: CLIContext, kind, resource_id):
    """Delete a resource from Vault"""
    try:
        transport = obj.registry.create_transport(kind, obj.client)
    except ValueError as e:
        raise click.ClickException(str(e))

    try:
        asyncio.run(obj.reconciler.destroy(transport, resource_id))
    except ReconcileError as e:
        raise click.ClickException(e.message)

    click.echo(f"Deleted {kind} {resource_id}")


if __name__ == "__main__":
    cli()
