"""VM-Series topology CLI (vtc).

Usage:
    vtc validate topology.yaml                # Validate a topology file
    vtc graph topology.yaml                   # Print dependency order
    vtc plan topology.yaml -p acme.gcp:build  # Compute a plan (dry run)
    vtc apply topology.yaml -p acme.gcp:build # Reconcile once
    vtc state list                            # List recorded resources

Exit codes follow the pass status: 0 completed, 1 partially failed,
2 aborted by configuration, 3 aborted by a dependency cycle.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path

import click

from .config import Config, ConfigurationError, DriftPolicy
from .graph import ConfigError, CycleDetectedError, ResourceIdentity
from .plan import EXIT_CODES, exit_code_for, render_json, render_result
from .provider import ProviderAdapter, ProviderLoadError, load_provider
from .reconciler import PassResult, PassStatus, Reconciler
from .spec_loader import load_graph
from .state_store import StateStore, StateStoreError

CLI_VERSION = "0.1.0"
OUTPUT_FORMATS = ("text", "json")


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _fail(message: str, status: PassStatus) -> None:
    click.secho(message, fg="red", err=True)
    sys.exit(EXIT_CODES[status])


def _build_config(
    topology: Path,
    state_dir: Path | None,
    provider: str | None,
    **overrides: object,
) -> Config:
    """Environment configuration with command-line overrides applied."""
    try:
        base = Config.from_env()
        changes: dict[str, object] = {"topology_file": topology}
        if state_dir is not None:
            changes["state_dir"] = state_dir
        if provider is not None:
            changes["provider"] = provider
        changes.update({k: v for k, v in overrides.items() if v is not None})
        return dataclasses.replace(base, **changes)
    except ConfigurationError as e:
        raise click.UsageError(str(e)) from e


def _load_provider(config: Config) -> ProviderAdapter:
    if config.provider is None:
        raise click.UsageError("A provider is required: pass --provider or set PROVIDER")
    try:
        return load_provider(config.provider)
    except ProviderLoadError as e:
        raise click.ClickException(str(e)) from e


async def _run_pass(config: Config, provider: ProviderAdapter, dry_run: bool) -> PassResult:
    reconciler = Reconciler(config, provider, StateStore(config.state_dir))
    try:
        return await reconciler.reconcile_once(dry_run=dry_run)
    finally:
        await provider.close()


def _emit(result: PassResult, output: str) -> None:
    if output == "json":
        click.echo(render_json(result))
    else:
        click.echo(render_result(result))


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=CLI_VERSION, prog_name="vtc")
@click.option("--verbose", "-v", is_flag=True, help="Log progress to stderr")
def cli(verbose: bool) -> None:
    """VM-Series topology CLI (vtc).

    Plan and reconcile a declared firewall network topology.

    \b
    Quick Start:
        vtc validate topology.yaml
        vtc plan topology.yaml --provider mypkg.adapter:build
        vtc apply topology.yaml --provider mypkg.adapter:build
    """
    _setup_logging(verbose)


provider_option = click.option(
    "--provider", "-p", help="Provider adapter as module:attribute (default: $PROVIDER)"
)
state_dir_option = click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="State directory (default: $STATE_DIR)",
)
output_option = click.option(
    "--output", "-o", type=click.Choice(OUTPUT_FORMATS), default="text", show_default=True
)
topology_argument = click.argument(
    "topology", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)


# =============================================================================
# Offline Commands
# =============================================================================


@cli.command()
@topology_argument
def validate(topology: Path) -> None:
    """Validate a topology file: schema, references and cycles."""
    try:
        spec, graph = load_graph(topology)
        graph.validate()
    except CycleDetectedError as e:
        _fail(f"✗ {e}", PassStatus.ABORTED_BY_CYCLE)
    except ConfigError as e:
        _fail(f"✗ {e}", PassStatus.ABORTED_BY_CONFIG)
    else:
        click.secho(
            f"✓ Topology '{spec.name}' is valid ({len(graph)} resources)", fg="green"
        )


@cli.command("graph")
@topology_argument
def graph_command(topology: Path) -> None:
    """Print resources in dependency order."""
    try:
        _, graph = load_graph(topology)
        order = graph.topological_order()
    except CycleDetectedError as e:
        _fail(f"✗ {e}", PassStatus.ABORTED_BY_CYCLE)
    except ConfigError as e:
        _fail(f"✗ {e}", PassStatus.ABORTED_BY_CONFIG)
    else:
        for index, identity in enumerate(order, start=1):
            deps = ", ".join(str(d) for d in graph.dependencies(identity))
            suffix = f"  <- {deps}" if deps else ""
            click.echo(f"{index:>3}. {identity}{suffix}")


# =============================================================================
# Reconciliation Commands
# =============================================================================


@cli.command()
@topology_argument
@provider_option
@state_dir_option
@output_option
@click.option("--fail-on-drift", is_flag=True, help="Exit 1 when drift conflicts are found")
def plan(
    topology: Path,
    provider: str | None,
    state_dir: Path | None,
    output: str,
    fail_on_drift: bool,
) -> None:
    """Compute the change set without applying anything."""
    config = _build_config(topology, state_dir, provider)
    adapter = _load_provider(config)
    result = asyncio.run(_run_pass(config, adapter, dry_run=True))
    _emit(result, output)

    code = exit_code_for(result)
    if code == 0 and fail_on_drift and result.change_set and result.change_set.conflicts:
        code = EXIT_CODES[PassStatus.PARTIALLY_FAILED]
    sys.exit(code)


@cli.command()
@topology_argument
@provider_option
@state_dir_option
@output_option
@click.option("--dry-run", is_flag=True, help="Plan only, never mutate")
@click.option("--parallelism", type=click.IntRange(min=1), help="Max concurrent provider calls")
@click.option(
    "--drift-policy",
    type=click.Choice([p.value for p in DriftPolicy]),
    help="How drift against the last applied state is handled",
)
def apply(
    topology: Path,
    provider: str | None,
    state_dir: Path | None,
    output: str,
    dry_run: bool,
    parallelism: int | None,
    drift_policy: str | None,
) -> None:
    """Reconcile live state to the topology once."""
    config = _build_config(
        topology,
        state_dir,
        provider,
        parallelism=parallelism,
        drift_policy=DriftPolicy(drift_policy) if drift_policy else None,
    )
    adapter = _load_provider(config)
    result = asyncio.run(_run_pass(config, adapter, dry_run=dry_run or config.dry_run))
    _emit(result, output)
    sys.exit(exit_code_for(result))


# =============================================================================
# State Commands
# =============================================================================


@cli.group()
def state() -> None:
    """Inspect and edit the durable state store."""
    pass


def _parse_identity(value: str) -> ResourceIdentity:
    try:
        return ResourceIdentity.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def _store(state_dir: Path | None) -> StateStore:
    if state_dir is None:
        try:
            state_dir = Config.from_env().state_dir
        except ConfigurationError as e:
            raise click.UsageError(str(e)) from e
    return StateStore(state_dir)


@state.command("list")
@state_dir_option
def state_list(state_dir: Path | None) -> None:
    """List recorded resources."""
    store = _store(state_dir)
    try:
        records = asyncio.run(store.all_records())
    except StateStoreError as e:
        raise click.ClickException(str(e)) from e

    if not records:
        click.echo("No recorded resources.")
        return
    for identity, record in sorted(records.items()):
        recorded_at = record.recorded_at.isoformat() if record.recorded_at else "-"
        click.echo(f"{identity}  {record.provider_id or '-'}  {recorded_at}")


@state.command("show")
@click.argument("identity")
@state_dir_option
def state_show(identity: str, state_dir: Path | None) -> None:
    """Show one recorded resource as JSON."""
    parsed = _parse_identity(identity)
    store = _store(state_dir)
    try:
        record = asyncio.run(store.lookup(parsed))
    except StateStoreError as e:
        raise click.ClickException(str(e)) from e

    if record is None:
        raise click.ClickException(f"No record for {parsed}")
    click.echo(json.dumps(record.model_dump(mode="json", by_alias=True), indent=2))


@state.command("rm")
@click.argument("identity")
@state_dir_option
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def state_rm(identity: str, state_dir: Path | None, yes: bool) -> None:
    """Forget a recorded resource without touching it live."""
    parsed = _parse_identity(identity)
    if not yes:
        click.confirm(f"Forget {parsed}? The live resource is not deleted.", abort=True)

    store = _store(state_dir)
    try:
        removed = asyncio.run(store.remove(parsed))
    except StateStoreError as e:
        raise click.ClickException(str(e)) from e

    if not removed:
        raise click.ClickException(f"No record for {parsed}")
    click.secho(f"✓ Forgot {parsed}", fg="green")


def main() -> None:
    """Entry point for the vtc CLI."""
    cli()


if __name__ == "__main__":
    main()
