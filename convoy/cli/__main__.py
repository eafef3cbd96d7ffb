"""Convoy CLI - Main Entry Point.

The `convoy` command runs a topology of services and tasks in dependency
order, handing deployment artifacts from one unit to the next.

Commands:
    up       - Run the topology in the foreground
    validate - Load a topology and check it for cycles
    graph    - Print start layers or Graphviz DOT
    extract  - Turn deployment manifests into a .env file
    init     - Scaffold a kakarot devnet topology
"""

import logging
import sys
from typing import Optional, Tuple

import click

from . import __version__, __cli_name__
from .utils.colors import (
    success, error, info, warning, dim,
    section, kv, badge, bullet, table,
    _CHECK, _CROSS,
)
from ..errors import ConvoyError


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# ═══════════════════════════════════════════════════════════════════════════
# Custom Click help formatter
# ═══════════════════════════════════════════════════════════════════════════


class ConvoyGroup(click.Group):
    """Click group subclass with aligned command listing."""

    def format_commands(
        self, ctx: click.Context, formatter: click.HelpFormatter
    ) -> None:
        commands = []
        for subcommand in self.list_commands(ctx):
            cmd = self.get_command(ctx, subcommand)
            if cmd is None or cmd.hidden:
                continue
            commands.append((subcommand, cmd.get_short_help_str(limit=48)))

        if commands:
            with formatter.section(click.style("Commands", fg="cyan", bold=True)):
                max_len = max(len(c[0]) for c in commands) + 2
                for name, help_text in commands:
                    styled_name = click.style(name.ljust(max_len), fg="green")
                    formatter.write(f"  {styled_name} {help_text}\n")


def _configure_logging(verbose: bool, quiet: bool) -> None:
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)


@click.group(cls=ConvoyGroup)
@click.version_option(version=__version__, prog_name=__cli_name__)
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.option('--quiet', '-q', is_flag=True, help='Minimal output')
@click.pass_context
def cli(ctx, verbose: bool, quiet: bool):
    """Dependency-gated startup for services and one-shot tasks.

    \b
    Quick start:
      convoy init devnet
      convoy validate -f devnet/convoy.yaml
      convoy up -f devnet/convoy.yaml
    """
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    ctx.obj['quiet'] = quiet
    _configure_logging(verbose, quiet)


topology_option = click.option(
    '--file', '-f', 'path',
    type=click.Path(dir_okay=False),
    help='Topology file (default: ./convoy.yaml)',
)


# ============================================================================
# Commands
# ============================================================================

@cli.command('up')
@topology_option
@click.option('--timeout', type=float, help='Stop everything after this many seconds')
@click.pass_context
def up(ctx, path: Optional[str], timeout: Optional[float]):
    """
    Run the topology until every unit is done or Ctrl-C.

    Examples:
      convoy up
      convoy up -f devnet/convoy.yaml --timeout 600
    """
    from ..config import TopologyLoader
    from .commands.up import describe_event, exit_code_for, run_topology

    try:
        topology = TopologyLoader.load(path)
    except ConvoyError as e:
        error(e.format_error())
        sys.exit(1)

    quiet = ctx.obj['quiet']

    def echo_event(event):
        text = describe_event(event)
        if text is not None and not quiet:
            dim(f"  {text}")

    if not quiet:
        info(f"Starting {len(topology.graph)} units from {topology.source}")

    orchestrator = run_topology(topology, timeout=timeout, on_event=echo_event)
    code = exit_code_for(orchestrator)

    if not quiet:
        click.echo()
        section("Units")
        rows = [
            [name, badge(s["state"]), str(s["attempts"]), str(s["exit_code"] if s["exit_code"] is not None else "-")]
            for name, s in orchestrator.status().items()
        ]
        table(["Unit", "State", "Attempts", "Exit"], rows)
        click.echo()

    if code == 0:
        if not quiet:
            success(f"  {_CHECK} All units finished cleanly")
    else:
        error(f"  {_CROSS} Failed: {', '.join(orchestrator.failed_units())}")
    sys.exit(code)


@cli.command('validate')
@topology_option
@click.pass_context
def validate(ctx, path: Optional[str]):
    """
    Load a topology, resolve dependencies and check for cycles.

    Examples:
      convoy validate
      convoy validate -f devnet/convoy.yaml
    """
    from .commands.validate import validate_topology

    result = validate_topology(path)

    if not result.is_valid:
        error(f"  {_CROSS} Validation failed")
        for fault in result.faults:
            error(fault)
        sys.exit(1)

    if not ctx.obj['quiet']:
        click.echo()
        success(f"  {_CHECK} Validation passed")
        kv("Units", str(result.unit_count))
        kv("Store", result.topology.store_root)
        click.echo()
        section("Start layers")
        for i, layer in enumerate(result.layers):
            bullet(f"{i}: {', '.join(layer)}")
        for fault in result.faults:
            warning(f"  {fault}")


@cli.command('graph')
@topology_option
@click.option('--dot', is_flag=True, help='Emit Graphviz DOT')
def graph(path: Optional[str], dot: bool):
    """
    Print the dependency graph.

    Examples:
      convoy graph
      convoy graph --dot | dot -Tpng > topology.png
    """
    from ..config import TopologyLoader

    try:
        topology = TopologyLoader.load(path)
    except ConvoyError as e:
        error(e.format_error())
        sys.exit(1)

    g = topology.graph
    if dot:
        click.echo(g.to_dot())
        return

    for i, layer in enumerate(g.layers()):
        click.echo(f"{i}: {', '.join(layer)}")
    for name, deps in g.to_dict().items():
        for d in deps:
            click.echo(f"  {name} -> {d['unit']} [{d['condition']}]")


@cli.command('extract')
@click.option('--store', type=click.Path(file_okay=False), default='deployments', show_default=True,
              help='Artifact store directory')
@click.option('--network', default='katana', show_default=True, help='Network subdirectory for the kakarot preset')
@click.option('--output', default='.env', show_default=True, help='Output path inside the store')
@click.option('--bind', 'bindings', multiple=True, metavar='KEY=DOC:FIELD',
              help='Explicit binding (replaces the kakarot preset)')
@click.option('--strict', is_flag=True, help='Fail instead of writing null for missing documents')
@click.pass_context
def extract(ctx, store: str, network: str, output: str, bindings: Tuple[str, ...], strict: bool):
    """
    Extract deployment values into an environment file.

    Examples:
      convoy extract --store ./deployments
      convoy extract --bind KAKAROT_ADDRESS=katana/deployments.json:kakarot.address
    """
    from .commands.extract import extract as run_extract

    try:
        report = run_extract(store, network=network, output=output, bindings=bindings, strict=strict)
    except ValueError as e:
        error(f"  {_CROSS} {e}")
        sys.exit(1)

    if report.written:
        if not ctx.obj['quiet']:
            success(f"  {_CHECK} Wrote {len(report.record)} keys to {output}")
            for key, value in report.record:
                kv(key, value, key_width=34)
        for fault in report.faults:
            warning(f"  {fault}")
    else:
        error(f"  {_CROSS} Extraction failed, {output} left untouched")
        for fault in report.faults:
            error(f"  {fault}")
    sys.exit(report.exit_code)


@cli.command('init')
@click.argument('directory', required=False)
@click.option('--network', default='katana', show_default=True, help='Starknet network name used by the deployer')
@click.option('--force', is_flag=True, help='Overwrite an existing convoy.yaml')
@click.pass_context
def init(ctx, directory: Optional[str], network: str, force: bool):
    """
    Scaffold a kakarot devnet topology.

    Examples:
      convoy init
      convoy init devnet --network katana
    """
    from .commands.init import create_topology

    try:
        path = create_topology(directory, network=network, force=force)
    except FileExistsError as e:
        error(f"  {_CROSS} {e}")
        sys.exit(1)

    if not ctx.obj['quiet']:
        success(f"  {_CHECK} Created {path}")
        dim(f"  Next: convoy validate -f {path}")


def main():
    """Entry point for `convoy` command."""
    cli(obj={})


if __name__ == '__main__':
    main()
