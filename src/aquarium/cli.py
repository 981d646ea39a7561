"""
Command-line interface for aquarium.

The lifecycle subcommands take zero or more component names (or `all`) and
an optional --instance selector. Names are validated against the catalog
before anything touches the managed host; a bad name exits 1, and no names
at all is a no-op that exits 0. `zookeeper` takes zkCli words instead, and
the cluster-level commands take neither.
"""

import logging
import sys
from typing import List, Optional, Tuple

import click

from aquarium import __version__
from aquarium.components import ComponentInstance, default_registry
from aquarium.config import load_config
from aquarium.errors import AquariumError, UnknownComponent, UnknownInstance
from aquarium.executor import RemoteExecutor
from aquarium.lifecycle import Orchestrator
from aquarium.status import FileStatusStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

instance_option = click.option(
    "--instance", "-i", default=None,
    help="Only this instance (e.g. internal, 1). Default: all instances.",
)
components_argument = click.argument("components", nargs=-1)


def _available() -> str:
    return ", ".join(default_registry().ordered_names())


def _fail(message: str, show_available: bool = False):
    click.echo(f"✗ {message}", err=True)
    if show_available:
        click.echo(f"\nAvailable components: all, {_available()}", err=True)
    raise SystemExit(1)


def _orchestrator(ctx) -> Orchestrator:
    """Build the orchestrator on first use, after arguments are validated."""
    if "orchestrator" not in ctx.obj:
        config = ctx.obj["config"]
        executor = RemoteExecutor(config)
        ctx.call_on_close(executor.close)
        ctx.obj["orchestrator"] = Orchestrator(
            executor, FileStatusStore(config.status_file), config,
        )
    return ctx.obj["orchestrator"]


def _resolve(components: Tuple[str, ...], instance: Optional[str]) -> List[ComponentInstance]:
    if not components:
        click.echo(f"Nothing to do. Name components or `all` ({_available()}).")
        return []
    try:
        return default_registry().resolve(components, instance=instance)
    except UnknownComponent as e:
        _fail(str(e), show_available=True)
    except UnknownInstance as e:
        _fail(str(e))


def _each(ctx, action: str, instances: List[ComponentInstance], **kwargs):
    """Run one lifecycle action over the instances, in order, stopping at the first failure."""
    if not instances:
        return []
    orch = _orchestrator(ctx)
    operation = getattr(orch, action)
    results = []
    for inst in instances:
        click.echo(f"→ {action} {inst.name}")
        try:
            results.append((inst, operation(inst, **kwargs)))
        except AquariumError as e:
            _fail(f"{action} {inst.name} failed: {e}")
    return results


@click.group()
@click.version_option(version=__version__, prog_name="aquarium")
@click.option("--config", "config_path", default=None, type=click.Path(),
              help="YAML config file (default: config/aquarium.defaults.yml)")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx, config_path: Optional[str], verbose: bool):
    """
    aquarium - run a component cluster in containers on one Vagrant VM.
    """
    logging.basicConfig(format=LOG_FORMAT, level=logging.DEBUG if verbose else logging.INFO)
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config_path)
    except FileNotFoundError as e:
        _fail(str(e))


@main.command("build")
@components_argument
@instance_option
@click.option("--no-cache", is_flag=True, help="Bypass the docker build cache")
@click.pass_context
def build(ctx, components, instance, no_cache: bool):
    """Compile and build images for COMPONENTS."""
    instances = _resolve(components, instance)
    if _each(ctx, "build", instances, no_cache=no_cache):
        click.echo(f"✓ built {len(instances)} instance(s)")


@main.command("start")
@components_argument
@instance_option
@click.pass_context
def start(ctx, components, instance):
    """Start containers for COMPONENTS (already running ones are left alone)."""
    for inst, result in _each(ctx, "start", _resolve(components, instance)):
        if result is None:
            click.echo(f"  {inst.name}: image only, not started")
        elif result.already_running:
            click.echo(f"  {inst.name}: already running ({result.ip})")
        else:
            click.echo(f"✓ {inst.name} running at {result.ip}")


@main.command("stop")
@components_argument
@instance_option
@click.pass_context
def stop(ctx, components, instance):
    """Stop containers for COMPONENTS."""
    for inst, stopped in _each(ctx, "stop", _resolve(components, instance)):
        click.echo(f"✓ {inst.name} stopped" if stopped else f"  {inst.name}: nothing to stop")


@main.command("restart")
@components_argument
@instance_option
@click.pass_context
def restart(ctx, components, instance):
    """Stop and start COMPONENTS. Container state is lost."""
    for inst, result in _each(ctx, "restart", _resolve(components, instance)):
        if result is not None:
            click.echo(f"✓ {inst.name} running at {result.ip}")


@main.command("status")
@components_argument
@instance_option
@click.pass_context
def status(ctx, components, instance):
    """Show recorded status for COMPONENTS (default: all)."""
    instances = _resolve(components or ("all",), instance)
    orch = _orchestrator(ctx)
    for inst in instances:
        try:
            info = orch.inspect(inst)
        except AquariumError as e:
            _fail(str(e))
        click.echo(
            f"{info['name']:<22} {info['status']:<10} "
            f"{info['ip'] or '-':<16} {(info['cid'] or '-')[:12]}"
        )


@main.command("ssh")
@components_argument
@instance_option
@click.option("--command", "-c", default=None, help="Command to run instead of a shell")
@click.pass_context
def ssh(ctx, components, instance, command):
    """SSH into one running component instance."""
    instances = _resolve(components, instance)
    if not instances:
        return
    if len(instances) != 1:
        names = ", ".join(i.name for i in instances)
        _fail(f"ssh needs exactly one instance, got: {names} (use --instance)")
    try:
        code = _orchestrator(ctx).ssh(instances[0], command)
    except AquariumError as e:
        _fail(str(e))
    sys.exit(code)


@main.command("zookeeper")
@click.argument("command", nargs=-1)
@click.pass_context
def zookeeper(ctx, command):
    """
    Open the zookeeper CLI (optionally running COMMAND).

    Unlike the lifecycle commands this takes no component names or
    --instance: it always targets the single zookeeper container, and any
    arguments are passed to zkCli as one command line, e.g.
    `aquarium zookeeper ls /`.
    """
    try:
        code = _orchestrator(ctx).zookeeper_shell(" ".join(command) or None)
    except AquariumError as e:
        _fail(str(e))
    sys.exit(code)


@main.command("build-layers")
@click.option("--base", is_flag=True, help="Build the base layer")
@click.option("--builder", is_flag=True, help="Build the builder layer")
@click.pass_context
def build_layers(ctx, base: bool, builder: bool):
    """Build filesystem layers used by compile steps (default: all of them)."""
    try:
        built = _orchestrator(ctx).build_layers(base=base, builder=builder)
    except AquariumError as e:
        _fail(f"build-layers failed: {e}")
    click.echo(f"✓ built layers: {', '.join(built)}")


@main.command("register-components")
@click.pass_context
def register_components(ctx):
    """Register cluster components with the running manager."""
    try:
        _orchestrator(ctx).register_components()
    except AquariumError as e:
        _fail(f"register-components failed: {e}")
    click.echo("✓ components registered")


@main.command("base-cluster")
@click.option("--no-cache", is_flag=True, help="Bypass the docker build cache")
@click.option("--skip-layers", is_flag=True, help="Assume layers are already built")
@click.pass_context
def base_cluster(ctx, no_cache: bool, skip_layers: bool):
    """Build layers, then build and start the base cluster."""
    try:
        results = _orchestrator(ctx).base_cluster(no_cache=no_cache, layers=not skip_layers)
    except AquariumError as e:
        _fail(f"base-cluster failed: {e}")
    for result in results:
        click.echo(f"✓ {result.name} running at {result.ip}")


@main.command("provision")
@click.pass_context
def provision(ctx):
    """Re-run provisioning on the managed host."""
    try:
        _orchestrator(ctx).provision()
    except AquariumError as e:
        _fail(f"provision failed: {e}")
    click.echo("✓ provisioned")


if __name__ == "__main__":
    main()
