"""Command line entry point (rivestack).

Usage:
    rivestack plan desired.yaml          # Show what apply would change
    rivestack apply desired.yaml         # Converge the API to the desired state
    rivestack destroy                    # Delete everything in the state file
    rivestack import user app 42/app     # Adopt an existing remote entity
    rivestack show                       # Print managed state
    rivestack server-types               # List server sizes
    rivestack extensions                 # List installable extensions
    rivestack cluster 42                 # Look up a cluster

Exit codes: 0 on success, 1 when an operation against the API failed,
2 on invalid configuration, input files or identifiers.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from . import __version__
from .client import RivestackClient
from .config import ConfigurationError, ProviderConfig
from .desired import DesiredStateError, load_desired
from .engine import ActionType, ApplyResult, Engine, Plan
from .identifiers import IdentifierError
from .lifecycle import LifecycleError
from .resources import HANDLERS
from .resources.data_sources import list_extensions, list_server_types, read_cluster
from .state import StateError, StateStore, split_address

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

DEFAULT_STATE_FILE = "rivestack.state.json"

# Errors caused by the operator's input rather than by the API
INPUT_ERRORS = (ConfigurationError, DesiredStateError, StateError, IdentifierError, LifecycleError)

_ACTION_STYLES = {
    ActionType.CREATE: ("+", "green"),
    ActionType.UPDATE: ("~", "yellow"),
    ActionType.REPLACE: ("-/+", "magenta"),
    ActionType.DELETE: ("-", "red"),
}

_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


def setup_logging(json_output: bool = True, level: str = "info") -> None:
    """Configure logging on stderr, keeping stdout for command output.

    Args:
        json_output: Emit one JSON object per record; plain text otherwise.
        level: Root log level name.
    """

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data: dict[str, Any] = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            # Add extra fields from the record
            for key, value in record.__dict__.items():
                if key not in _RESERVED_LOG_ATTRS:
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(level.upper())

    # Request lines would otherwise be logged by the HTTP stack on every poll
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


@dataclass
class CliContext:
    api_key: str | None
    base_url: str | None
    state_path: Path

    def config(self) -> ProviderConfig:
        return ProviderConfig.resolve(api_key=self.api_key, base_url=self.base_url)


def _run_async(main: Callable[[asyncio.Event], Awaitable[int]]) -> None:
    """Run a command coroutine and exit with its code.

    SIGINT/SIGTERM set the cancellation event, so every wait aborts at its
    next poll instead of leaving the process hanging for minutes.
    """

    async def runner() -> int:
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            logger.warning("Received signal, cancelling", extra={"signal": sig.name})
            cancel.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
            except (NotImplementedError, RuntimeError):
                pass

        try:
            return await main(cancel)
        except INPUT_ERRORS as e:
            click.secho(f"Error: {e}", fg="red", err=True)
            return EXIT_USAGE
        except Exception as e:
            logger.debug("Command failed", exc_info=True)
            click.secho(f"Error: {e}", fg="red", err=True)
            return EXIT_FAILURE
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, RuntimeError):
                    pass

    sys.exit(asyncio.run(runner()))


def _echo_plan(plan: Plan) -> None:
    if plan.empty:
        click.echo("No changes. Remote state matches the desired state.")
        return
    for action in plan.changes:
        symbol, color = _ACTION_STYLES[action.type]
        click.secho(f"  {symbol} {action.describe()}", fg=color)
    summary = plan.summary()
    click.echo(
        f"\nPlan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['replace']} to replace, {summary['delete']} to delete."
    )


def _echo_result(result: ApplyResult) -> int:
    for warning in result.warnings:
        click.secho(f"Warning: {warning}", fg="yellow", err=True)
    for action in result.applied:
        click.echo(f"  done: {action.describe()}")
    if not result.ok:
        assert result.failed is not None
        click.secho(f"Error: {result.failed.describe()} failed: {result.error}", fg="red", err=True)
        return EXIT_FAILURE
    click.secho(f"Apply complete: {len(result.applied)} change(s).", fg="green")
    return EXIT_OK


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.version_option(version=__version__, prog_name="rivestack")
@click.option("--api-key", help="API key (default: $RIVESTACK_API_KEY)")
@click.option("--base-url", help="API base URL (default: $RIVESTACK_BASE_URL or production)")
@click.option(
    "--state",
    "state_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_STATE_FILE,
    show_default=True,
    help="Managed state file",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default="json",
    show_default=True,
    help="Log output format (logs go to stderr)",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="info",
    show_default=True,
)
@click.pass_context
def cli(
    ctx: click.Context,
    api_key: str | None,
    base_url: str | None,
    state_path: Path,
    log_format: str,
    log_level: str,
) -> None:
    """Manage Rivestack HA PostgreSQL clusters declaratively.

    \b
    Quick Start:
        export RIVESTACK_API_KEY=...
        rivestack plan desired.yaml
        rivestack apply desired.yaml
    """
    setup_logging(json_output=log_format == "json", level=log_level)
    ctx.obj = CliContext(api_key=api_key, base_url=base_url, state_path=state_path)


# =============================================================================
# Desired state commands
# =============================================================================


@cli.command()
@click.argument("desired_file", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_obj
def plan(obj: CliContext, desired_file: Path) -> None:
    """Show the changes apply would make. State is not written."""

    async def main(cancel: asyncio.Event) -> int:
        desired = load_desired(desired_file)
        config = obj.config()
        store = StateStore.load(obj.state_path)
        async with RivestackClient(config) as client:
            engine = Engine(client, config.timeouts, store, cancel)
            _echo_plan(await engine.plan(desired))
        return EXIT_OK

    _run_async(main)


@cli.command()
@click.argument("desired_file", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_obj
def apply(obj: CliContext, desired_file: Path) -> None:
    """Converge the API to DESIRED_FILE and record the result in state."""

    async def main(cancel: asyncio.Event) -> int:
        desired = load_desired(desired_file)
        config = obj.config()
        store = StateStore.load(obj.state_path)
        async with RivestackClient(config) as client:
            engine = Engine(client, config.timeouts, store, cancel)
            planned = await engine.plan(desired)
            _echo_plan(planned)
            if planned.empty:
                store.save()
                return EXIT_OK
            return _echo_result(await engine.apply(planned))

    _run_async(main)


@cli.command()
@click.pass_obj
def destroy(obj: CliContext) -> None:
    """Delete every resource recorded in the state file."""

    async def main(cancel: asyncio.Event) -> int:
        config = obj.config()
        store = StateStore.load(obj.state_path)
        async with RivestackClient(config) as client:
            engine = Engine(client, config.timeouts, store, cancel)
            planned = await engine.plan_destroy()
            _echo_plan(planned)
            if planned.empty:
                store.save()
                return EXIT_OK
            return _echo_result(await engine.apply(planned))

    _run_async(main)


@cli.command("import")
@click.argument("kind", type=click.Choice(sorted(HANDLERS)))
@click.argument("name")
@click.argument("resource_id")
@click.pass_obj
def import_(obj: CliContext, kind: str, name: str, resource_id: str) -> None:
    """Adopt an existing entity as KIND.NAME.

    \b
    RESOURCE_ID formats:
        cluster, firewall, backup_config:  <cluster_id>
        user, database:                    <cluster_id>/<name>
        extension:                         <cluster_id>/<extension>/<database>
        grant:                             <cluster_id>/<username>/<database>
    """

    async def main(cancel: asyncio.Event) -> int:
        config = obj.config()
        store = StateStore.load(obj.state_path)
        async with RivestackClient(config) as client:
            engine = Engine(client, config.timeouts, store, cancel)
            model = await engine.import_resource(kind, name, resource_id)
        click.secho(f"Imported {kind}.{name} (id {model.id})", fg="green")
        return EXIT_OK

    _run_async(main)


@cli.command()
@click.option("--show-sensitive", is_flag=True, help="Include passwords and connection strings")
@click.pass_obj
def show(obj: CliContext, show_sensitive: bool) -> None:
    """Print the managed state."""
    try:
        store = StateStore.load(obj.state_path)
        output = {}
        for addr, record in sorted(store.items()):
            kind, _ = split_address(addr)
            handler = HANDLERS.get(kind)
            attributes = dict(record.attributes)
            if handler is not None and not show_sensitive:
                model = handler.model.from_attributes({**attributes, "id": record.id})
                attributes = model.redacted()
            output[addr] = {"id": record.id, "tainted": record.tainted, "attributes": attributes}
    except StateError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(EXIT_USAGE)
    _echo_json(output)


# =============================================================================
# Lookups
# =============================================================================


@cli.command("server-types")
@click.pass_obj
def server_types(obj: CliContext) -> None:
    """List available server sizes."""

    async def main(cancel: asyncio.Event) -> int:
        async with RivestackClient(obj.config()) as client:
            resp = await list_server_types(client)
        _echo_json(resp.model_dump(mode="json"))
        return EXIT_OK

    _run_async(main)


@cli.command()
@click.option("--category", help="Only list extensions in this category")
@click.pass_obj
def extensions(obj: CliContext, category: str | None) -> None:
    """List installable PostgreSQL extensions."""

    async def main(cancel: asyncio.Event) -> int:
        async with RivestackClient(obj.config()) as client:
            found = await list_extensions(client, category)
        _echo_json([ext.model_dump(mode="json") for ext in found])
        return EXIT_OK

    _run_async(main)


@cli.command()
@click.argument("cluster_id")
@click.option("--show-sensitive", is_flag=True, help="Include passwords and connection strings")
@click.pass_obj
def cluster(obj: CliContext, cluster_id: str, show_sensitive: bool) -> None:
    """Look up an existing cluster by CLUSTER_ID."""

    async def main(cancel: asyncio.Event) -> int:
        async with RivestackClient(obj.config()) as client:
            data = await read_cluster(client, cluster_id, show_sensitive=show_sensitive)
        _echo_json(data)
        return EXIT_OK

    _run_async(main)


# =============================================================================
# Entry Point
# =============================================================================


def run() -> None:
    """Entry point for the rivestack CLI."""
    cli()


if __name__ == "__main__":
    run()
