"""``kubeconverge`` command-line interface.

Commands:
    preview FILE   Show the planned operation for every resource.
    up FILE        Converge the declared stack; prints the run report.
    destroy        Delete everything recorded in the state file.
    outputs        Print the exports of the last successful run.
    serve          Serve the read-only state API with uvicorn.

Exit codes: 0 success, 1 the run finished but did not succeed,
2 the declaration, graph or state could not be used (nothing was changed).
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import signal
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

import click
import structlog

from kubeconverge.config import load_config
from kubeconverge.declaration import load_declaration
from kubeconverge.engine import ApplyRun, Engine, TeardownRun
from kubeconverge.errors import BuildError, DeclarationError
from kubeconverge.models.config import KubeConvergeConfig
from kubeconverge.models.run import RunReport
from kubeconverge.observability.logging import setup_logging
from kubeconverge.providers import ProviderContext, ProviderRegistry, build_default_registry
from kubeconverge.state.store import JsonFileStateStore, StateFormatError

_log = structlog.get_logger(component="cli")

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_UNUSABLE = 2


@dataclass
class CliState:
    """Objects shared by every command; tests inject ``providers``."""

    config: KubeConvergeConfig | None = None
    providers: ProviderRegistry | None = None


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2, sort_keys=False, default=str)


def _fail(ctx: click.Context, exc: Exception) -> None:
    click.echo(f"error: {exc}", err=True)
    ctx.exit(EXIT_UNUSABLE)


def _open_state(ctx: click.Context) -> JsonFileStateStore:
    state: CliState = ctx.obj
    assert state.config is not None
    store = JsonFileStateStore(state.config.state.path)
    try:
        store.load()
    except StateFormatError as exc:
        _fail(ctx, exc)
    return store


def _providers(ctx: click.Context, stack_name: str) -> ProviderRegistry:
    state: CliState = ctx.obj
    if state.providers is not None:
        return state.providers
    assert state.config is not None
    kube = state.config.kubernetes
    return build_default_registry(
        ProviderContext(
            stack=stack_name,
            kubeconfig=kube.kubeconfig,
            kube_context=kube.context,
            helm_binary=kube.helm_binary,
        )
    )


@contextlib.contextmanager
def _cancel_on_signals(loop: asyncio.AbstractEventLoop, run: ApplyRun | TeardownRun) -> Iterator[None]:
    """SIGINT/SIGTERM request a cooperative cancel instead of killing the loop."""
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, run.cancel)
            installed.append(sig)
        except (NotImplementedError, RuntimeError, ValueError):
            _log.debug("signal_handler_unavailable", signal=sig.name)
    try:
        yield
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def _execute(run: ApplyRun | TeardownRun, providers: ProviderRegistry) -> RunReport:
    loop = asyncio.get_running_loop()
    try:
        with _cancel_on_signals(loop, run):
            return await run.execute()
    finally:
        for adapter in providers.adapters():
            close = getattr(adapter, "close", None)
            if close is not None:
                await close()


def _finish(ctx: click.Context, report: RunReport) -> None:
    click.echo(_dump(report.to_dict()))
    ctx.exit(EXIT_OK if report.succeeded else EXIT_RUN_FAILED)


@click.group()
@click.option("--state", "state_path", default=None, help="State file (default: $KUBECONVERGE_STATE_PATH).")
@click.option("--log-level", default=None, help="debug, info, warning or error.")
@click.option("--log-json/--log-console", default=False, help="Log format on stderr.")
@click.version_option(package_name="kubeconverge")
@click.pass_context
def cli(ctx: click.Context, state_path: str | None, log_level: str | None, log_json: bool) -> None:
    """Converge Kubernetes resources declared in a stack file."""
    state = ctx.ensure_object(CliState)
    if state.config is None:
        try:
            state.config = load_config()
        except ValueError as exc:
            _fail(ctx, exc)
    assert state.config is not None
    if state_path:
        state.config.state.path = state_path
    setup_logging(log_level or state.config.log.level, json=log_json)


@cli.command()
@click.argument("file", type=click.Path(dir_okay=False))
@click.pass_context
def preview(ctx: click.Context, file: str) -> None:
    """Show what ``up`` would do, without calling any provider."""
    try:
        stack = load_declaration(file)
        store = _open_state(ctx)
        engine = Engine(_providers(ctx, stack.name), store, ctx.obj.config)
        plan = engine.preview(stack)
    except (DeclarationError, BuildError) as exc:
        _fail(ctx, exc)
        return
    click.echo(_dump(plan.to_dict()))


@cli.command()
@click.argument("file", type=click.Path(dir_okay=False))
@click.pass_context
def up(ctx: click.Context, file: str) -> None:
    """Create or update the declared resources."""
    try:
        stack = load_declaration(file)
        store = _open_state(ctx)
        providers = _providers(ctx, stack.name)
        run = Engine(providers, store, ctx.obj.config).new_run(stack)
    except (DeclarationError, BuildError) as exc:
        _fail(ctx, exc)
        return
    click.echo(f"run {run.run_id}: converging {len(run.graph)} resource(s) in stack {stack.name!r}", err=True)
    _finish(ctx, asyncio.run(_execute(run, providers)))


@cli.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
def destroy(ctx: click.Context, yes: bool) -> None:
    """Delete every resource recorded in the state file, dependents first."""
    store = _open_state(ctx)
    if not store.names():
        click.echo("state is empty, nothing to destroy", err=True)
        ctx.exit(EXIT_OK)
    if not yes:
        click.confirm(f"Delete {len(store.names())} resource(s) of stack {store.stack!r}?", abort=True)
    providers = _providers(ctx, store.stack)
    try:
        run = Engine(providers, store, ctx.obj.config).new_teardown()
    except BuildError as exc:
        _fail(ctx, exc)
        return
    _finish(ctx, asyncio.run(_execute(run, providers)))


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print as a JSON object.")
@click.pass_context
def outputs(ctx: click.Context, as_json: bool) -> None:
    """Print the exports recorded by the last successful ``up``."""
    store = _open_state(ctx)
    exports = store.exports()
    if as_json:
        click.echo(_dump(exports))
        return
    for name, value in exports.items():
        rendered = value if isinstance(value, str) else json.dumps(value, default=str)
        click.echo(f"{name}: {rendered}")


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", type=int, default=None, help="Default: $KUBECONVERGE_API_PORT.")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int | None) -> None:
    """Serve the read-only state API."""
    import uvicorn

    from kubeconverge.api import create_app

    config: KubeConvergeConfig = ctx.obj.config
    store = JsonFileStateStore(config.state.path)
    app = create_app(state_store=store, config=config)
    _log.info("rest api starting", host=host, port=port or config.api.port)
    uvicorn.run(app, host=host, port=port or config.api.port, log_config=None)
