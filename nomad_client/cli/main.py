"""Click-based CLI for tailing Nomad allocation logs."""

from __future__ import annotations

import logging
import shlex
import signal
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, TypeVar

import click

from alloc_tail.version import __version__
from alloc_tail.watch import (
    BackendError,
    ExecLogTransport,
    InvalidJobSpecError,
    LogSink,
    LogTransport,
    SupervisorError,
    WatchSupervisor,
    parse_job_specs,
)
from nomad_client.config import ClientConfig, load_client_config, save_client_config
from nomad_client.sdk import NomadClient

F = TypeVar("F", bound=Callable[..., Any])

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class CLIState:
    settings: ClientConfig
    client: NomadClient | None = None

    def apply(
        self,
        *,
        addr: str | None,
        token: str | None,
        insecure: bool | None,
        namespace: str | None,
        region: str | None,
    ) -> None:
        self.settings = self.settings.merged(
            addr=addr,
            token=token,
            verify_tls=None if insecure is None else not insecure,
            namespace=namespace,
            region=region,
        )

    def ensure_client(self) -> NomadClient:
        if self.client is None:
            self.client = NomadClient(
                address=self.settings.addr,
                token=self.settings.token,
                namespace=self.settings.namespace,
                region=self.settings.region,
                verify_tls=self.settings.verify_tls,
            )
        return self.client

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None


def _connection_options(func: F) -> F:
    options = [
        click.option("--addr", help="Nomad HTTP API address, e.g. http://127.0.0.1:4646."),
        click.option("--token", help="Nomad ACL token."),
        click.option("--namespace", help="Nomad namespace to query."),
        click.option("--region", help="Nomad region to query."),
        click.option(
            "--insecure/--verify",
            default=None,
            help="Disable TLS verification for agents with self-signed certificates.",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.version_option(version=__version__, prog_name="alloc-tail")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="info",
    show_default=True,
    envvar="ALLOC_TAIL_LOG_LEVEL",
    help="Verbosity of diagnostics written to stderr.",
)
@click.pass_context
def app(ctx: click.Context, log_level: str) -> None:
    """Tail stdout/stderr of every running allocation of a set of Nomad jobs."""

    logging.basicConfig(level=log_level.upper(), format=_LOG_FORMAT, stream=sys.stderr)
    ctx.obj = CLIState(settings=load_client_config())
    ctx.call_on_close(ctx.obj.close)


@app.command()
@click.option("--addr", required=True, help="Nomad HTTP API address to persist.")
@click.option("--token", default=None, help="Nomad ACL token to persist.")
@click.option("--jobs", default=None, help="Default job:task list for 'watch'.")
@click.option(
    "--insecure/--verify",
    default=False,
    show_default=True,
    help="Persist configuration with TLS verification disabled.",
)
def configure(addr: str, token: str | None, jobs: str | None, insecure: bool) -> None:
    """Persist default settings under ~/.alloc-tail/config.toml."""

    if jobs:
        try:
            parse_job_specs(jobs)
        except InvalidJobSpecError as exc:
            raise click.BadParameter(str(exc), param_hint="--jobs") from exc
    config = ClientConfig(addr=addr, token=token, jobs=jobs, verify_tls=not insecure)
    path = save_client_config(config)
    click.echo(f"Saved configuration to {path}.")


@app.command()
@click.option(
    "--jobs",
    default=None,
    help="Comma separated job:task pairs to watch, e.g. api:server,worker:worker.",
)
@_connection_options
@click.option(
    "--transport",
    type=click.Choice(["http", "exec"], case_sensitive=False),
    default="http",
    show_default=True,
    help="Stream logs over the HTTP API or by running 'nomad alloc logs'.",
)
@click.option(
    "--exec-prefix",
    default="",
    help="Command prepended to 'nomad alloc logs' with --transport exec, "
    "e.g. 'vagrant ssh client --'.",
)
@click.option(
    "--nomad-binary",
    default="nomad",
    show_default=True,
    help="Nomad executable used with --transport exec.",
)
@click.option("--poll-interval", type=click.FloatRange(min=0.1), default=None)
@click.option(
    "--max-backoff",
    type=click.FloatRange(min=0.1),
    default=None,
    help="Upper bound for the wait after failed listings (default: poll interval).",
)
@click.option(
    "--cooldown",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds before a finished allocation may be watched again "
    "(default: poll interval).",
)
@click.option("--queue-size", type=click.IntRange(min=1), default=None)
@click.option(
    "--alloc-label/--no-alloc-label",
    default=None,
    help="Suffix each line's label with the short allocation ID.",
)
@click.option("--show-stream/--no-show-stream", default=None, help="Mark stderr lines.")
@click.pass_obj
def watch(
    state: CLIState,
    jobs: str | None,
    addr: str | None,
    token: str | None,
    namespace: str | None,
    region: str | None,
    insecure: bool | None,
    transport: str,
    exec_prefix: str,
    nomad_binary: str,
    poll_interval: float | None,
    max_backoff: float | None,
    cooldown: float | None,
    queue_size: int | None,
    alloc_label: bool | None,
    show_stream: bool | None,
) -> None:
    """Stream logs of every running allocation of the given jobs."""

    raw_jobs = jobs or state.settings.jobs
    if not raw_jobs:
        raise click.ClickException("No jobs configured. Pass --jobs or set ALLOC_TAIL_JOBS.")
    try:
        specs = parse_job_specs(raw_jobs)
    except InvalidJobSpecError as exc:
        raise click.ClickException(str(exc)) from exc

    state.apply(addr=addr, token=token, insecure=insecure, namespace=namespace, region=region)
    settings = state.settings.watch
    settings = replace(
        settings,
        poll_interval=poll_interval or settings.poll_interval,
        max_backoff=max_backoff if max_backoff is not None else settings.max_backoff,
        claim_cooldown=cooldown if cooldown is not None else settings.claim_cooldown,
        queue_size=queue_size or settings.queue_size,
        alloc_label=settings.alloc_label if alloc_label is None else alloc_label,
        show_stream=settings.show_stream if show_stream is None else show_stream,
    )

    client = state.ensure_client()
    try:
        client.list_allocations()
    except BackendError as exc:
        raise click.ClickException(f"Cannot reach Nomad at {client.address}: {exc}") from exc

    log_transport: LogTransport = client
    if transport.lower() == "exec":
        log_transport = ExecLogTransport(
            command_prefix=shlex.split(exec_prefix),
            nomad_binary=nomad_binary,
            address=None if exec_prefix else state.settings.addr,
        )

    supervisor = WatchSupervisor(
        specs,
        backend=client,
        transport=log_transport,
        sink=LogSink(capacity=settings.queue_size, show_stream=settings.show_stream),
        settings=settings,
    )
    with _stop_on_signals(supervisor):
        try:
            supervisor.run()
        except SupervisorError as exc:
            raise click.ClickException(str(exc)) from exc


@app.command("list")
@_connection_options
@click.pass_obj
def list_tasks(
    state: CLIState,
    addr: str | None,
    token: str | None,
    namespace: str | None,
    region: str | None,
    insecure: bool | None,
) -> None:
    """Print every job:task pair of the currently visible allocations."""

    state.apply(addr=addr, token=token, insecure=insecure, namespace=namespace, region=region)
    client = state.ensure_client()
    try:
        pairs = client.list_job_tasks()
    except BackendError as exc:
        raise click.ClickException(str(exc)) from exc
    for job, task in pairs:
        click.echo(f"{job}:{task}")


@contextmanager
def _stop_on_signals(supervisor: WatchSupervisor) -> Iterator[None]:
    """Route SIGINT/SIGTERM to a graceful supervisor stop while the block runs."""

    def _handler(signum: int, _frame: object) -> None:
        logging.getLogger("alloc_tail.cli").info(
            "Received %s, shutting down", signal.Signals(signum).name
        )
        supervisor.stop()

    previous: dict[int, Any] = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[signum] = signal.signal(signum, _handler)
        except ValueError:  # pragma: no cover - not on the main thread
            continue
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def main() -> None:
    """Entry point for console_scripts."""

    app(standalone_mode=True)
