"""buildfleet start: run the worker in the foreground."""

from __future__ import annotations

import asyncio
import logging
import signal

import click

from buildfleet import control
from buildfleet.cli.config import get_config
from buildfleet.config import WorkerConfig
from buildfleet.controller import ControllerClient
from buildfleet.diagnostics.checks import TemplateVMCheck
from buildfleet.diagnostics.service import TemplateFreshness
from buildfleet.dispatch import Worker
from buildfleet.errors import BuildFleetError
from buildfleet.vm.tart import Tart

logger = logging.getLogger(__name__)


@click.command()
@click.option("--config", "config_path", default=None, help="Path to config.toml")
@click.option("--max-builds", type=int, default=None, help="Override max concurrent builds")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def start(config_path: str | None, max_builds: int | None, verbose: bool) -> None:
    """Register with the controller and process builds until stopped.

    SIGINT / SIGTERM (or 'buildfleet stop') drain active builds first.
    """
    config = get_config(config_path)
    if max_builds is not None:
        config.max_concurrent_builds = max_builds
    if not config.api_key:
        raise click.ClickException("No API key configured. Run: buildfleet configure --api-key <KEY>")

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(name)s %(levelname)s %(message)s",
    )

    try:
        asyncio.run(_serve(config))
    except BuildFleetError as e:
        raise click.ClickException(str(e))


async def _serve(config: WorkerConfig) -> None:
    tart = Tart(config.tart_path)
    client = ControllerClient(config.controller_url, config.api_key)
    worker = Worker(
        config,
        client=client,
        tart=tart,
        freshness_check=TemplateFreshness(TemplateVMCheck(tart, config.template_image)),
    )

    control.bind(worker)
    server = control.create_server(config.control_port)
    server_task = asyncio.create_task(server.serve())

    loop = asyncio.get_running_loop()
    pending: set[asyncio.Task] = set()

    def _on_signal(signame: str) -> None:
        logger.info("Received %s, stopping worker", signame)
        task = asyncio.create_task(worker.stop())
        pending.add(task)
        task.add_done_callback(pending.discard)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal, sig.name)

    click.echo(f"Worker starting (controller {config.controller_url}, control port {config.control_port})")
    try:
        await worker.run()
    finally:
        server.should_exit = True
        await server_task
        await client.close()
    click.echo("Worker stopped")
