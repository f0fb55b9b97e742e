"""buildfleet stop: ask the running worker to drain and exit."""

from __future__ import annotations

import json

import click
import httpx
from httpx_sse import connect_sse

from buildfleet.cli.config import get_config, get_control_url


@click.command()
@click.option("--config", "config_path", default=None, help="Path to config.toml")
@click.option("--wait", "-w", is_flag=True, help="Block until the worker has stopped")
def stop(config_path: str | None, wait: bool) -> None:
    """Stop the worker. Active builds are cancelled and cleaned up first."""
    url = get_control_url(get_config(config_path))

    try:
        r = httpx.post(f"{url}/stop", timeout=10)
        r.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise click.ClickException(f"{e.response.status_code}: {e.response.text}")
    except httpx.HTTPError:
        raise click.ClickException("Worker is not running")

    click.echo("Worker stopping")
    if wait:
        _wait_stopped(url)


def _wait_stopped(url: str) -> None:
    try:
        with httpx.Client(timeout=None) as client:
            with connect_sse(client, "GET", f"{url}/events") as sse:
                for event in sse.iter_sse():
                    if not event.data:
                        continue
                    try:
                        data = json.loads(event.data)
                    except json.JSONDecodeError:
                        continue
                    if data.get("type") == "worker.status" and data.get("status") == "stopped":
                        break
    except httpx.HTTPError:
        # The server goes away once the worker has stopped
        pass
    click.echo("Worker stopped")
