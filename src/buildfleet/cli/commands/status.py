"""buildfleet status: show the running worker's state and active builds."""

from __future__ import annotations

import json
import time

import click
import httpx
from httpx_sse import connect_sse

from buildfleet.cli.config import get_config, get_control_url


@click.command()
@click.option("--config", "config_path", default=None, help="Path to config.toml")
@click.option("--follow", "-f", is_flag=True, help="Follow the event stream (like tail -f)")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def status(config_path: str | None, follow: bool, as_json: bool) -> None:
    """Show worker status."""
    url = get_control_url(get_config(config_path))

    try:
        r = httpx.get(f"{url}/status", timeout=10)
        r.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise click.ClickException(f"{e.response.status_code}: {e.response.text}")
    except httpx.HTTPError:
        click.echo("Worker: stopped (not running)")
        return

    data = r.json()
    if as_json:
        click.echo(json.dumps(data, indent=2))
    else:
        _print_status(data)

    if follow:
        _follow_events(url)


def _print_status(data: dict) -> None:
    click.echo(f"Worker: {data.get('status', 'unknown')} ({data.get('state', '')})")
    if data.get("worker_id"):
        click.echo(f"Worker ID: {data['worker_id']}")
    builds = data.get("active_builds", [])
    click.echo(f"Active builds: {len(builds)}/{data.get('max_concurrent_builds', '?')}")
    for b in builds:
        elapsed = int(time.time() - b.get("started_at", time.time()))
        click.echo(f"  {b['build_id']}  {b.get('platform', '')}  {elapsed}s")


def _follow_events(url: str) -> None:
    """Stream SSE events from the worker to stdout."""
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

                    event_type = data.get("type", event.event)
                    _print_event(event_type, data)

                    if event_type == "worker.status" and data.get("status") == "stopped":
                        return
    except httpx.HTTPError as e:
        raise click.ClickException(f"Event stream error: {e}")


def _print_event(event_type: str, data: dict) -> None:
    if event_type == "worker.status":
        click.echo(f"[status] {data.get('status', '')}")
    elif event_type == "build.started":
        click.echo(f"[build] {data.get('build_id', '')} started ({data.get('platform', '')})")
    elif event_type == "build.progress":
        click.echo(
            f"[build] {data.get('build_id', '')} {data.get('percent', 0)}% "
            f"{data.get('phase', '')} {data.get('message', '')}".rstrip()
        )
    elif event_type == "build.finished":
        if data.get("success"):
            click.echo(f"[build] {data.get('build_id', '')} succeeded")
        else:
            click.echo(f"[build] {data.get('build_id', '')} failed: {data.get('error') or ''}", err=True)
