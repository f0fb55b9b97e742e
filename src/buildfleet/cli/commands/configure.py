"""buildfleet configure: store controller credentials and worker limits."""

from __future__ import annotations

import socket

import click
import httpx

from buildfleet.config import CONFIG_PATH, load_config, save_config


@click.command()
@click.option("--controller-url", default=None, help="Controller URL (e.g. https://builds.example.com)")
@click.option("--api-key", default=None, help="Worker API key")
@click.option("--device-name", default=None, help="Name shown in the controller dashboard")
@click.option("--max-builds", type=int, default=None, help="Max concurrent builds")
@click.option("--template-image", default=None, help="Tart template VM to clone")
@click.option("--build-timeout", type=int, default=None, help="Build timeout in minutes")
@click.option("--reuse-vms/--no-reuse-vms", default=None, help="Keep VMs between builds")
@click.option("--skip-check", is_flag=True, help="Don't verify the controller is reachable")
@click.option("--config", "config_path", default=None, help="Path to config.toml")
def configure(
    controller_url: str | None,
    api_key: str | None,
    device_name: str | None,
    max_builds: int | None,
    template_image: str | None,
    build_timeout: int | None,
    reuse_vms: bool | None,
    skip_check: bool,
    config_path: str | None,
) -> None:
    """Write worker settings to the config file."""
    config = load_config(config_path)

    if controller_url is not None:
        config.controller_url = controller_url.rstrip("/")
    if api_key is not None:
        config.api_key = api_key
    if device_name is not None:
        config.device_name = device_name
    if max_builds is not None:
        if max_builds < 1:
            raise click.BadParameter("must be at least 1", param_hint="--max-builds")
        config.max_concurrent_builds = max_builds
    if template_image is not None:
        config.template_image = template_image
    if build_timeout is not None:
        config.build_timeout_minutes = build_timeout
    if reuse_vms is not None:
        config.reuse_vms = reuse_vms
    if not config.device_name:
        config.device_name = socket.gethostname()

    if not skip_check:
        try:
            r = httpx.get(f"{config.controller_url}/health", timeout=10)
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise click.ClickException(f"Cannot reach controller at {config.controller_url}: {e}")

    save_config(config, config_path)
    click.echo(f"Saved configuration to {config_path or CONFIG_PATH}")
