"""buildfleet doctor: run host diagnostics (exit 0 healthy, 1 unhealthy)."""

from __future__ import annotations

import asyncio
import json
import sys

import click

from buildfleet.cli.config import get_config
from buildfleet.config import WorkerConfig
from buildfleet.controller import ControllerClient
from buildfleet.diagnostics.service import DiagnosticReport, DiagnosticsService, default_checks
from buildfleet.identity import IdentityStore
from buildfleet.vm.tart import Tart

_SYMBOLS = {"pass": "✓", "warn": "!", "fail": "✗"}


@click.command()
@click.option("--no-fix", is_flag=True, help="Report problems without attempting auto-fixes")
@click.option("--no-report", is_flag=True, help="Don't send the report to the controller")
@click.option("--skip-spawn", is_flag=True, help="Skip the VM spawn test (boots a throwaway VM)")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.option("--config", "config_path", default=None, help="Path to config.toml")
def doctor(no_fix: bool, no_report: bool, skip_spawn: bool, as_json: bool, config_path: str | None) -> None:
    """Check that this machine can run builds."""
    config = get_config(config_path)
    report = asyncio.run(_diagnose(config, auto_fix=not no_fix, send=not no_report, spawn_test=not skip_spawn))

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        for check in report.checks:
            fixed = " (auto-fixed)" if check.auto_fixed else ""
            click.echo(f"{_SYMBOLS[check.status]} {check.name}: {check.message}{fixed}")
        click.echo(f"\nOverall: {report.status}")

    # Warnings alone do not fail the run
    sys.exit(1 if report.status == "critical" else 0)


async def _diagnose(config: WorkerConfig, auto_fix: bool, send: bool, spawn_test: bool = True) -> DiagnosticReport:
    worker_id, _ = IdentityStore(config.identity_path).load()
    async with ControllerClient(config.controller_url, config.api_key) as client:
        service = DiagnosticsService(
            default_checks(config, Tart(config.tart_path), client, spawn_test=spawn_test),
            client=client,
            worker_id=worker_id,
        )
        report = await service.run(auto_fix=auto_fix)
        if send and config.api_key:
            if not await service.report(report):
                click.echo("Warning: could not send report to controller", err=True)
    return report
