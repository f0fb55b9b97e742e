from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Literal

from buildfleet.config import WorkerConfig
from buildfleet.controller import ControllerClient
from buildfleet.diagnostics.checks import (
    CheckResult,
    ControllerConnectivityCheck,
    DiagnosticCheck,
    DiskSpaceCheck,
    StuckVMCheck,
    TartCheck,
    TemplateVMCheck,
    VMSpawnCheck,
    XcodeCheck,
    timed,
)
from buildfleet.vm.tart import Tart

logger = logging.getLogger(__name__)

ReportStatus = Literal["healthy", "warning", "critical"]


@dataclass
class DiagnosticReport:
    worker_id: str | None
    status: ReportStatus
    run_at: int
    duration_ms: int
    auto_fixed: bool
    checks: list[CheckResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def overall_status(results: list[CheckResult]) -> ReportStatus:
    if any(r.status == "fail" for r in results):
        return "critical"
    if any(r.status == "warn" for r in results):
        return "warning"
    return "healthy"


def default_checks(
    config: WorkerConfig,
    tart: Tart,
    client: ControllerClient,
    active_vms: Callable[[], set[str]] = set,
    spawn_test: bool = True,
    xcodebuild: str = "/usr/bin/xcodebuild",
) -> list[DiagnosticCheck]:
    """The full host check list. *spawn_test* boots a throwaway VM and takes minutes."""
    checks = [
        TartCheck(tart),
        TemplateVMCheck(tart, config.template_image),
        DiskSpaceCheck(tart, threshold_gb=config.vm_disk_size_gb, exclude=active_vms),
        XcodeCheck(xcodebuild),
        ControllerConnectivityCheck(client),
    ]
    if spawn_test:
        checks.append(VMSpawnCheck(tart, config.template_image))
    checks.append(StuckVMCheck(tart, exclude=active_vms))
    return checks


class DiagnosticsService:
    """Runs every check, applies auto-fixes, and optionally reports upstream."""

    def __init__(
        self,
        checks: list[DiagnosticCheck],
        client: ControllerClient | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.checks = checks
        self.client = client
        self.worker_id = worker_id

    async def run(self, auto_fix: bool = True) -> DiagnosticReport:
        started = time.monotonic()
        results = []
        for check in self.checks:
            result = await timed(check)
            if result.status != "pass" and auto_fix and check.can_auto_fix:
                logger.info("Attempting auto-fix for %s", check.name)
                try:
                    fixed = await check.auto_fix()
                except Exception:
                    logger.exception("Auto-fix for %s crashed", check.name)
                    fixed = False
                if fixed:
                    result = await timed(check)
                    result.auto_fixed = True
            results.append(result)

        return DiagnosticReport(
            worker_id=self.worker_id,
            status=overall_status(results),
            run_at=int(time.time() * 1000),
            duration_ms=int((time.monotonic() - started) * 1000),
            auto_fixed=any(r.auto_fixed for r in results),
            checks=results,
        )

    async def report(self, report: DiagnosticReport) -> bool:
        if self.client is None:
            return False
        return await self.client.report_diagnostics(report.to_dict())


class TemplateFreshness:
    """Claim gate: the template VM must exist before the worker takes a job.

    A passing check is cached for ``ttl`` seconds so the worker does not run
    ``tart list`` on every poll.
    """

    def __init__(self, check: TemplateVMCheck, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.check = check
        self.ttl = ttl
        self.clock = clock
        self._last_ok: float | None = None

    async def __call__(self) -> bool:
        now = self.clock()
        if self._last_ok is not None and now - self._last_ok < self.ttl:
            return True
        result = await timed(self.check)
        if result.status == "pass":
            self._last_ok = now
            return True
        logger.warning("Template check failed: %s", result.message)
        self._last_ok = None
        return False
