"""Individual health checks for the worker host.

Each check returns a CheckResult; checks that can repair what they find
implement auto_fix() and set ``can_auto_fix``.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Callable, Literal

from buildfleet.controller import ControllerClient
from buildfleet.vm.manager import VM_NAME_PREFIX
from buildfleet.vm.tart import Tart

logger = logging.getLogger(__name__)

CheckStatus = Literal["pass", "warn", "fail"]

# VMs created by the test tooling are never treated as orphans
TEST_VM_PREFIX = "fa-test-"


@dataclass
class CheckResult:
    name: str
    status: CheckStatus
    message: str
    duration_ms: int = 0
    auto_fixed: bool = False
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class DiagnosticCheck:
    name = "check"
    can_auto_fix = False

    async def run(self) -> CheckResult:
        raise NotImplementedError

    async def auto_fix(self) -> bool:
        return False

    def result(self, status: CheckStatus, message: str, **details) -> CheckResult:
        return CheckResult(name=self.name, status=status, message=message, details=details)


class TartCheck(DiagnosticCheck):
    name = "tart_installed"

    def __init__(self, tart: Tart) -> None:
        self.tart = tart

    async def run(self) -> CheckResult:
        version = await self.tart.version()
        if version is None:
            return self.result("fail", f"Tart not found or not runnable at {self.tart.path}")
        return self.result("pass", f"Tart {version}", version=version)


class TemplateVMCheck(DiagnosticCheck):
    name = "template_vm"

    def __init__(self, tart: Tart, template: str) -> None:
        self.tart = tart
        self.template = template

    async def run(self) -> CheckResult:
        try:
            names = [vm.name for vm in await self.tart.list()]
        except RuntimeError as e:
            return self.result("fail", f"Could not list VMs: {e}")
        if self.template in names:
            return self.result("pass", f"Template {self.template} present")
        return self.result("fail", f"Template {self.template} not found", available=names)


def _orphan_names(names: list[str], exclude: set[str]) -> list[str]:
    return [
        n for n in names
        if n.startswith(VM_NAME_PREFIX) and not n.startswith(TEST_VM_PREFIX) and n not in exclude
    ]


class DiskSpaceCheck(DiagnosticCheck):
    name = "disk_space"
    can_auto_fix = True

    def __init__(
        self,
        tart: Tart,
        threshold_gb: float = 50.0,
        path: str = "/",
        exclude: Callable[[], set[str]] = set,
    ) -> None:
        self.tart = tart
        self.threshold_gb = threshold_gb
        self.path = path
        self.exclude = exclude

    async def run(self) -> CheckResult:
        usage = shutil.disk_usage(self.path)
        free_gb = usage.free / 1024**3
        details = {"free_gb": round(free_gb, 1), "threshold_gb": self.threshold_gb}
        if free_gb < self.threshold_gb:
            return self.result("fail", f"Only {free_gb:.1f} GB free (need {self.threshold_gb:.0f} GB)", **details)
        return self.result("pass", f"{free_gb:.1f} GB free", **details)

    async def auto_fix(self) -> bool:
        """Delete orphaned build VMs to reclaim disk."""
        try:
            names = [vm.name for vm in await self.tart.list()]
        except RuntimeError:
            return False
        orphans = _orphan_names(names, self.exclude())
        deleted = 0
        for name in orphans:
            if await self.tart.delete(name):
                deleted += 1
        logger.info("Deleted %d orphaned VM(s) to free disk space", deleted)
        return deleted > 0


class XcodeCheck(DiagnosticCheck):
    name = "xcode_version"

    def __init__(self, xcodebuild: str = "/usr/bin/xcodebuild") -> None:
        self.xcodebuild = xcodebuild

    async def run(self) -> CheckResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.xcodebuild,
                "-version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=30)
        except OSError as e:
            return self.result("fail", "Xcode not found or not installed", error=str(e))
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return self.result("fail", "xcodebuild -version timed out")

        output = (stdout or stderr).decode().strip()
        if proc.returncode != 0:
            return self.result("fail", "xcodebuild command failed", output=output)
        # e.g. "Xcode 16.1\nBuild version 16B40"
        version = output.splitlines()[0] if output else "Unknown"
        return self.result("pass", version, output=output)


class VMSpawnCheck(DiagnosticCheck):
    """Clone the template, boot it and wait for a network lease, then delete it.

    The slowest check by far: it exercises the same tart path a build does.
    The test VM is always removed, pass or fail.
    """

    name = "vm_spawn_test"

    def __init__(self, tart: Tart, template: str, boot_timeout: float = 120) -> None:
        self.tart = tart
        self.template = template
        self.boot_timeout = boot_timeout

    async def run(self) -> CheckResult:
        vm_name = f"{TEST_VM_PREFIX}{uuid.uuid4().hex[:8]}"
        mount = tempfile.mkdtemp(prefix="buildfleet-spawn-")
        proc = None
        cloned = False
        try:
            await self.tart.clone(self.template, vm_name)
            cloned = True
            proc = await self.tart.run(vm_name, mount)
            ip = await self.tart.ip(vm_name, wait=self.boot_timeout)
            if ip is None:
                if proc.returncode is not None:
                    return self.result("fail", f"VM exited during boot ({proc.returncode})", vm=vm_name)
                return self.result("fail", "Timed out waiting for VM IP", vm=vm_name)
            return self.result("pass", "VM spawn test passed", vm=vm_name, template=self.template, ip=ip)
        except RuntimeError as e:
            return self.result("fail", f"VM spawn test failed: {e}", vm=vm_name)
        finally:
            await self._cleanup(vm_name, proc, cloned)
            shutil.rmtree(mount, ignore_errors=True)

    async def _cleanup(self, vm_name: str, proc, cloned: bool) -> None:
        if proc is not None and proc.returncode is None:
            await self.tart.stop(vm_name, timeout=10)
            try:
                await asyncio.wait_for(proc.wait(), timeout=15)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
        if cloned and not await self.tart.delete(vm_name):
            logger.warning("Could not delete spawn-test VM %s", vm_name)


class ControllerConnectivityCheck(DiagnosticCheck):
    name = "controller_connectivity"

    def __init__(self, client: ControllerClient) -> None:
        self.client = client

    async def run(self) -> CheckResult:
        if await self.client.health():
            return self.result("pass", f"Controller reachable at {self.client.base_url}")
        return self.result("fail", f"Controller unreachable at {self.client.base_url}")


class StuckVMCheck(DiagnosticCheck):
    name = "stuck_vms"
    can_auto_fix = True

    def __init__(self, tart: Tart, exclude: Callable[[], set[str]] = set) -> None:
        self.tart = tart
        self.exclude = exclude

    async def _stuck(self) -> list[str]:
        return _orphan_names([vm.name for vm in await self.tart.list()], self.exclude())

    async def run(self) -> CheckResult:
        try:
            stuck = await self._stuck()
        except RuntimeError as e:
            return self.result("warn", f"Could not list VMs: {e}")
        if stuck:
            return self.result("warn", f"{len(stuck)} leftover build VM(s)", vms=stuck)
        return self.result("pass", "No leftover build VMs")

    async def auto_fix(self) -> bool:
        try:
            stuck = await self._stuck()
        except RuntimeError:
            return False
        ok = True
        for name in stuck:
            await self.tart.stop(name, timeout=10)
            if not await self.tart.delete(name):
                logger.warning("Could not delete stuck VM %s", name)
                ok = False
        return ok


async def timed(check: DiagnosticCheck) -> CheckResult:
    """Run *check*, recording its duration. A crashing check counts as failed."""
    started = time.monotonic()
    try:
        result = await check.run()
    except Exception as e:
        logger.exception("Diagnostic check %s crashed", check.name)
        result = check.result("fail", f"Check crashed: {e}")
    result.duration_ms = int((time.monotonic() - started) * 1000)
    return result
