"""Thin async wrapper around the ``tart`` CLI.

Only the handful of subcommands the worker needs: clone, run, ip, stop, delete,
list and --version. Failures of clone/run are raised as RuntimeError; the
orchestrator converts them into job errors.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Tag under which the shared directory is exposed to the guest.
# macOS guests see it at /Volumes/My Shared Files/<tag>.
SHARED_DIR_TAG = "build-config"


@dataclass(frozen=True)
class TartVM:
    source: str
    name: str
    state: str


class Tart:
    def __init__(self, path: str = "tart") -> None:
        self.path = path

    async def _run(self, *args: str, timeout: float | None = None) -> tuple[int, str, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.path,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return 127, "", str(e)

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return -1, "", f"tart {args[0]} timed out after {timeout}s"
        return proc.returncode or 0, stdout.decode().strip(), stderr.decode().strip()

    async def version(self) -> str | None:
        rc, out, _ = await self._run("--version", timeout=10)
        return out if rc == 0 else None

    async def clone(self, source: str, name: str) -> None:
        rc, _, err = await self._run("clone", source, name)
        if rc != 0:
            raise RuntimeError(f"tart clone {source} {name} failed ({rc}): {err}")

    async def run(self, name: str, shared_dir: str) -> asyncio.subprocess.Process:
        """Boot *name* headless with *shared_dir* mounted read/write.

        Returns the long-running ``tart run`` process; it exits when the VM
        shuts down.
        """
        try:
            return await asyncio.create_subprocess_exec(
                self.path,
                "run",
                name,
                "--no-graphics",
                f"--dir={SHARED_DIR_TAG}:{shared_dir}",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise RuntimeError(f"tart run {name} failed: {e}") from e

    async def ip(self, name: str, wait: float = 120) -> str | None:
        """Return the guest IP once it has booted far enough to lease one."""
        rc, out, err = await self._run("ip", name, "--wait", str(int(wait)), timeout=wait + 10)
        if rc != 0 or not out:
            logger.debug("tart ip %s: %s", name, err)
            return None
        return out.splitlines()[0]

    async def stop(self, name: str, timeout: float = 30) -> bool:
        rc, _, err = await self._run("stop", name, "--timeout", str(int(timeout)), timeout=timeout + 10)
        if rc != 0:
            logger.debug("tart stop %s: %s", name, err)
        return rc == 0

    async def delete(self, name: str) -> bool:
        rc, _, err = await self._run("delete", name, timeout=120)
        if rc != 0:
            logger.debug("tart delete %s: %s", name, err)
        return rc == 0

    async def list(self) -> list[TartVM]:
        """Parse ``tart list`` (columns: Source Name Disk Size State)."""
        rc, out, err = await self._run("list", timeout=30)
        if rc != 0:
            raise RuntimeError(f"tart list failed ({rc}): {err}")

        vms = []
        for line in out.splitlines()[1:]:
            parts = line.split()
            if len(parts) < 2:
                continue
            vms.append(TartVM(source=parts[0], name=parts[1], state=parts[-1] if len(parts) > 2 else ""))
        return vms

    async def exists(self, name: str) -> bool:
        try:
            return any(vm.name == name for vm in await self.list())
        except RuntimeError:
            return False
