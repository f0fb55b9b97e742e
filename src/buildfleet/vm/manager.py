"""Ephemeral build VM lifecycle.

Each claimed job gets its own Tart clone of the template image:

    Host (buildfleet)
        └── VMOrchestrator
                ├── Cloned VM (fa-<8 hex>), booted headless
                ├── Shared directory (build-config.json + guest scripts)
                └── Guest bootstrap (authenticates itself, writes signal files)

The host never talks to the guest directly. It learns that the guest is up
through the controller (vm-status), then watches the shared directory for
completion signals while sending heartbeats on the guest's behalf.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field

import httpx

from buildfleet.config import WorkerConfig
from buildfleet.controller import BuildJob, ControllerClient
from buildfleet.errors import (
    BuildCancelled,
    BuildTimeout,
    ControllerError,
    VMLaunchError,
    VMProcessDied,
    VMReadyTimeout,
)
from buildfleet.events import BuildProgress, WorkerEvents
from buildfleet.reporter import ResultReporter
from buildfleet.session import SessionManager
from buildfleet.vm.mount import (
    BUILD_COMPLETE,
    BUILD_ERROR,
    GUEST_SOURCE_DIR,
    destroy_shared_dir,
    prepare_shared_dir,
    read_progress,
    read_signal,
)
from buildfleet.vm.tart import Tart

logger = logging.getLogger(__name__)

VM_NAME_PREFIX = "fa-"


class CancelToken:
    """Cooperative cancellation flag shared between a build and the worker."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise BuildCancelled(self.reason)

    async def sleep(self, seconds: float) -> None:
        """Sleep for *seconds*, raising BuildCancelled as soon as cancel() is called."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise BuildCancelled(self.reason)


@dataclass
class VMInstance:
    name: str
    template: str
    shared_dir: str
    process: asyncio.subprocess.Process | None = None
    reused: bool = False
    reclaimed: bool = field(default=False, repr=False)

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.returncode is None


@dataclass
class BuildOutcome:
    success: bool
    error_message: str | None = None
    artifact_uploaded: bool = False
    completed_at: str | None = None


class VMOrchestrator:
    """Launches, watches and tears down build VMs.

    Lifecycle per job:
        1. launch()      – clone (or reuse), write the shared dir, boot
        2. await_ready() – wait for the controller to vouch for the guest
        3. monitor()     – watch signal files, heartbeat, enforce timeout
        4. terminate()   – graceful stop, then kill
        5. reclaim()     – delete or keep the clone, remove the shared dir

    terminate() and reclaim() are safe to call on a VM that is already gone.
    """

    def __init__(
        self,
        config: WorkerConfig,
        tart: Tart,
        client: ControllerClient,
        session: SessionManager,
        reporter: ResultReporter,
        events: WorkerEvents,
        guest_source_dir: str = GUEST_SOURCE_DIR,
    ) -> None:
        self.config = config
        self.tart = tart
        self.client = client
        self.session = session
        self.reporter = reporter
        self.events = events
        self.guest_source_dir = guest_source_dir

        # Stopped clones kept for reuse, keyed by template
        self._idle: dict[str, list[str]] = {}

    def _checkout_idle(self, template: str) -> str | None:
        names = self._idle.get(template)
        return names.pop() if names else None

    async def launch(self, job: BuildJob, cancel: CancelToken) -> VMInstance:
        cancel.raise_if_cancelled()
        template = job.base_image_id or self.config.template_image
        shared_dir = prepare_shared_dir(job, self.config.controller_url, self.guest_source_dir)

        name = self._checkout_idle(template) if self.config.reuse_vms else None
        instance = VMInstance(
            name=name or f"{VM_NAME_PREFIX}{uuid.uuid4().hex[:8]}",
            template=template,
            shared_dir=shared_dir,
            reused=name is not None,
        )

        try:
            if not instance.reused:
                logger.info("Cloning %s → %s for build %s", template, instance.name, job.id)
                await self.tart.clone(template, instance.name)
            instance.process = await self.tart.run(instance.name, shared_dir)
        except RuntimeError as e:
            await self.reclaim(instance, keep=False)
            raise VMLaunchError(str(e)) from e

        logger.info("Started VM %s for build %s", instance.name, job.id)
        return instance

    async def await_ready(self, job: BuildJob, instance: VMInstance, cancel: CancelToken) -> str:
        """Wait until the controller reports the guest authenticated.

        Returns the VM token the controller asserts for this build.
        """
        deadline = time.monotonic() + self.config.vm_ready_timeout_seconds
        interval = min(self.config.monitor_interval_seconds, 5.0)

        while time.monotonic() < deadline:
            if not instance.alive:
                raise VMProcessDied()
            token = self.session.token
            if token:
                try:
                    status = await self.client.vm_status(job.id, token)
                except (ControllerError, httpx.HTTPError) as e:
                    logger.debug("vm-status for build %s: %s", job.id, e)
                else:
                    if status.get("vm_ready") and status.get("vm_token"):
                        logger.info("VM %s ready for build %s", instance.name, job.id)
                        return status["vm_token"]
            await cancel.sleep(interval)

        raise VMReadyTimeout(
            f"VM {instance.name} not ready after {self.config.vm_ready_timeout_seconds:.0f}s"
        )

    async def monitor(
        self,
        job: BuildJob,
        instance: VMInstance,
        vm_token: str,
        cancel: CancelToken,
    ) -> BuildOutcome:
        """Watch the shared directory until the guest signals completion.

        Signal files are checked before process liveness so a guest that
        writes build-complete and powers off is still a success.
        """
        started = time.monotonic()
        deadline = started + self.config.build_timeout_seconds
        next_heartbeat = started + self.config.heartbeat_interval_seconds

        while True:
            complete = read_signal(instance.shared_dir, BUILD_COMPLETE)
            if complete is not None:
                return BuildOutcome(
                    success=True,
                    artifact_uploaded=bool(complete.get("artifact_uploaded", False)),
                    completed_at=complete.get("completed_at"),
                )
            failed = read_signal(instance.shared_dir, BUILD_ERROR)
            if failed is not None:
                return BuildOutcome(
                    success=False,
                    error_message=failed.get("error") or failed.get("raw") or "Build failed",
                    completed_at=failed.get("completed_at"),
                )

            if not instance.alive:
                raise VMProcessDied()

            now = time.monotonic()
            if now >= deadline:
                raise BuildTimeout(
                    f"Build {job.id} exceeded {self.config.build_timeout_minutes} minute timeout"
                )

            if now >= next_heartbeat:
                next_heartbeat = now + self.config.heartbeat_interval_seconds
                await self._heartbeat(job, instance, vm_token)

            await cancel.sleep(self.config.monitor_interval_seconds)

    async def _heartbeat(self, job: BuildJob, instance: VMInstance, vm_token: str) -> None:
        progress = read_progress(instance.shared_dir)
        percent = None
        if progress:
            try:
                percent = int(progress.get("progress_percent", 0))
            except (TypeError, ValueError):
                percent = None
            await self.events.publish(
                BuildProgress(
                    build_id=job.id,
                    phase=str(progress.get("phase", "")),
                    percent=percent or 0,
                    message=str(progress.get("message", "")),
                )
            )
        if not await self.reporter.heartbeat(job.id, vm_token, percent):
            logger.warning("Heartbeat for build %s failed, continuing", job.id)

    async def terminate(self, instance: VMInstance) -> None:
        """Stop the VM: ``tart stop`` with a grace period, then kill the process."""
        proc = instance.process
        if proc is None or proc.returncode is not None:
            return

        grace = self.config.vm_grace_seconds

        async def graceful() -> None:
            await self.tart.stop(instance.name, timeout=grace)
            await proc.wait()

        # One deadline covers both the stop request and the guest powering off
        try:
            await asyncio.wait_for(graceful(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("VM %s did not stop within %.0fs, killing", instance.name, grace)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    async def reclaim(self, instance: VMInstance, keep: bool = True) -> None:
        """Remove the shared directory and delete (or park) the clone.

        *keep* allows a healthy clone to go back to the idle pool when VM
        reuse is enabled. Never raises.
        """
        if instance.reclaimed:
            return
        instance.reclaimed = True

        destroy_shared_dir(instance.shared_dir)

        if self.config.reuse_vms and keep and not instance.alive:
            self._idle.setdefault(instance.template, []).append(instance.name)
            logger.info("Keeping VM %s for reuse", instance.name)
            return

        if not self.config.cleanup_after_build:
            logger.info("Leaving VM %s on disk (cleanup disabled)", instance.name)
            return

        if not await self.tart.delete(instance.name):
            if await self.tart.exists(instance.name):
                logger.error("Failed to delete VM %s", instance.name)
            else:
                logger.debug("VM %s already gone", instance.name)
        else:
            logger.info("Deleted VM %s", instance.name)

    async def shutdown(self) -> None:
        """Delete every parked clone (worker exit)."""
        idle = self._idle
        self._idle = {}
        for names in idle.values():
            for name in names:
                if not await self.tart.delete(name):
                    logger.warning("Failed to delete idle VM %s", name)
