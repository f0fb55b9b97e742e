"""The worker: registration, the poll/claim loop, and graceful shutdown.

State machine:

    stopped → registering → polling ⇄ executing(n) → draining → stopped

All state lives on one asyncio event loop. Each claimed job runs in its own
task; its ActiveBuild entry is removed only after cleanup finishes, and that
removal (not the claim) frees the concurrency slot.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import httpx

from buildfleet.backoff import BackoffState
from buildfleet.build import run_build
from buildfleet.config import WorkerConfig
from buildfleet.controller import (
    AuthExpired,
    BuildJob,
    ControllerClient,
    JobAvailable,
    NoJob,
    PollOutcome,
    TransientError,
    WorkerUnknown,
)
from buildfleet.errors import BuildFleetError, ControllerError
from buildfleet.events import StatusChanged, WorkerEvents
from buildfleet.identity import IdentityStore
from buildfleet.reporter import ResultReporter
from buildfleet.session import SessionManager
from buildfleet.vm.manager import CancelToken, VMOrchestrator
from buildfleet.vm.tart import Tart

logger = logging.getLogger(__name__)

FreshnessCheck = Callable[[], Awaitable[bool]]


class WorkerState(str, enum.Enum):
    STOPPED = "stopped"
    REGISTERING = "registering"
    POLLING = "polling"
    EXECUTING = "executing"
    DRAINING = "draining"


@dataclass
class ActiveBuild:
    job: BuildJob
    cancel_token: CancelToken
    started_at: float = field(default_factory=time.time)
    task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def job_id(self) -> str:
        return self.job.id


class Worker:
    def __init__(
        self,
        config: WorkerConfig,
        client: ControllerClient | None = None,
        tart: Tart | None = None,
        events: WorkerEvents | None = None,
        store: IdentityStore | None = None,
        freshness_check: FreshnessCheck | None = None,
    ) -> None:
        self.config = config
        self.client = client or ControllerClient(config.controller_url, config.api_key)
        self.events = events or WorkerEvents()
        self.session = SessionManager(
            config,
            self.client,
            store or IdentityStore(config.identity_path),
            active_build_count=lambda: len(self.active_builds),
        )
        self.reporter = ResultReporter(self.client, self.session)
        self.orchestrator = VMOrchestrator(
            config,
            tart or Tart(config.tart_path),
            self.client,
            self.session,
            self.reporter,
            self.events,
        )
        self.freshness_check = freshness_check

        self.state = WorkerState.STOPPED
        self.active_builds: dict[str, ActiveBuild] = {}
        self.poll_backoff = BackoffState(min=config.backoff_min_seconds, max=config.backoff_max_seconds)
        self.fatal_error: BaseException | None = None

        self._wake = asyncio.Event()
        self._stopped = asyncio.Event()
        self._register_task: asyncio.Task | None = None
        self._loop_task: asyncio.Task | None = None
        self._stop_task: asyncio.Task | None = None
        self._reregister_task: asyncio.Task | None = None

    # ── State & status ──

    async def _set_state(self, state: WorkerState) -> None:
        if state == self.state:
            return
        self.state = state
        logger.info("Worker state: %s", state.value)
        await self.events.publish(StatusChanged(status=self.display_status, worker_id=self.session.worker_id))

    @property
    def reregistering(self) -> bool:
        task_running = self._reregister_task is not None and not self._reregister_task.done()
        return self.session.reregistering or task_running

    @property
    def display_status(self) -> str:
        """Coarse status for presentation: stopped, connecting, online or stopping."""
        if self.state == WorkerState.STOPPED:
            return "stopped"
        if self.state == WorkerState.DRAINING:
            return "stopping"
        if self.state == WorkerState.REGISTERING or self.reregistering:
            return "connecting"
        return "online"

    def status(self) -> dict:
        return {
            "state": self.state.value,
            "status": self.display_status,
            "worker_id": self.session.worker_id,
            "max_concurrent_builds": self.config.max_concurrent_builds,
            "active_builds": [
                {
                    "build_id": ab.job_id,
                    "platform": ab.job.platform,
                    "started_at": ab.started_at,
                }
                for ab in self.active_builds.values()
            ],
        }

    # ── Lifecycle ──

    async def start(self) -> None:
        """Register and start the poll loop.

        Raises RegistrationError (or PersistenceError) without ever entering
        the polling state if registration fails. A stop() that arrives while
        registration is still retrying cancels it, and start() then returns
        without polling.
        """
        if self.state != WorkerState.STOPPED:
            return
        if self._stop_task is not None:
            # Previous run: let its shutdown finish, then allow a fresh one
            await asyncio.shield(self._stop_task)
            self._stop_task = None
        self.fatal_error = None
        self.poll_backoff.reset()
        self._wake.clear()
        self._stopped.clear()
        self.events.reopen()
        await self._set_state(WorkerState.REGISTERING)

        self._register_task = asyncio.create_task(self.session.register())
        try:
            await asyncio.shield(self._register_task)
        except asyncio.CancelledError:
            if self._stop_task is None:
                self._register_task.cancel()
                self.state = WorkerState.STOPPED
                self._stopped.set()
                raise
            return
        except BuildFleetError:
            if self._stop_task is not None:
                return
            await self._set_state(WorkerState.STOPPED)
            self._stopped.set()
            raise
        finally:
            self._register_task = None

        if self._stop_task is not None:
            logger.info("Stop requested during registration, not polling")
            return
        await self._set_state(WorkerState.POLLING)
        self._loop_task = asyncio.create_task(self._run())

    async def run(self) -> None:
        """Start, then block until the worker has stopped."""
        await self.start()
        await self.wait_stopped()
        if self.fatal_error is not None:
            raise self.fatal_error

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def stop(self) -> None:
        """Drain and stop. Idempotent; every caller waits for the same shutdown."""
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self._shutdown())
        await asyncio.shield(self._stop_task)

    async def _shutdown(self) -> None:
        if self.state == WorkerState.STOPPED:
            self._stopped.set()
            return
        await self._set_state(WorkerState.DRAINING)

        for task in (self._register_task, self._loop_task, self._reregister_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.exception("Background task failed during shutdown")

        builds = list(self.active_builds.values())
        for ab in builds:
            ab.cancel_token.cancel("worker shutting down")
        if builds:
            logger.info("Waiting for %d active build(s) to clean up", len(builds))
            await asyncio.gather(*(ab.task for ab in builds if ab.task), return_exceptions=True)

        token = self.session.token
        if token:
            try:
                await self.client.unregister(token)
                logger.info("Unregistered worker %s", self.session.worker_id)
            except (ControllerError, httpx.HTTPError) as e:
                logger.warning("Unregister failed: %s", e)

        await self.orchestrator.shutdown()
        await self._set_state(WorkerState.STOPPED)
        await self.events.close()
        self._stopped.set()

    # ── Poll loop ──

    async def _run(self) -> None:
        try:
            while self.state not in (WorkerState.DRAINING, WorkerState.STOPPED):
                delay = await self.tick()
                await self._sleep(delay)
        except BuildFleetError as e:
            logger.error("Worker cannot continue: %s", e)
            self.fatal_error = e
            if self._stop_task is None:
                self._stop_task = asyncio.create_task(self._shutdown())

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    async def tick(self) -> float:
        """Run one scheduling step and return how long to sleep before the next."""
        interval = self.config.poll_interval_seconds

        task = self._reregister_task
        if task is not None and task.done():
            self._reregister_task = None
            if not task.cancelled() and task.exception() is not None:
                # Re-registration gave up: fail closed
                raise task.exception()

        if self.reregistering:
            return interval

        if len(self.active_builds) >= self.config.max_concurrent_builds:
            return interval

        if self.freshness_check is not None and not await self.freshness_check():
            logger.info("Freshness check failed, not claiming work")
            return interval

        outcome = await self.poll()
        if isinstance(outcome, TransientError):
            delay = self.poll_backoff.failure()
            logger.warning("Poll failed (%s), retrying in %.1fs", outcome.reason, delay)
            return delay
        return interval

    async def poll(self) -> PollOutcome:
        token = self.session.token
        if not token:
            outcome: PollOutcome = AuthExpired()
        else:
            outcome = await self.client.poll(token)

        if isinstance(outcome, JobAvailable):
            self.poll_backoff.reset()
            await self.session.rotate(outcome.access_token)
            self._claim(outcome.job)
        elif isinstance(outcome, NoJob):
            self.poll_backoff.reset()
            await self.session.rotate(outcome.access_token)
        elif isinstance(outcome, AuthExpired):
            self._begin_reregistration(401)
        elif isinstance(outcome, WorkerUnknown):
            self._begin_reregistration(404)
        return outcome

    def _begin_reregistration(self, status_code: int) -> None:
        if self.reregistering:
            return
        self._reregister_task = asyncio.create_task(self.session.handle_auth_failure(status_code))

    def _claim(self, job: BuildJob) -> None:
        if job.id in self.active_builds:
            logger.warning("Build %s is already running, ignoring duplicate assignment", job.id)
            return

        logger.info("Claimed build %s (%s)", job.id, job.platform)
        active = ActiveBuild(job=job, cancel_token=CancelToken())
        self.active_builds[job.id] = active
        active.task = asyncio.create_task(self._execute(active))
        self.state = WorkerState.EXECUTING

    async def _execute(self, active: ActiveBuild) -> None:
        try:
            await run_build(active.job, self.orchestrator, self.reporter, self.events, active.cancel_token)
        except Exception:
            logger.exception("Build %s crashed", active.job_id)
        finally:
            self.active_builds.pop(active.job_id, None)
            if not self.active_builds and self.state == WorkerState.EXECUTING:
                self.state = WorkerState.POLLING
            self._wake.set()
