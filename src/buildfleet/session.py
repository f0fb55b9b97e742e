"""Registration and session-token lifecycle.

SessionManager owns the worker identity, the session token and the
registration backoff. Every in-memory change is paired with a write to the
identity file under one asyncio.Lock; if the write fails the in-memory state
is rolled back so memory and disk never disagree.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

import httpx

from buildfleet.backoff import BackoffState
from buildfleet.config import WorkerConfig
from buildfleet.controller import SUPPORTED_PLATFORMS, Capabilities, ControllerClient
from buildfleet.errors import ControllerError, PersistenceError, RegistrationError
from buildfleet.identity import IdentityStore, Session, WorkerIdentity

logger = logging.getLogger(__name__)


class SessionManager:
    def __init__(
        self,
        config: WorkerConfig,
        client: ControllerClient,
        store: IdentityStore,
        active_build_count: Callable[[], int] = lambda: 0,
    ) -> None:
        self.config = config
        self.client = client
        self.store = store
        self._active_build_count = active_build_count
        self._lock = asyncio.Lock()
        self.backoff = BackoffState(min=config.backoff_min_seconds, max=config.backoff_max_seconds)
        self.reregistering = False

        worker_id, session = store.load()
        self.identity = WorkerIdentity(
            device_name=config.device_name,
            api_key=config.api_key,
            worker_id=worker_id,
        )
        self.session: Session | None = session

    @property
    def worker_id(self) -> str | None:
        return self.identity.worker_id

    @property
    def token(self) -> str | None:
        return self.session.access_token if self.session else None

    def capabilities(self) -> Capabilities:
        return Capabilities(
            platforms=tuple(SUPPORTED_PLATFORMS),
            max_concurrent_builds=self.config.max_concurrent_builds,
            max_memory_gb=self.config.max_memory_gb,
            max_cpu_percent=self.config.max_cpu_percent,
        )

    async def _commit(self, worker_id: str | None, session: Session | None) -> None:
        """Apply and persist a new identity/session pair, rolling back on failure."""
        async with self._lock:
            previous = (self.identity.worker_id, self.session)
            self.identity.worker_id = worker_id
            self.session = session
            try:
                self.store.save(worker_id, session)
            except PersistenceError:
                self.identity.worker_id, self.session = previous
                raise

    async def register(self) -> None:
        """Register with the controller, retrying with exponential backoff.

        Raises RegistrationError once every attempt is exhausted. A failure
        to persist the assigned identity is raised as PersistenceError and
        is not retried.
        """
        self.backoff.reset()
        attempts = self.config.registration_attempts
        last_error = ""

        for attempt in range(1, attempts + 1):
            try:
                registration = await self.client.register(
                    name=self.identity.device_name,
                    capabilities=self.capabilities(),
                    worker_id=self.identity.worker_id,
                    active_build_count=self._active_build_count(),
                )
            except (ControllerError, httpx.HTTPError) as e:
                last_error = str(e)
                if attempt == attempts:
                    break
                delay = self.backoff.failure()
                logger.warning(
                    "Registration attempt %d/%d failed (%s), retrying in %.1fs",
                    attempt, attempts, last_error, delay,
                )
                await asyncio.sleep(delay)
                continue

            if self.identity.worker_id and registration.worker_id != self.identity.worker_id:
                logger.info(
                    "Controller assigned new worker id %s (was %s)",
                    registration.worker_id, self.identity.worker_id,
                )
            await self._commit(
                registration.worker_id,
                Session(
                    access_token=registration.access_token,
                    issued_for_worker_id=registration.worker_id,
                ),
            )
            self.backoff.reset()
            logger.info("Registered as worker %s", registration.worker_id)
            return

        raise RegistrationError(f"Registration failed after {attempts} attempts: {last_error}")

    async def rotate(self, access_token: str | None) -> None:
        """Adopt a rotated session token from a poll response."""
        if not access_token or access_token == self.token or not self.identity.worker_id:
            return
        try:
            await self._commit(
                self.identity.worker_id,
                Session(access_token=access_token, issued_for_worker_id=self.identity.worker_id),
            )
        except PersistenceError:
            # Old token stays in effect; a later 401 re-registers
            logger.exception("Could not persist rotated session token")

    async def handle_auth_failure(self, status_code: int) -> None:
        """React to a 401 (token expired) or 404 (worker unknown) from the controller.

        401 keeps the worker id and only drops the session; 404 drops both so
        the controller assigns a fresh id. Concurrent calls while a
        re-registration is already in flight are ignored.
        """
        if self.reregistering:
            return
        self.reregistering = True
        try:
            if status_code == 404:
                logger.warning("Controller does not know worker %s, registering as new", self.worker_id)
                await self._clear(worker_id=None)
            else:
                logger.warning("Session token rejected, re-registering worker %s", self.worker_id)
                await self._clear(worker_id=self.identity.worker_id)
            await self.register()
        finally:
            self.reregistering = False

    async def _clear(self, worker_id: str | None) -> None:
        try:
            await self._commit(worker_id, None)
        except PersistenceError:
            # Memory was rolled back; drop the stale credentials anyway
            logger.exception("Could not persist cleared credentials")
            async with self._lock:
                self.identity.worker_id = worker_id
                self.session = None
