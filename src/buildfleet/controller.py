"""Async HTTP client for the build controller.

Every worker-side call to the controller goes through ControllerClient. Poll
responses are folded into a small tagged union (JobAvailable, NoJob,
AuthExpired, WorkerUnknown, TransientError) so the dispatch loop can branch on
the outcome without inspecting status codes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Union

import httpx

from buildfleet.errors import ControllerError

logger = logging.getLogger(__name__)

SUPPORTED_PLATFORMS = ["ios", "android"]


@dataclass(frozen=True)
class BuildJob:
    id: str
    platform: str
    otp: str
    source_url: str
    certs_url: str | None = None
    base_image_id: str | None = None

    @staticmethod
    def from_dict(data: dict) -> BuildJob:
        return BuildJob(
            id=str(data["id"]),
            platform=data.get("platform", ""),
            otp=data.get("otp", ""),
            source_url=data.get("source_url", ""),
            certs_url=data.get("certs_url"),
            base_image_id=data.get("base_image_id"),
        )


# ── Poll outcomes ──


@dataclass(frozen=True)
class JobAvailable:
    job: BuildJob
    access_token: str | None = None


@dataclass(frozen=True)
class NoJob:
    access_token: str | None = None


@dataclass(frozen=True)
class AuthExpired:
    pass


@dataclass(frozen=True)
class WorkerUnknown:
    pass


@dataclass(frozen=True)
class TransientError:
    reason: str


PollOutcome = Union[JobAvailable, NoJob, AuthExpired, WorkerUnknown, TransientError]


@dataclass(frozen=True)
class Registration:
    worker_id: str
    access_token: str


@dataclass(frozen=True)
class Capabilities:
    platforms: tuple[str, ...]
    max_concurrent_builds: int
    max_memory_gb: float
    max_cpu_percent: float

    def to_dict(self) -> dict:
        return {
            "platforms": list(self.platforms),
            "maxConcurrentBuilds": self.max_concurrent_builds,
            "maxMemoryGB": self.max_memory_gb,
            "maxCPUPercent": self.max_cpu_percent,
        }


class ControllerClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> ControllerClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    @staticmethod
    def _worker_headers(token: str | None) -> dict[str, str]:
        return {"X-Worker-Token": token} if token else {}

    async def health(self) -> bool:
        try:
            r = await self._client.get("/health", timeout=10.0)
        except httpx.HTTPError:
            return False
        return r.status_code == 200

    async def register(
        self,
        name: str,
        capabilities: Capabilities,
        worker_id: str | None = None,
        active_build_count: int = 0,
    ) -> Registration:
        """Register (or re-register) this worker.

        Raises ControllerError on a non-200 answer. Transport failures
        propagate as httpx.HTTPError; the caller owns the retry policy.
        """
        body: dict[str, Any] = {
            "name": name,
            "capabilities": capabilities.to_dict(),
            "active_build_count": active_build_count,
        }
        if worker_id:
            body["id"] = worker_id

        r = await self._client.post(
            "/api/workers/register",
            json=body,
            headers={"X-API-Key": self.api_key},
        )
        if r.status_code != 200:
            raise ControllerError(r.status_code, r.text)

        data = r.json()
        if not data.get("id") or not data.get("access_token"):
            raise ControllerError(r.status_code, "registration response missing id or access_token")
        return Registration(worker_id=str(data["id"]), access_token=data["access_token"])

    async def poll(self, token: str) -> PollOutcome:
        try:
            r = await self._client.get("/api/workers/poll", headers=self._worker_headers(token))
        except httpx.HTTPError as e:
            return TransientError(reason=f"{type(e).__name__}: {e}")

        if r.status_code == 204:
            return NoJob()
        if r.status_code == 401:
            return AuthExpired()
        if r.status_code == 404:
            return WorkerUnknown()
        if r.status_code != 200:
            return TransientError(reason=f"HTTP {r.status_code}")

        try:
            data = r.json()
        except ValueError:
            return TransientError(reason="malformed poll response")

        token = data.get("access_token")
        job = data.get("job")
        if job:
            try:
                return JobAvailable(job=BuildJob.from_dict(job), access_token=token)
            except KeyError as e:
                return TransientError(reason=f"job payload missing {e}")
        return NoJob(access_token=token)

    async def unregister(self, token: str) -> None:
        r = await self._client.post("/api/workers/unregister", headers=self._worker_headers(token))
        if r.status_code != 200:
            raise ControllerError(r.status_code, r.text)

    async def vm_status(self, build_id: str, token: str) -> dict:
        r = await self._client.get(
            f"/api/builds/{build_id}/vm-status",
            headers=self._worker_headers(token),
        )
        if r.status_code != 200:
            raise ControllerError(r.status_code, r.text)
        return r.json()

    async def heartbeat(
        self,
        build_id: str,
        worker_id: str,
        vm_token: str,
        progress: int | None = None,
    ) -> bool:
        body = {"progress": progress} if progress is not None else {}
        try:
            r = await self._client.post(
                f"/api/builds/{build_id}/heartbeat",
                params={"worker_id": worker_id},
                json=body,
                headers={"X-VM-Token": vm_token},
            )
        except httpx.HTTPError as e:
            logger.warning("Heartbeat for build %s failed: %s", build_id, e)
            return False
        return r.status_code == 200

    async def upload_result(
        self,
        token: str | None,
        data: dict[str, str],
        files: dict[str, tuple[str, bytes, str]] | None = None,
    ) -> None:
        r = await self._client.post(
            "/api/workers/upload",
            data=data,
            files=files,
            headers=self._worker_headers(token),
            timeout=300.0,
        )
        if r.status_code != 200:
            raise ControllerError(r.status_code, r.text)

    async def abandon(self, token: str | None, build_id: str, worker_id: str, reason: str) -> None:
        r = await self._client.post(
            "/api/workers/abandon",
            json={"build_id": build_id, "worker_id": worker_id, "reason": reason},
            headers=self._worker_headers(token),
        )
        if r.status_code != 200:
            raise ControllerError(r.status_code, r.text)

    async def report_diagnostics(self, report: dict) -> bool:
        try:
            r = await self._client.post(
                "/api/diagnostics/report",
                json=report,
                headers={"X-API-Key": self.api_key},
            )
        except httpx.HTTPError as e:
            logger.warning("Diagnostic report upload failed: %s", e)
            return False
        return r.status_code == 200
