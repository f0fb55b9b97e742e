from __future__ import annotations

import logging
import os

import httpx

from buildfleet.controller import ControllerClient
from buildfleet.errors import ControllerError, ReportError
from buildfleet.session import SessionManager

logger = logging.getLogger(__name__)


class ResultReporter:
    """Delivers heartbeats, build results and abandonment notices to the controller."""

    def __init__(self, client: ControllerClient, session: SessionManager) -> None:
        self.client = client
        self.session = session

    async def heartbeat(self, build_id: str, vm_token: str, progress: int | None = None) -> bool:
        ok = await self.client.heartbeat(build_id, self.session.worker_id or "", vm_token, progress)
        if not ok:
            logger.warning("Heartbeat for build %s was not acknowledged", build_id)
        return ok

    def _build_form(
        self,
        job_id: str,
        success: bool,
        artifact_path: str | None,
        error_message: str | None,
    ) -> tuple[dict[str, str], dict[str, tuple[str, bytes, str]] | None]:
        data = {
            "build_id": job_id,
            "worker_id": self.session.worker_id or "",
            "success": "true" if success else "false",
        }
        if error_message:
            data["error_message"] = error_message

        files = None
        if artifact_path:
            with open(artifact_path, "rb") as f:
                content = f.read()
            files = {"result": (os.path.basename(artifact_path), content, "application/octet-stream")}
        return data, files

    async def report_result(
        self,
        job_id: str,
        success: bool,
        artifact_path: str | None = None,
        error_message: str | None = None,
    ) -> None:
        """Upload the build outcome. Success and failure share one form builder."""
        try:
            data, files = self._build_form(job_id, success, artifact_path, error_message)
        except OSError as e:
            raise ReportError(f"Could not read artifact {artifact_path}: {e}") from e

        try:
            await self.client.upload_result(self.session.token, data, files)
        except (ControllerError, httpx.HTTPError) as e:
            raise ReportError(f"Result upload for build {job_id} failed: {e}") from e
        logger.info("Reported build %s (success=%s)", job_id, success)

    async def report_abandoned(self, job_id: str, reason: str) -> None:
        try:
            await self.client.abandon(self.session.token, job_id, self.session.worker_id or "", reason)
        except (ControllerError, httpx.HTTPError) as e:
            raise ReportError(f"Abandon notice for build {job_id} failed: {e}") from e
        logger.info("Abandoned build %s: %s", job_id, reason)
