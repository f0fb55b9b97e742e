"""Tests for result reporting."""

import httpx
import pytest

from buildfleet.controller import ControllerClient
from buildfleet.errors import ReportError
from buildfleet.identity import IdentityStore
from buildfleet.reporter import ResultReporter
from buildfleet.session import SessionManager


@pytest.fixture
async def reporter(config, client):
    session = SessionManager(config, client, IdentityStore(config.identity_path))
    await session.register()
    return ResultReporter(client, session)


async def test_success_form(reporter, controller):
    await reporter.report_result("b1", True)

    assert controller.uploads == [
        {"build_id": "b1", "worker_id": "worker-1", "success": "true", "has_result": False}
    ]


async def test_failure_carries_error_message(reporter, controller):
    await reporter.report_result("b1", False, error_message="Gradle build failed")

    upload = controller.uploads[0]
    assert upload["success"] == "false"
    assert upload["error_message"] == "Gradle build failed"


async def test_artifact_is_attached(reporter, controller, tmp_path):
    artifact = tmp_path / "app-release.apk"
    artifact.write_bytes(b"PK\x03\x04apk")

    await reporter.report_result("b1", True, artifact_path=str(artifact))
    assert controller.uploads[0]["has_result"] is True


async def test_unreadable_artifact(reporter, tmp_path):
    with pytest.raises(ReportError, match="Could not read artifact"):
        await reporter.report_result("b1", True, artifact_path=str(tmp_path / "missing.ipa"))


async def test_abandon(reporter, controller):
    await reporter.report_abandoned("b1", "worker shutting down")
    assert controller.abandons == [
        {"build_id": "b1", "worker_id": "worker-1", "reason": "worker shutting down"}
    ]


async def test_heartbeat_uses_session_worker_id(reporter, controller):
    assert await reporter.heartbeat("b1", "vm-b1", 10) is True
    assert controller.heartbeats[0]["worker_id"] == "worker-1"


async def test_controller_rejection_is_report_error(config, client):
    session = SessionManager(config, client, IdentityStore(config.identity_path))
    await session.register()

    async with ControllerClient(
        "http://controller.test",
        "key",
        transport=httpx.MockTransport(lambda request: httpx.Response(500, json={"error": "boom"})),
    ) as failing:
        reporter = ResultReporter(failing, session)
        with pytest.raises(ReportError, match="b1"):
            await reporter.report_result("b1", True)
        with pytest.raises(ReportError):
            await reporter.report_abandoned("b1", "cancelled")
