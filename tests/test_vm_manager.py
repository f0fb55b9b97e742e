"""Tests for the VM orchestrator: launch, readiness, monitoring and teardown."""

import asyncio
import json
import os

import pytest
from conftest import TEMPLATE, FakeProcess, FakeTart, wait_until

from buildfleet.controller import BuildJob
from buildfleet.errors import (
    BuildCancelled,
    BuildTimeout,
    GuestScriptMissingError,
    VMLaunchError,
    VMProcessDied,
    VMReadyTimeout,
)
from buildfleet.events import WorkerEvents
from buildfleet.identity import IdentityStore
from buildfleet.reporter import ResultReporter
from buildfleet.session import SessionManager
from buildfleet.vm import manager
from buildfleet.vm.manager import CancelToken, VMInstance, VMOrchestrator

JOB = BuildJob(id="b1", platform="ios", otp="otp-b1", source_url="/api/builds/b1/source")


@pytest.fixture
async def session(config, client):
    s = SessionManager(config, client, IdentityStore(config.identity_path))
    await s.register()
    return s


@pytest.fixture
def tart():
    return FakeTart()


@pytest.fixture
def orchestrator(config, client, session, tart):
    return VMOrchestrator(
        config,
        tart,
        client,
        session,
        ResultReporter(client, session),
        WorkerEvents(),
    )


def _signal(instance: VMInstance, name: str, data: dict) -> None:
    with open(os.path.join(instance.shared_dir, name), "w") as f:
        json.dump(data, f)


# ── launch ──


class TestLaunch:
    async def test_clones_template_and_boots(self, orchestrator, tart, config):
        instance = await orchestrator.launch(JOB, CancelToken())

        assert instance.name.startswith("fa-") and len(instance.name) == 11
        assert ("clone", TEMPLATE, instance.name) in tart.calls
        assert ("run", instance.name, instance.shared_dir) in tart.calls
        assert instance.alive

        with open(os.path.join(instance.shared_dir, "build-config.json")) as f:
            build_config = json.load(f)
        assert build_config == {
            "build_id": "b1",
            "build_token": "otp-b1",
            "controller_url": config.controller_url,
            "platform": "ios",
        }
        assert os.path.isfile(os.path.join(instance.shared_dir, "bootstrap.py"))
        assert os.path.isfile(os.path.join(instance.shared_dir, "diagnostics.py"))

    async def test_job_base_image_overrides_template(self, orchestrator, tart):
        tart.vms["custom-image"] = "local"
        job = BuildJob(id="b2", platform="android", otp="o", source_url="/s", base_image_id="custom-image")

        instance = await orchestrator.launch(job, CancelToken())
        assert ("clone", "custom-image", instance.name) in tart.calls

    async def test_clone_failure_is_launch_error(self, orchestrator, tart):
        tart.fail_clone = True
        with pytest.raises(VMLaunchError, match="clone"):
            await orchestrator.launch(JOB, CancelToken())
        assert not any(c[0] == "run" for c in tart.calls)

    async def test_clone_failure_removes_shared_dir(self, orchestrator, tart, monkeypatch):
        created = []
        real_prepare = manager.prepare_shared_dir

        def recording_prepare(*args, **kwargs):
            path = real_prepare(*args, **kwargs)
            created.append(path)
            return path

        monkeypatch.setattr("buildfleet.vm.manager.prepare_shared_dir", recording_prepare)
        tart.fail_clone = True
        with pytest.raises(VMLaunchError):
            await orchestrator.launch(JOB, CancelToken())
        assert not os.path.exists(created[0])

    async def test_missing_guest_scripts(self, orchestrator, tart, tmp_path):
        orchestrator.guest_source_dir = str(tmp_path)
        with pytest.raises(GuestScriptMissingError, match="bootstrap.py"):
            await orchestrator.launch(JOB, CancelToken())
        assert tart.calls == []

    async def test_cancelled_before_launch(self, orchestrator, tart):
        cancel = CancelToken()
        cancel.cancel("shutting down")
        with pytest.raises(BuildCancelled):
            await orchestrator.launch(JOB, cancel)
        assert tart.calls == []


# ── await_ready ──


async def test_await_ready_returns_controller_token(orchestrator):
    instance = await orchestrator.launch(JOB, CancelToken())
    assert await orchestrator.await_ready(JOB, instance, CancelToken()) == "vm-b1"


async def test_await_ready_times_out(orchestrator, controller, config):
    controller.vm_ready = False
    config.vm_ready_timeout_seconds = 0.05
    instance = await orchestrator.launch(JOB, CancelToken())

    with pytest.raises(VMReadyTimeout):
        await orchestrator.await_ready(JOB, instance, CancelToken())


async def test_await_ready_detects_dead_vm(orchestrator, controller):
    controller.vm_ready = False
    instance = await orchestrator.launch(JOB, CancelToken())
    instance.process.exit(1)

    with pytest.raises(VMProcessDied):
        await orchestrator.await_ready(JOB, instance, CancelToken())


# ── monitor ──


class TestMonitor:
    async def test_build_complete(self, orchestrator):
        instance = await orchestrator.launch(JOB, CancelToken())
        _signal(instance, "build-complete", {"status": "success", "artifact_uploaded": True})

        outcome = await orchestrator.monitor(JOB, instance, "vm-b1", CancelToken())
        assert outcome.success is True
        assert outcome.artifact_uploaded is True

    async def test_build_error(self, orchestrator):
        instance = await orchestrator.launch(JOB, CancelToken())
        _signal(instance, "build-error", {"status": "failed", "error": "xcodebuild archive failed"})

        outcome = await orchestrator.monitor(JOB, instance, "vm-b1", CancelToken())
        assert outcome.success is False
        assert outcome.error_message == "xcodebuild archive failed"

    async def test_completion_wins_over_exited_process(self, orchestrator):
        instance = await orchestrator.launch(JOB, CancelToken())
        _signal(instance, "build-complete", {"status": "success"})
        instance.process.exit(0)

        outcome = await orchestrator.monitor(JOB, instance, "vm-b1", CancelToken())
        assert outcome.success is True

    async def test_process_death(self, orchestrator):
        instance = await orchestrator.launch(JOB, CancelToken())
        instance.process.exit(1)

        with pytest.raises(VMProcessDied, match="VM process terminated unexpectedly"):
            await orchestrator.monitor(JOB, instance, "vm-b1", CancelToken())

    async def test_wall_clock_timeout(self, orchestrator, config):
        config.build_timeout_minutes = 0
        instance = await orchestrator.launch(JOB, CancelToken())

        with pytest.raises(BuildTimeout):
            await orchestrator.monitor(JOB, instance, "vm-b1", CancelToken())

    async def test_heartbeats_with_vm_token_and_progress(self, orchestrator, controller):
        instance = await orchestrator.launch(JOB, CancelToken())
        _signal(instance, "progress.json", {"phase": "building", "progress_percent": 55, "message": "compiling"})

        task = asyncio.create_task(orchestrator.monitor(JOB, instance, "vm-b1", CancelToken()))
        await wait_until(lambda: len(controller.heartbeats) >= 1)
        _signal(instance, "build-complete", {"status": "success"})
        await task

        beat = controller.heartbeats[0]
        assert beat["vm_token"] == "vm-b1"
        assert beat["worker_id"] == "worker-1"
        assert beat["body"] == {"progress": 55}
        event_type, payload = orchestrator.events.recent()[0]
        assert event_type == "build.progress"
        assert payload["percent"] == 55
        assert payload["phase"] == "building"

    async def test_failed_heartbeat_is_soft(self, orchestrator, monkeypatch):
        async def refuse(*args, **kwargs):
            return False

        monkeypatch.setattr(orchestrator.reporter, "heartbeat", refuse)
        instance = await orchestrator.launch(JOB, CancelToken())

        task = asyncio.create_task(orchestrator.monitor(JOB, instance, "vm-b1", CancelToken()))
        await asyncio.sleep(0.08)
        assert not task.done()
        _signal(instance, "build-complete", {"status": "success"})
        assert (await task).success is True

    async def test_cancellation(self, orchestrator):
        instance = await orchestrator.launch(JOB, CancelToken())
        cancel = CancelToken()

        task = asyncio.create_task(orchestrator.monitor(JOB, instance, "vm-b1", cancel))
        await asyncio.sleep(0.03)
        cancel.cancel("worker shutting down")

        with pytest.raises(BuildCancelled, match="worker shutting down"):
            await task


# ── terminate / reclaim ──


async def test_terminate_graceful(orchestrator, tart):
    instance = await orchestrator.launch(JOB, CancelToken())
    await orchestrator.terminate(instance)

    assert ("stop", instance.name) in tart.calls
    assert instance.process.returncode == 0
    assert not instance.process.killed


async def test_terminate_kills_after_grace(orchestrator, tart):
    tart.stop_exits = False
    instance = await orchestrator.launch(JOB, CancelToken())
    await orchestrator.terminate(instance)

    assert instance.process.killed


async def test_terminate_bounds_slow_stop_by_grace(orchestrator, tart):
    tart.stop_exits = False
    tart.stop_delay = 5
    instance = await orchestrator.launch(JOB, CancelToken())

    loop = asyncio.get_running_loop()
    started = loop.time()
    await orchestrator.terminate(instance)

    assert loop.time() - started < 1.0
    assert instance.process.killed


async def test_terminate_exited_vm_is_noop(orchestrator, tart):
    instance = await orchestrator.launch(JOB, CancelToken())
    instance.process.exit(0)
    await orchestrator.terminate(instance)
    assert ("stop", instance.name) not in tart.calls


async def test_reclaim_deletes_vm_and_shared_dir(orchestrator, tart):
    instance = await orchestrator.launch(JOB, CancelToken())
    await orchestrator.terminate(instance)
    await orchestrator.reclaim(instance)

    assert instance.name not in tart.vms
    assert not os.path.exists(instance.shared_dir)


async def test_cleanup_disabled_leaves_failed_vm(orchestrator, tart, config):
    config.cleanup_after_build = False
    instance = await orchestrator.launch(JOB, CancelToken())
    await orchestrator.terminate(instance)
    await orchestrator.reclaim(instance, keep=False)

    assert instance.name in tart.vms
    assert tart.deleted() == []
    assert not os.path.exists(instance.shared_dir)


async def test_reclaim_is_idempotent_and_tolerates_missing_vm(orchestrator, tart):
    instance = VMInstance(name="fa-deadbeef", template=TEMPLATE, shared_dir="/nonexistent", process=FakeProcess())
    instance.process.exit(1)

    await orchestrator.reclaim(instance)
    await orchestrator.reclaim(instance)
    assert tart.deleted() == ["fa-deadbeef"]


async def test_reuse_keeps_vm_for_next_build(orchestrator, tart, config):
    config.reuse_vms = True
    first = await orchestrator.launch(JOB, CancelToken())
    await orchestrator.terminate(first)
    await orchestrator.reclaim(first, keep=True)
    assert first.name in tart.vms

    job2 = BuildJob(id="b2", platform="ios", otp="o2", source_url="/s")
    second = await orchestrator.launch(job2, CancelToken())
    assert second.name == first.name
    assert second.reused
    assert len([c for c in tart.calls if c[0] == "clone"]) == 1

    await orchestrator.shutdown()
    await orchestrator.terminate(second)
    await orchestrator.reclaim(second, keep=False)
    assert first.name not in tart.vms


async def test_failed_build_vm_not_reused(orchestrator, tart, config):
    config.reuse_vms = True
    instance = await orchestrator.launch(JOB, CancelToken())
    await orchestrator.terminate(instance)
    await orchestrator.reclaim(instance, keep=False)
    assert instance.name not in tart.vms
