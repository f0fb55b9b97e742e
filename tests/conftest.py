"""Shared fixtures: an in-process fake controller and a fake Tart CLI."""

from __future__ import annotations

import asyncio
import collections
import json
import os

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from buildfleet.config import WorkerConfig
from buildfleet.controller import ControllerClient
from buildfleet.vm.tart import TartVM

TEST_API_KEY = "bf_test_key"
TEMPLATE = "buildfleet-macos-xcode"


class FakeController:
    """Scriptable stand-in for the controller's HTTP surface."""

    def __init__(self) -> None:
        self.app = FastAPI()
        self.registrations: list[dict] = []
        self.register_failures = 0
        self.honour_ids = True
        self._next_worker = 0
        self._next_token = 0

        self.poll_script: collections.deque[tuple[int, dict | None]] = collections.deque()
        self.poll_tokens: list[str | None] = []
        self.unregisters: list[str | None] = []
        self.vm_ready = True
        self.vm_status_calls: list[str] = []
        self.heartbeats: list[dict] = []
        self.uploads: list[dict] = []
        self.upload_gate: asyncio.Event | None = None
        self.abandons: list[dict] = []
        self.diagnostic_reports: list[dict] = []

        # Guest-facing state
        self.otps: dict[str, str] = {}
        self.used_otps: set[str] = set()
        self.auth_attempts: list[tuple[str, int]] = []
        self.certs: dict[str, dict | str] = {}
        self.sources: dict[str, bytes] = {}
        self.logs: dict[str, list[dict]] = collections.defaultdict(list)
        self.artifacts: dict[str, tuple[str, int]] = {}

        self._routes()

    def issue_token(self) -> str:
        self._next_token += 1
        return f"tok-{self._next_token}"

    def queue_job(self, build_id: str, platform: str = "android", access_token: str | None = None) -> None:
        body = {
            "job": {
                "id": build_id,
                "platform": platform,
                "otp": f"otp-{build_id}",
                "source_url": f"/api/builds/{build_id}/source",
                "certs_url": f"/api/builds/{build_id}/certs-secure",
            },
        }
        if access_token:
            body["access_token"] = access_token
        self.poll_script.append((200, body))

    def queue_status(self, status: int, times: int = 1) -> None:
        for _ in range(times):
            self.poll_script.append((status, None))

    def _routes(self) -> None:
        app = self.app

        @app.get("/health")
        async def health():
            return {"status": "ok"}

        @app.post("/api/workers/register")
        async def register(request: Request):
            if request.headers.get("x-api-key") != TEST_API_KEY:
                return JSONResponse({"error": "bad key"}, status_code=401)
            if self.register_failures > 0:
                self.register_failures -= 1
                return JSONResponse({"error": "unavailable"}, status_code=503)
            body = await request.json()
            self.registrations.append(body)
            worker_id = body.get("id") if self.honour_ids else None
            if not worker_id:
                self._next_worker += 1
                worker_id = f"worker-{self._next_worker}"
            return {"id": worker_id, "access_token": self.issue_token(), "status": "active"}

        @app.get("/api/workers/poll")
        async def poll(request: Request):
            self.poll_tokens.append(request.headers.get("x-worker-token"))
            if not self.poll_script:
                return Response(status_code=204)
            status, body = self.poll_script.popleft()
            if status == 200:
                return JSONResponse(body or {"job": None})
            return Response(status_code=status)

        @app.post("/api/workers/unregister")
        async def unregister(request: Request):
            self.unregisters.append(request.headers.get("x-worker-token"))
            return {"status": "ok"}

        @app.get("/api/builds/{build_id}/vm-status")
        async def vm_status(build_id: str):
            self.vm_status_calls.append(build_id)
            if not self.vm_ready:
                return {"vm_ready": False}
            return {"vm_ready": True, "vm_token": f"vm-{build_id}"}

        @app.post("/api/builds/{build_id}/heartbeat")
        async def heartbeat(build_id: str, request: Request):
            self.heartbeats.append(
                {
                    "build_id": build_id,
                    "worker_id": request.query_params.get("worker_id"),
                    "vm_token": request.headers.get("x-vm-token"),
                    "body": await request.json(),
                }
            )
            return {"status": "ok"}

        @app.post("/api/workers/upload")
        async def upload(request: Request):
            if self.upload_gate is not None:
                await self.upload_gate.wait()
            form = await request.form()
            record = {k: v for k, v in form.items() if isinstance(v, str)}
            result = form.get("result")
            record["has_result"] = result is not None and not isinstance(result, str)
            self.uploads.append(record)
            return {"status": "ok"}

        @app.post("/api/workers/abandon")
        async def abandon(request: Request):
            self.abandons.append(await request.json())
            return {"status": "ok"}

        @app.post("/api/diagnostics/report")
        async def diagnostics(request: Request):
            self.diagnostic_reports.append(await request.json())
            return {"status": "ok"}

        # ── Guest endpoints ──

        @app.post("/api/builds/{build_id}/authenticate")
        async def authenticate(build_id: str, request: Request):
            otp = (await request.json()).get("otp")
            if otp and self.otps.get(build_id) == otp and otp not in self.used_otps:
                self.used_otps.add(otp)
                self.auth_attempts.append((build_id, 200))
                return {"vm_token": f"vm-{build_id}"}
            self.auth_attempts.append((build_id, 401))
            return JSONResponse({"error": "invalid otp"}, status_code=401)

        @app.get("/api/builds/{build_id}/certs-secure")
        async def certs(build_id: str, request: Request):
            if request.headers.get("x-vm-token") != f"vm-{build_id}":
                return JSONResponse({"error": "bad token"}, status_code=401)
            if build_id not in self.certs:
                return JSONResponse({"error": "no certs"}, status_code=404)
            bundle = self.certs[build_id]
            if isinstance(bundle, str):
                return Response(bundle, media_type="text/html")
            return bundle

        @app.get("/api/builds/{build_id}/source")
        async def source(build_id: str, request: Request):
            if request.headers.get("x-vm-token") != f"vm-{build_id}":
                return JSONResponse({"error": "bad token"}, status_code=401)
            return Response(self.sources.get(build_id, b""), media_type="application/zip")

        @app.post("/api/builds/{build_id}/logs")
        async def logs(build_id: str, request: Request):
            self.logs[build_id].extend((await request.json())["logs"])
            return {"status": "ok"}

        @app.post("/api/builds/{build_id}/artifact")
        async def artifact(build_id: str, request: Request):
            if request.headers.get("x-vm-token") != f"vm-{build_id}":
                return JSONResponse({"error": "bad token"}, status_code=401)
            form = await request.form()
            upload = form["artifact"]
            content = await upload.read()
            self.artifacts[build_id] = (upload.filename, len(content))
            return {"status": "ok"}


class FakeProcess:
    """Stands in for the long-running ``tart run`` process."""

    def __init__(self) -> None:
        self.returncode: int | None = None
        self.killed = False
        self._exited = asyncio.Event()

    def exit(self, code: int = 0) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


class FakeTart:
    """In-memory Tart: tracks clones and hands out FakeProcess objects.

    *guest* is an optional coroutine ``guest(name, shared_dir, process)``
    started on every ``run`` to play the part of the VM.
    """

    def __init__(self, guest=None) -> None:
        self.path = "tart"
        self.vms: dict[str, str] = {TEMPLATE: "local"}
        self.processes: dict[str, FakeProcess] = {}
        self.calls: list[tuple] = []
        self.guest = guest
        self.fail_clone = False
        self.stop_exits = True
        self.stop_delay = 0.0
        self.ip_address: str | None = "192.168.64.7"
        self.version_string: str | None = "2.18.0"
        self._guest_tasks: list[asyncio.Task] = []

    async def version(self) -> str | None:
        self.calls.append(("version",))
        return self.version_string

    async def clone(self, source: str, name: str) -> None:
        self.calls.append(("clone", source, name))
        if self.fail_clone or source not in self.vms:
            raise RuntimeError(f"tart clone {source} {name} failed (1): no such VM")
        self.vms[name] = "local"

    async def run(self, name: str, shared_dir: str) -> FakeProcess:
        self.calls.append(("run", name, shared_dir))
        proc = FakeProcess()
        self.processes[name] = proc
        if self.guest is not None:
            self._guest_tasks.append(asyncio.create_task(self.guest(name, shared_dir, proc)))
        return proc

    async def ip(self, name: str, wait: float = 120) -> str | None:
        self.calls.append(("ip", name))
        proc = self.processes.get(name)
        if proc is None or proc.returncode is not None:
            return None
        return self.ip_address

    async def stop(self, name: str, timeout: float = 30) -> bool:
        self.calls.append(("stop", name))
        if self.stop_delay:
            await asyncio.sleep(self.stop_delay)
        proc = self.processes.get(name)
        if proc is not None and self.stop_exits:
            proc.exit(0)
        return name in self.vms

    async def delete(self, name: str) -> bool:
        self.calls.append(("delete", name))
        return self.vms.pop(name, None) is not None

    async def list(self) -> list[TartVM]:
        result = []
        for name, source in self.vms.items():
            proc = self.processes.get(name)
            state = "running" if proc is not None and proc.returncode is None else "stopped"
            result.append(TartVM(source=source, name=name, state=state))
        return result

    async def exists(self, name: str) -> bool:
        return name in self.vms

    def deleted(self) -> list[str]:
        return [c[1] for c in self.calls if c[0] == "delete"]


# ── Guest behaviours ──


def _write(shared_dir: str, name: str, data: dict) -> None:
    with open(os.path.join(shared_dir, name), "w") as f:
        json.dump(data, f)


def completes_after(delay: float = 0.05, progress: bool = True):
    async def guest(name, shared_dir, proc):
        if progress:
            _write(shared_dir, "progress.json", {"status": "building", "phase": "building", "progress_percent": 40, "message": "compiling"})
        await asyncio.sleep(delay)
        _write(shared_dir, "build-complete", {"status": "success", "artifact_uploaded": True})
    return guest


def fails_after(error: str, delay: float = 0.05):
    async def guest(name, shared_dir, proc):
        await asyncio.sleep(delay)
        _write(shared_dir, "build-error", {"status": "failed", "error": error})
    return guest


def dies_after(delay: float = 0.05):
    async def guest(name, shared_dir, proc):
        await asyncio.sleep(delay)
        proc.exit(1)
    return guest


async def never_finishes(name, shared_dir, proc):
    await proc.wait()


# ── Fixtures ──


@pytest.fixture
def controller() -> FakeController:
    return FakeController()


@pytest.fixture
async def client(controller):
    c = ControllerClient(
        "http://controller.test",
        TEST_API_KEY,
        transport=httpx.ASGITransport(app=controller.app),
    )
    yield c
    await c.close()


@pytest.fixture
def config(tmp_path) -> WorkerConfig:
    """Worker config with every interval shrunk so tests run in milliseconds."""
    return WorkerConfig(
        controller_url="http://controller.test",
        api_key=TEST_API_KEY,
        device_name="test-mac",
        poll_interval_seconds=0.01,
        monitor_interval_seconds=0.01,
        heartbeat_interval_seconds=0.02,
        vm_ready_timeout_seconds=1.0,
        vm_grace_seconds=0.1,
        registration_attempts=3,
        backoff_min_seconds=0.01,
        backoff_max_seconds=0.08,
        template_image=TEMPLATE,
        identity_path=str(tmp_path / "identity.toml"),
    )


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll *predicate* until it is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(interval)
