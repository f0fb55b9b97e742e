"""In-VM build bootstrap.

Copied into the shared directory by the host and executed by the stub inside
the guest. It must stay self-contained: the guest image provides a Python
interpreter and httpx, nothing from the buildfleet package.

Sequence:
  1. Read and validate build-config.json
  2. Exchange the one-time password for a VM token
  3. Fetch and install signing material (iOS only; 404 means unsigned)
  4. Write vm-ready
  5. Download source, run the platform build, stream logs
  6. Upload the artifact, then write build-complete (or build-error)

Usage: python bootstrap.py [mount_dir]
"""

from __future__ import annotations

import base64
import collections
import json
import logging
import os
import re
import secrets
import shutil
import subprocess
import sys
import tempfile
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

import httpx

logger = logging.getLogger("buildfleet.bootstrap")

MOUNT_DIR = "/Volumes/My Shared Files/build-config"
WORK_DIR = "/tmp/buildfleet"
CERT_INSTALLER = "/usr/local/bin/install-signing-certs"

BUILD_ID_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
CONTROLLER_URL_RE = re.compile(r"^https?://[a-zA-Z0-9._:-]+(/[a-zA-Z0-9._/-]*)?$")
TOKEN_RE = re.compile(r"^[a-zA-Z0-9_.=+/-]+$")
PLATFORMS = {"ios", "android"}
SIGNING_PLATFORMS = {"ios"}

LOG_BATCH_SIZE = 50
LOG_TAIL_LINES = 50


class BootstrapError(Exception):
    """A failure that ends the build; its message is reported in build-error."""


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def write_json(path: str, data: dict) -> None:
    """Replace *path* atomically so the host never reads a partial file."""
    tmp = f"{path}.tmp"
    with open(tmp, "w") as f:
        json.dump(data, f)
    os.replace(tmp, path)


def _json_object(r: httpx.Response, what: str) -> dict:
    """Decode a JSON object body, or fail the build if the body is anything else."""
    try:
        body = r.json()
    except ValueError as e:
        raise BootstrapError(f"{what} returned an invalid response: {e}") from e
    if not isinstance(body, dict):
        raise BootstrapError(f"{what} returned an invalid response")
    return body


def secure_delete(path: str) -> None:
    """Overwrite then remove *path*; plain removal if shred is unavailable."""
    if not os.path.exists(path):
        return
    try:
        subprocess.run(["shred", "-u", "-n", "3", path], check=True, capture_output=True)
    except (OSError, subprocess.CalledProcessError):
        pass
    if os.path.exists(path):
        os.remove(path)


@dataclass(frozen=True)
class BuildConfig:
    build_id: str
    build_token: str
    controller_url: str
    platform: str

    @staticmethod
    def load(path: str) -> BuildConfig:
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise BootstrapError(f"Cannot read build config: {e}") from e

        config = BuildConfig(
            build_id=str(data.get("build_id", "")),
            build_token=str(data.get("build_token", "")),
            controller_url=str(data.get("controller_url", "")).rstrip("/"),
            platform=str(data.get("platform", "")),
        )
        config.validate()
        return config

    def validate(self) -> None:
        if not BUILD_ID_RE.match(self.build_id):
            raise BootstrapError("Invalid build_id in build config")
        if not TOKEN_RE.match(self.build_token):
            raise BootstrapError("Invalid build_token in build config")
        if not CONTROLLER_URL_RE.match(self.controller_url):
            raise BootstrapError("Invalid controller_url in build config")
        if self.platform not in PLATFORMS:
            raise BootstrapError(f"Unsupported platform: {self.platform!r}")


class LogStreamer:
    """Buffers build output and ships it to the controller in batches."""

    def __init__(self, client: httpx.Client, build_id: str, batch_size: int = LOG_BATCH_SIZE) -> None:
        self.client = client
        self.build_id = build_id
        self.batch_size = batch_size
        self.vm_token: str | None = None
        self.tail: collections.deque[str] = collections.deque(maxlen=LOG_TAIL_LINES)
        self._pending: list[dict] = []

    def add(self, message: str, level: str = "info") -> None:
        self.tail.append(message)
        self._pending.append({"level": level, "message": message})
        if len(self._pending) >= self.batch_size:
            self.flush()

    def flush(self) -> None:
        if not self._pending or not self.vm_token:
            return
        batch, self._pending = self._pending, []
        try:
            r = self.client.post(
                f"/api/builds/{self.build_id}/logs",
                json={"logs": batch},
                headers={"X-VM-Token": self.vm_token},
            )
            if r.status_code != 200:
                logger.warning("Log upload returned %d", r.status_code)
        except httpx.HTTPError as e:
            logger.warning("Log upload failed: %s", e)


def run_streaming(cmd: list[str], cwd: str, on_line: Callable[[str], None], env: dict | None = None) -> int:
    """Run *cmd*, feeding each output line to *on_line*. Returns the exit code."""
    proc = subprocess.Popen(
        cmd,
        cwd=cwd,
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    )
    assert proc.stdout is not None
    for line in proc.stdout:
        on_line(line.rstrip("\n"))
    return proc.wait()


CommandRunner = Callable[[list[str], str, Callable[[str], None]], int]


class Bootstrap:
    def __init__(
        self,
        config: BuildConfig,
        mount_dir: str = MOUNT_DIR,
        work_dir: str = WORK_DIR,
        client: httpx.Client | None = None,
        runner: CommandRunner = run_streaming,
        cert_installer: str = CERT_INSTALLER,
    ) -> None:
        self.config = config
        self.mount_dir = mount_dir
        self.work_dir = work_dir
        self.client = client or httpx.Client(base_url=config.controller_url, timeout=60.0)
        self.runner = runner
        self.cert_installer = cert_installer
        self.vm_token: str | None = None
        self.logs = LogStreamer(self.client, config.build_id)

    def _path(self, name: str) -> str:
        return os.path.join(self.mount_dir, name)

    def _headers(self) -> dict[str, str]:
        return {"X-VM-Token": self.vm_token or ""}

    def progress(self, phase: str, percent: int, message: str) -> None:
        write_json(
            self._path("progress.json"),
            {
                "status": "building",
                "phase": phase,
                "progress_percent": percent,
                "message": message,
                "updated_at": _now(),
            },
        )

    # ── Handshake ──

    def authenticate(self) -> str:
        r = self.client.post(
            f"/api/builds/{self.config.build_id}/authenticate",
            json={"otp": self.config.build_token},
        )
        if r.status_code != 200:
            raise BootstrapError(f"Authentication failed (HTTP {r.status_code})")
        token = _json_object(r, "Authentication").get("vm_token")
        if not token:
            raise BootstrapError("Authentication response missing vm_token")
        self.vm_token = token
        self.logs.vm_token = token
        return token

    def fetch_certs(self) -> dict | None:
        """Return the signing bundle, or None when the build is unsigned."""
        r = self.client.get(f"/api/builds/{self.config.build_id}/certs-secure", headers=self._headers())
        if r.status_code == 404:
            logger.info("No signing certificates for build, proceeding unsigned")
            return None
        if r.status_code != 200:
            raise BootstrapError(f"Certificate fetch failed (HTTP {r.status_code})")
        return _json_object(r, "Certificate fetch")

    def install_certs(self, bundle: dict) -> None:
        cert_dir = tempfile.mkdtemp(prefix="certs-")
        written: list[str] = []
        try:
            p12_path = os.path.join(cert_dir, "cert.p12")
            with open(p12_path, "wb") as f:
                f.write(base64.b64decode(bundle["p12"]))
            written.append(p12_path)

            profiles = []
            for i, profile in enumerate(bundle.get("provisioningProfiles", [])):
                path = os.path.join(cert_dir, f"profile-{i}.mobileprovision")
                with open(path, "wb") as f:
                    f.write(base64.b64decode(profile))
                written.append(path)
                profiles.append(path)

            keychain_password = base64.b64decode(bundle.get("keychainPassword", "")).decode()
            env = dict(os.environ)
            env["P12_PASSWORD"] = bundle.get("p12Password", "")
            env["KEYCHAIN_PASSWORD"] = keychain_password
            rc = subprocess.run([self.cert_installer, p12_path, *profiles], env=env, capture_output=True).returncode
            if rc != 0:
                raise BootstrapError(f"Certificate installation failed (exit {rc})")
        except (KeyError, ValueError, OSError) as e:
            raise BootstrapError(f"Invalid signing bundle: {e}") from e
        finally:
            for path in written:
                secure_delete(path)
            shutil.rmtree(cert_dir, ignore_errors=True)

    def signal_ready(self) -> None:
        # Fresh verification token; the real VM token never touches the mount
        write_json(self._path("vm-ready"), {"status": "ready", "vm_token": secrets.token_hex(32)})

    # ── Build ──

    def download_source(self) -> str:
        workspace = os.path.join(self.work_dir, "workspace")
        os.makedirs(workspace, exist_ok=True)
        archive = os.path.join(self.work_dir, "source.zip")
        try:
            with self.client.stream(
                "GET", f"/api/builds/{self.config.build_id}/source", headers=self._headers()
            ) as r:
                if r.status_code != 200:
                    raise BootstrapError(f"Source download failed (HTTP {r.status_code})")
                with open(archive, "wb") as f:
                    for chunk in r.iter_bytes():
                        f.write(chunk)
            with zipfile.ZipFile(archive) as zf:
                zf.extractall(workspace)
        except zipfile.BadZipFile as e:
            raise BootstrapError(f"Extraction failed: {e}") from e
        finally:
            secure_delete(archive)
        return workspace

    def _run(self, cmd: list[str], cwd: str, failure: str) -> None:
        self.logs.add(f"$ {' '.join(cmd)}")
        rc = self.runner(cmd, cwd, self.logs.add)
        if rc != 0:
            raise BootstrapError(f"{failure} (exit {rc})")

    def build(self, workspace: str) -> str:
        """Run the platform build in *workspace* and return the artifact path."""
        if os.path.exists(os.path.join(workspace, "package.json")):
            self.progress("building", 22, "Installing npm dependencies...")
            try:
                self._run(["npm", "ci"], workspace, "npm ci failed")
            except BootstrapError:
                self._run(["npm", "install"], workspace, "npm install failed")

        if _is_expo(workspace):
            self.progress("building", 25, "Running Expo prebuild...")
            self._run(
                ["npx", "expo", "prebuild", "--platform", self.config.platform, "--no-install"],
                workspace,
                "Expo prebuild failed",
            )

        if self.config.platform == "ios":
            return self._build_ios(workspace)
        return self._build_android(workspace)

    def _build_ios(self, workspace: str) -> str:
        self.progress("building", 30, "Running xcodebuild...")
        project = _find_xcode_project(workspace)
        if project is None:
            raise BootstrapError("No Xcode workspace or project found")
        flag = "-workspace" if project.endswith(".xcworkspace") else "-project"
        scheme = os.path.splitext(os.path.basename(project))[0]
        archive = os.path.join(self.work_dir, "app.xcarchive")
        self._run(
            ["xcodebuild", flag, project, "-scheme", scheme, "-configuration", "Release",
             "-archivePath", archive, "archive"],
            workspace,
            "xcodebuild archive failed",
        )
        self.progress("building", 70, "Exporting IPA...")
        self._run(
            ["xcodebuild", "-exportArchive", "-archivePath", archive, "-exportPath", self.work_dir,
             "-exportOptionsPlist", "exportOptions.plist"],
            workspace,
            "IPA export failed",
        )
        return os.path.join(self.work_dir, "App.ipa")

    def _build_android(self, workspace: str) -> str:
        self.progress("building", 30, "Running Gradle...")
        gradlew = os.path.join(workspace, "gradlew")
        if not os.path.exists(gradlew):
            raise BootstrapError("gradlew not found")
        os.chmod(gradlew, 0o755)
        self._run(["./gradlew", "assembleRelease"], workspace, "Gradle build failed")
        return os.path.join(workspace, "app", "build", "outputs", "apk", "release", "app-release.apk")

    def upload_artifact(self, path: str) -> None:
        if not os.path.isfile(path):
            raise BootstrapError(f"Artifact not found: {path}")
        with open(path, "rb") as f:
            r = self.client.post(
                f"/api/builds/{self.config.build_id}/artifact",
                files={"artifact": (os.path.basename(path), f, "application/octet-stream")},
                headers=self._headers(),
                timeout=600.0,
            )
        if r.status_code != 200:
            raise BootstrapError(f"Artifact upload failed (HTTP {r.status_code})")

    # ── Entry ──

    def run(self) -> int:
        ready = False
        try:
            self.authenticate()
            if self.config.platform in SIGNING_PLATFORMS:
                bundle = self.fetch_certs()
                if bundle is not None:
                    self.install_certs(bundle)
            self.signal_ready()
            ready = True

            self.progress("downloading_source", 10, "Downloading source code...")
            workspace = self.download_source()
            self.progress("building", 20, "Source extracted, starting build...")
            artifact = self.build(workspace)

            self.logs.flush()
            self.progress("uploading_artifacts", 80, "Uploading artifact...")
            self.upload_artifact(artifact)
        except (BootstrapError, httpx.HTTPError, OSError, ValueError) as e:
            logger.error("Build failed: %s", e)
            self.logs.add(str(e), level="error")
            self.logs.flush()
            if not ready:
                write_json(self._path("vm-ready"), {"status": "failed", "error": str(e)})
            write_json(
                self._path("build-error"),
                {
                    "status": "failed",
                    "completed_at": _now(),
                    "error": str(e),
                    "log_tail": list(self.logs.tail),
                    "artifact_uploaded": False,
                },
            )
            return 1

        write_json(
            self._path("build-complete"),
            {"status": "success", "completed_at": _now(), "artifact_uploaded": True},
        )
        return 0


def _is_expo(workspace: str) -> bool:
    path = os.path.join(workspace, "app.json")
    if not os.path.exists(path):
        return False
    try:
        with open(path) as f:
            return "expo" in json.load(f)
    except (OSError, json.JSONDecodeError):
        return False


def _find_xcode_project(workspace: str) -> str | None:
    # Prefer a workspace over a bare project; search at most two levels deep
    for suffix in (".xcworkspace", ".xcodeproj"):
        for root, dirs, _ in os.walk(workspace):
            rel = os.path.relpath(root, workspace)
            depth = 0 if rel == "." else rel.count(os.sep) + 1
            dirs.sort()
            for d in dirs:
                if d.endswith(suffix):
                    return os.path.join(root, d)
            if depth >= 1:
                dirs[:] = []
    return None


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    mount_dir = argv[0] if argv else MOUNT_DIR
    os.makedirs(WORK_DIR, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        handlers=[logging.StreamHandler(), logging.FileHandler(os.path.join(WORK_DIR, "bootstrap.log"))],
    )

    try:
        config = BuildConfig.load(os.path.join(mount_dir, "build-config.json"))
    except BootstrapError as e:
        logger.error("%s", e)
        write_json(os.path.join(mount_dir, "vm-ready"), {"status": "failed", "error": str(e)})
        write_json(
            os.path.join(mount_dir, "build-error"),
            {"status": "failed", "completed_at": _now(), "error": str(e), "artifact_uploaded": False},
        )
        return 1

    return Bootstrap(config, mount_dir=mount_dir).run()


if __name__ == "__main__":
    sys.exit(main())
