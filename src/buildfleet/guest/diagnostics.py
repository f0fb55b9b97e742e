"""VM diagnostics snapshot.

Shipped into the shared directory next to the bootstrap. Run it inside a
misbehaving guest to collect system, mount, log and network state into one
file.

Usage: python diagnostics.py [mount_dir]
"""

from __future__ import annotations

import getpass
import json
import os
import platform
import subprocess
import sys
from datetime import datetime, timezone
from typing import TextIO

import httpx

LOG_FILE = "/tmp/buildfleet-diagnostics.log"
MOUNT_DIR = "/Volumes/My Shared Files/build-config"
SIGNAL_FILES = ("build-config.json", "vm-ready", "progress.json", "build-error", "build-complete")
LOG_FILES = ("/tmp/buildfleet/bootstrap.log", "/var/log/buildfleet-stub.log")
TAIL_LINES = 200

# Never copy these keys into the snapshot
REDACTED_KEYS = {"build_token", "vm_token"}


def _section(out: TextIO, title: str) -> None:
    out.write(f"\n===== {title} =====\n")


def _command(out: TextIO, cmd: list[str]) -> None:
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=30)
        out.write(result.stdout or result.stderr)
    except (OSError, subprocess.TimeoutExpired) as e:
        out.write(f"{cmd[0]}: {e}\n")


def _tail(path: str, lines: int = TAIL_LINES) -> str:
    with open(path, errors="replace") as f:
        return "".join(f.readlines()[-lines:])


def _redacted(path: str) -> str:
    with open(path) as f:
        text = f.read()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(data, dict):
        data = {k: ("<redacted>" if k in REDACTED_KEYS else v) for k, v in data.items()}
    return json.dumps(data, indent=2)


def collect(out: TextIO, mount_dir: str = MOUNT_DIR, client: httpx.Client | None = None) -> None:
    out.write("buildfleet VM diagnostics\n")
    out.write(f"Timestamp: {datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')}\n")

    _section(out, "System")
    out.write(f"User: {getpass.getuser()}\n")
    out.write(f"Platform: {platform.platform()}\n")
    out.write(f"Python: {sys.version.split()[0]}\n")

    _section(out, "Disk")
    _command(out, ["df", "-h"])

    _section(out, "Build Config Mount")
    if os.path.isdir(mount_dir):
        for name in sorted(os.listdir(mount_dir)):
            out.write(f"{name}\n")
    else:
        out.write("Mount point not found\n")

    _section(out, "Signal Files")
    for name in SIGNAL_FILES:
        path = os.path.join(mount_dir, name)
        if os.path.isfile(path):
            out.write(f"--- {name} ---\n{_redacted(path)}\n")

    _section(out, "Logs")
    for path in LOG_FILES:
        if os.path.isfile(path):
            out.write(f"--- {path} (tail) ---\n{_tail(path)}")

    _section(out, "Processes")
    _command(out, ["pgrep", "-fl", "xcodebuild|node|npm|gradle|java"])

    _section(out, "Signing")
    _command(out, ["security", "find-identity", "-v", "-p", "codesigning"])

    _section(out, "Network")
    config_path = os.path.join(mount_dir, "build-config.json")
    controller_url = ""
    if os.path.isfile(config_path):
        try:
            with open(config_path) as f:
                controller_url = json.load(f).get("controller_url", "")
        except (OSError, json.JSONDecodeError):
            pass
    if controller_url:
        out.write(f"Controller URL: {controller_url}\n")
        try:
            if client is None:
                r = httpx.get(f"{controller_url}/health", timeout=10)
            else:
                r = client.get("/health")
            out.write(f"Health: HTTP {r.status_code}\n")
        except httpx.HTTPError as e:
            out.write(f"Health: unreachable ({e})\n")
    else:
        out.write("No controller URL configured\n")

    _section(out, "Done")


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    mount_dir = argv[0] if argv else MOUNT_DIR
    with open(LOG_FILE, "w") as out:
        collect(out, mount_dir)
    print(f"Diagnostics written to {LOG_FILE}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
