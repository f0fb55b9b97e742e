"""Host side of the shared directory mounted into each build VM.

The directory is the only channel between host and guest:

    host → guest   build-config.json, bootstrap.py, diagnostics.py
    guest → host   vm-ready, progress.json, build-complete, build-error
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import stat
import tempfile

from buildfleet.controller import BuildJob
from buildfleet.errors import GuestScriptMissingError

logger = logging.getLogger(__name__)

BUILD_CONFIG = "build-config.json"
VM_READY = "vm-ready"
PROGRESS = "progress.json"
BUILD_COMPLETE = "build-complete"
BUILD_ERROR = "build-error"

GUEST_SCRIPTS = ("bootstrap.py", "diagnostics.py")

GUEST_SOURCE_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "guest")


def prepare_shared_dir(
    job: BuildJob,
    controller_url: str,
    guest_source_dir: str = GUEST_SOURCE_DIR,
) -> str:
    """Create the per-build shared directory and populate it.

    Raises GuestScriptMissingError before anything is created if a guest
    script is not found. On a write failure the directory is removed.
    """
    missing = [s for s in GUEST_SCRIPTS if not os.path.isfile(os.path.join(guest_source_dir, s))]
    if missing:
        raise GuestScriptMissingError(
            f"Guest script(s) not found in {guest_source_dir}: {', '.join(missing)}"
        )

    shared_dir = tempfile.mkdtemp(prefix=f"buildfleet-{job.id[:8]}-")
    try:
        config = {
            "build_id": job.id,
            "build_token": job.otp,
            "controller_url": controller_url,
            "platform": job.platform,
        }
        config_path = os.path.join(shared_dir, BUILD_CONFIG)
        with open(config_path, "w") as f:
            json.dump(config, f, indent=2)
        # Holds the one-time password
        os.chmod(config_path, stat.S_IRUSR | stat.S_IWUSR | stat.S_IRGRP | stat.S_IROTH)

        for script in GUEST_SCRIPTS:
            dest = os.path.join(shared_dir, script)
            shutil.copyfile(os.path.join(guest_source_dir, script), dest)
            os.chmod(dest, 0o755)
    except OSError:
        shutil.rmtree(shared_dir, ignore_errors=True)
        raise

    logger.debug("Prepared shared directory %s for build %s", shared_dir, job.id)
    return shared_dir


def read_signal(shared_dir: str, name: str) -> dict | None:
    """Return the parsed contents of a guest signal file, or None if absent.

    Signal files that are not valid JSON still count as present; their raw
    text is returned under ``"raw"``.
    """
    path = os.path.join(shared_dir, name)
    if not os.path.exists(path):
        return None
    try:
        with open(path) as f:
            text = f.read()
    except OSError:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return {"raw": text.strip()}
    return data if isinstance(data, dict) else {"raw": data}


def read_progress(shared_dir: str) -> dict | None:
    # The guest rewrites this file in place; a half-written read is skipped
    data = read_signal(shared_dir, PROGRESS)
    if data is None or "raw" in data:
        return None
    return data


def destroy_shared_dir(shared_dir: str) -> None:
    if shared_dir and os.path.isdir(shared_dir):
        shutil.rmtree(shared_dir, ignore_errors=True)
