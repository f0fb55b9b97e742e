"""Minimal VM stub, baked into the template image.

Locks the guest down, waits for the shared directory, then replaces itself
with the bootstrap shipped by the worker. All build logic lives in that
bootstrap so the image rarely needs rebuilding.

Usage: python stub.py
"""

from __future__ import annotations

import logging
import os
import secrets
import subprocess
import sys
import time
from typing import Callable

logger = logging.getLogger("buildfleet.stub")

LOG_FILE = "/var/log/buildfleet-stub.log"
MOUNT_DIR = "/Volumes/My Shared Files/build-config"
BOOTSTRAP = "bootstrap.py"
AUTHORIZED_KEYS = "/Users/admin/.ssh/authorized_keys"
MOUNT_TIMEOUT = 60


class StubError(Exception):
    pass


def randomize_password(user: str = "admin", run: Callable = subprocess.run) -> None:
    """Replace the image's known admin password with 32 random bytes."""
    password = secrets.token_urlsafe(32)
    result = run(
        ["sudo", "chpasswd"],
        input=f"{user}:{password}",
        text=True,
        capture_output=True,
    )
    if result.returncode != 0:
        raise StubError("Failed to randomize admin password")
    logger.info("Admin password randomized")


def remove_authorized_keys(path: str = AUTHORIZED_KEYS) -> None:
    if os.path.exists(path):
        os.remove(path)
        logger.info("SSH authorized_keys removed")
    else:
        logger.info("No authorized_keys found")


def wait_for_mount(
    mount_dir: str = MOUNT_DIR,
    timeout: int = MOUNT_TIMEOUT,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    for waited in range(1, timeout + 1):
        if os.path.isdir(mount_dir):
            logger.info("Mount point available (waited %ds)", waited)
            return
        sleep(1)
    raise StubError(f"Mount point not available after {timeout}s")


def exec_bootstrap(mount_dir: str = MOUNT_DIR, execv: Callable = os.execv) -> None:
    script = os.path.join(mount_dir, BOOTSTRAP)
    if not os.path.isfile(script):
        raise StubError(f"Bootstrap script not found at {script}")
    logger.info("Replacing this process with %s", script)
    execv(sys.executable, [sys.executable, script, mount_dir])


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(message)s",
        handlers=[logging.StreamHandler(), logging.FileHandler(LOG_FILE)],
    )
    try:
        randomize_password()
        remove_authorized_keys()
        wait_for_mount()
        exec_bootstrap()
    except (StubError, OSError) as e:
        logger.error("ERROR: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
