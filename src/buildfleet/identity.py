"""Worker identity and session persistence.

The controller is the sole authority for worker IDs; nothing here generates
one. The identity file is replaced atomically (temp file + os.replace) so a
crash mid-write leaves the previous identity intact.
"""

from __future__ import annotations

import logging
import os
import stat
import tempfile
import tomllib
from dataclasses import dataclass

import tomli_w

from buildfleet.errors import PersistenceError

logger = logging.getLogger(__name__)


@dataclass
class WorkerIdentity:
    device_name: str
    api_key: str
    worker_id: str | None = None


@dataclass(frozen=True)
class Session:
    access_token: str
    issued_for_worker_id: str


class IdentityStore:
    """Reads and writes the controller-assigned worker id and session token."""

    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> tuple[str | None, Session | None]:
        if not os.path.exists(self.path):
            return None, None
        try:
            with open(self.path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError):
            logger.warning("Identity file %s unreadable, starting unregistered", self.path)
            return None, None

        worker_id = data.get("worker_id") or None
        session = None
        raw = data.get("session", {})
        token = raw.get("access_token")
        issued_for = raw.get("worker_id")
        # A token issued for a different worker id is useless
        if token and worker_id and issued_for == worker_id:
            session = Session(access_token=token, issued_for_worker_id=issued_for)
        return worker_id, session

    def save(self, worker_id: str | None, session: Session | None) -> None:
        data: dict = {}
        if worker_id:
            data["worker_id"] = worker_id
        if session is not None:
            data["session"] = {
                "access_token": session.access_token,
                "worker_id": session.issued_for_worker_id,
            }

        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = ""
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".identity-", dir=directory)
            with os.fdopen(fd, "wb") as f:
                tomli_w.dump(data, f)
            os.chmod(tmp_path, stat.S_IRUSR | stat.S_IWUSR)
            os.replace(tmp_path, self.path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise PersistenceError(f"Failed to persist worker identity to {self.path}: {e}") from e
