"""Worker configuration: defaults, ~/.buildfleet/config.toml, BUILDFLEET_* env vars.

Precedence (lowest to highest): dataclass defaults, the TOML file, the
environment. The file is written with 0600 permissions because it holds the
controller API key.
"""

from __future__ import annotations

import os
import stat
import tomllib
from dataclasses import asdict, dataclass, fields

import tomli_w


CONFIG_DIR = os.path.expanduser(os.environ.get("BUILDFLEET_HOME", "~/.buildfleet"))
CONFIG_PATH = os.path.join(CONFIG_DIR, "config.toml")
IDENTITY_PATH = os.path.join(CONFIG_DIR, "identity.toml")

ENV_PREFIX = "BUILDFLEET_"

_TRUE = {"1", "true", "yes", "on"}


@dataclass
class WorkerConfig:
    # Controller settings
    controller_url: str = "http://localhost:4000"
    api_key: str = ""
    device_name: str = ""
    poll_interval_seconds: float = 30.0

    # Resource limits
    max_concurrent_builds: int = 1
    max_cpu_percent: float = 70.0
    max_memory_gb: float = 8.0
    vm_disk_size_gb: float = 50.0

    # VM settings
    tart_path: str = "/opt/homebrew/bin/tart"
    template_image: str = "buildfleet-macos-xcode"
    reuse_vms: bool = False
    cleanup_after_build: bool = True
    build_timeout_minutes: int = 120
    vm_ready_timeout_seconds: float = 300.0
    vm_grace_seconds: float = 30.0
    monitor_interval_seconds: float = 5.0
    heartbeat_interval_seconds: float = 20.0

    # Registration retry policy
    registration_attempts: int = 10
    backoff_min_seconds: float = 1.0
    backoff_max_seconds: float = 60.0

    # Local control API (status / stop)
    control_port: int = 8765

    identity_path: str = IDENTITY_PATH

    @property
    def build_timeout_seconds(self) -> float:
        return self.build_timeout_minutes * 60.0

    @staticmethod
    def from_env(base: WorkerConfig | None = None) -> WorkerConfig:
        """Overlay BUILDFLEET_<FIELD> environment variables on *base*."""
        config = base if base is not None else WorkerConfig()
        for f in fields(config):
            raw = os.environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            setattr(config, f.name, _coerce(getattr(config, f.name), raw))
        return config

    def to_dict(self) -> dict:
        return asdict(self)


def _coerce(current: object, raw: str) -> object:
    # bool must be tested before int: bool is a subclass of int
    if isinstance(current, bool):
        return raw.strip().lower() in _TRUE
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


def load_config(path: str | None = None) -> WorkerConfig:
    """Load the config file (if present), then apply env overrides."""
    path = path or CONFIG_PATH
    data: dict = {}
    if os.path.exists(path):
        with open(path, "rb") as f:
            data = tomllib.load(f)

    known = {f.name for f in fields(WorkerConfig)}
    config = WorkerConfig(**{k: v for k, v in data.items() if k in known})
    return WorkerConfig.from_env(config)


def save_config(config: WorkerConfig, path: str | None = None) -> None:
    """Write the config file with restricted permissions (0600)."""
    path = path or CONFIG_PATH
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        tomli_w.dump(config.to_dict(), f)
    os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
