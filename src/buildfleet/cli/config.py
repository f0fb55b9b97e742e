"""CLI helpers for reaching the locally running worker."""

from __future__ import annotations

from buildfleet.config import WorkerConfig, load_config


def get_config(path: str | None = None) -> WorkerConfig:
    return load_config(path)


def get_control_url(config: WorkerConfig) -> str:
    """Base URL of the running worker's local control API."""
    return f"http://127.0.0.1:{config.control_port}"
