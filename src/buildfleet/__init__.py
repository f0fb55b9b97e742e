"""buildfleet: a fleet worker that runs builds inside ephemeral Tart VMs."""

from buildfleet.config import WorkerConfig
from buildfleet.dispatch import Worker, WorkerState

__version__ = "0.1.0"

__all__ = ["Worker", "WorkerConfig", "WorkerState", "__version__"]
