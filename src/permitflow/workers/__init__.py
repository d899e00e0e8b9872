"""Background workers for async processing tasks."""

from permitflow.workers.generation_worker import run_generation_worker
from permitflow.workers.recovery_scheduler import run_recovery_scheduler

__all__ = [
    "run_generation_worker",
    "run_recovery_scheduler",
]
