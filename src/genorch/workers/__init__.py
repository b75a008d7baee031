"""Background workers for periodic reconciliation tasks."""

from genorch.workers.training_monitor import (
    SweepResult,
    TrainingMonitor,
    run_locked_sweep,
    run_training_monitor,
)

__all__ = [
    "SweepResult",
    "TrainingMonitor",
    "run_locked_sweep",
    "run_training_monitor",
]
