from .lifecycle import WorkerLifecycleTracker
from .processor import JobProcessor
from .runner import WorkerRunner

__all__ = [
    "JobProcessor",
    "WorkerLifecycleTracker",
    "WorkerRunner",
]
