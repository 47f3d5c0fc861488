# =======================================================================================
# gate_discovery/workers/__init__.py - Workers Package
# =======================================================================================
from .scheduler_worker import SchedulerWorker, start_scheduler_worker

__all__ = ["SchedulerWorker", "start_scheduler_worker"]
