# =======================================================================================
# gate_discovery/workers/scheduler_worker.py - Background Recompute Scheduler
# =======================================================================================
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional, Union

from ..config import config
from ..models.schemas import CycleReport, OptimizationReport
from ..services.gate_engine import GateEngine

logger = logging.getLogger(__name__)

RECOMPUTE_JOB = "recompute"
OPTIMIZE_JOB = "optimize"


class SchedulerWorker:
    """
    Periodically fans recompute and optimization jobs out across all configured
    events. Events run in parallel; the engine's per-event locks keep each event serial.
    """

    def __init__(
        self,
        engine: Optional[GateEngine] = None,
        recompute_interval: Optional[float] = None,
        optimize_interval: Optional[float] = None,
        max_workers: Optional[int] = None,
    ):
        self.engine = engine
        self.recompute_interval = recompute_interval or config.RECOMPUTE_INTERVAL_SECONDS
        self.optimize_interval = optimize_interval or config.OPTIMIZE_INTERVAL_SECONDS
        self.max_workers = max_workers or config.SCHEDULER_MAX_WORKERS
        self.running = False
        self._wakeup = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Start / Stop
    # ------------------------------------------------------------------
    def start(self):
        """Start the scheduler in a background thread."""
        if not self._should_start():
            return

        self.running = True
        self._wakeup.clear()
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="gate-cycle")
        thread = threading.Thread(target=self._run_loop, daemon=True)
        thread.start()
        logger.info(
            "[scheduler] started (recompute every %ss, optimize every %ss, %d workers)",
            self.recompute_interval, self.optimize_interval, self.max_workers,
        )

    def stop(self):
        """Stop the scheduler."""
        self.running = False
        self._wakeup.set()
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------
    def _should_start(self) -> bool:
        """Check if the scheduler should start."""
        if not config.SCHEDULER_ENABLED:
            logger.debug("[scheduler] SCHEDULER_ENABLED is false; skipping background scheduler.")
            return False

        if self.engine is None:
            logger.warning("[scheduler] No gate engine attached; skipping background scheduler.")
            return False

        if self.running:
            return False

        return True

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------
    def _run_loop(self):
        """Trigger jobs whenever their interval elapses."""
        next_recompute = time.monotonic()
        next_optimize = time.monotonic() + self.optimize_interval
        while self.running:
            now = time.monotonic()
            try:
                if now >= next_recompute:
                    self.dispatch(RECOMPUTE_JOB)
                    next_recompute = now + self.recompute_interval
                if now >= next_optimize:
                    self.dispatch(OPTIMIZE_JOB)
                    next_optimize = now + self.optimize_interval
            except Exception:
                logger.exception("[scheduler] dispatch failed; retrying on next tick")
            self._wakeup.wait(max(0.0, min(next_recompute, next_optimize) - time.monotonic()))

    def dispatch(self, job: str) -> Dict[str, Union[CycleReport, OptimizationReport]]:
        """Run one job for every configured event and wait for all of them."""
        run = self.engine.recompute if job == RECOMPUTE_JOB else self.engine.optimize_thresholds
        executor = self._executor or ThreadPoolExecutor(max_workers=self.max_workers)
        try:
            futures = {event_id: executor.submit(run, event_id) for event_id in self.engine.list_events()}
            results = {}
            for event_id, future in futures.items():
                try:
                    results[event_id] = future.result()
                except Exception:
                    # one event failing must not stop the others
                    logger.exception("[scheduler] %s failed for event %s", job, event_id)
            return results
        finally:
            if executor is not self._executor:
                executor.shutdown(wait=True)


# ----------------------------------------------------------------------
# Global instance + entrypoint
# ----------------------------------------------------------------------
scheduler_worker = SchedulerWorker()


def start_scheduler_worker(engine: GateEngine):
    """Called from FastAPI startup."""
    scheduler_worker.engine = engine
    scheduler_worker.start()
