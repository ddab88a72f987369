from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from shotmatrix.schemas import JobResult, RunConfig, RunOverrides, RunState, RunStatus
from shotmatrix.services.cancellation import CancellationToken
from shotmatrix.services.manifest import ManifestWriter
from shotmatrix.services.orchestrator import Orchestrator
from shotmatrix.services.planning import RunPlan
from shotmatrix.services.storage import RunRepository

LOGGER = logging.getLogger("shotmatrix.run_manager")

FINAL_STATES = {
    RunStatus.success: RunState.finished,
    RunStatus.partial_success: RunState.failed,
    RunStatus.failed: RunState.failed,
    RunStatus.cancelled: RunState.cancelled,
}


@dataclass
class QueuedRun:
    run_id: str
    plan: RunPlan
    config: RunConfig
    overrides: RunOverrides
    token: CancellationToken


class RunManager:
    """Queue planned runs and execute them one at a time on a background thread."""

    def __init__(
        self,
        repo: RunRepository,
        orchestrator: Orchestrator,
        *,
        manifest_writer: Optional[ManifestWriter] = None,
        auto_start: bool = True,
    ) -> None:
        self._repo = repo
        self._orchestrator = orchestrator
        self._manifest_writer = manifest_writer or ManifestWriter()
        self._queue: "queue.Queue[str]" = queue.Queue()
        self._runs: Dict[str, QueuedRun] = {}
        self._lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None
        self._auto_start = auto_start

    def submit(self, plan: RunPlan, config: RunConfig, overrides: Optional[RunOverrides] = None) -> Dict[str, object]:
        record = self._repo.create_run(
            {
                "output_root": str(plan.output_root),
                "total_jobs": len(plan.jobs),
                "state": RunState.queued.value,
            }
        )
        queued = QueuedRun(
            run_id=record["id"],
            plan=plan,
            config=config,
            overrides=overrides or RunOverrides(),
            token=CancellationToken(),
        )
        with self._lock:
            self._runs[queued.run_id] = queued
        LOGGER.info("Queued run %s with %d jobs", queued.run_id, len(plan.jobs))
        if self._auto_start:
            self._queue.put(queued.run_id)
            self._ensure_worker()
        return record

    def execute_now(self, run_id: str) -> None:
        """Execute a queued run immediately in the current thread (used by tests)."""
        self._process_run(run_id)

    def cancel(self, run_id: str) -> bool:
        with self._lock:
            queued = self._runs.get(run_id)
        if queued is None:
            return False
        queued.token.cancel(f"run {run_id} cancelled by request")
        return True

    def _ensure_worker(self) -> None:
        if self._worker and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._run_loop, daemon=True, name="shotmatrix-run-manager")
        self._worker.start()

    def _run_loop(self) -> None:
        while True:
            run_id = self._queue.get()
            try:
                self._process_run(run_id)
            except Exception:
                LOGGER.exception("Unhandled error while processing run %s", run_id)
            finally:
                self._queue.task_done()

    def _process_run(self, run_id: str) -> None:
        with self._lock:
            queued = self._runs.get(run_id)
        if queued is None:
            LOGGER.warning("Run %s is not queued; skipping", run_id)
            return

        try:
            if queued.token.cancelled:
                LOGGER.info("Run %s was cancelled before start", run_id)
                self._repo.update_run(run_id, {"state": RunState.cancelled.value, "note": "Cancelled before start"})
                return

            self._repo.update_run(run_id, {"state": RunState.running.value})
            completed = {"count": 0}

            def _progress(job_result: JobResult) -> None:
                completed["count"] += 1
                self._repo.update_run(run_id, {"completed_jobs": completed["count"]})

            try:
                result = self._orchestrator.execute(
                    queued.plan,
                    queued.config,
                    queued.overrides,
                    queued.token,
                    run_id=run_id,
                    on_job_finished=_progress,
                )
            except Exception as exc:
                LOGGER.exception("Run %s aborted", run_id)
                self._repo.update_run(run_id, {"state": RunState.failed.value, "note": f"Run aborted: {exc}"})
                return

            try:
                self._manifest_writer.write(result)
            except OSError as exc:
                LOGGER.warning("Could not write manifest for run %s: %s", run_id, exc)

            self._repo.update_run(
                run_id,
                {
                    "state": FINAL_STATES[result.status].value,
                    "note": result.error_message,
                    "result": result.model_dump(mode="json"),
                },
            )
        finally:
            with self._lock:
                self._runs.pop(run_id, None)


_run_manager: Optional[RunManager] = None


def install_run_manager(manager: Optional[RunManager]) -> None:
    global _run_manager
    _run_manager = manager


def get_run_manager() -> Optional[RunManager]:
    """FastAPI dependency; ``None`` until a device runtime has been configured."""
    return _run_manager
