from __future__ import annotations

import hashlib
import logging
import os
import platform as platform_module
import queue
import socket
import sys
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from shotmatrix.constants import DEFAULT_DEVICE_POLL_SECONDS, PACKAGE_VERSION
from shotmatrix.schemas import (
    EnvironmentInfo,
    JobPhase,
    JobResult,
    JobStatus,
    RunConfig,
    RunOverrides,
    RunResult,
    RunStatus,
    RunSummary,
)
from shotmatrix.services.cancellation import CancellationToken
from shotmatrix.services.executor import JobExecutor
from shotmatrix.services.interfaces import DeviceRuntime
from shotmatrix.services.planning import RunJob, RunPlan
from shotmatrix.services.platforms import LanguageLedger
from shotmatrix.services.registry import ProcessRegistry

LOGGER = logging.getLogger("shotmatrix.orchestrator")

_WAKE = -1


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def default_parallelism(job_count: int, processor_count: Optional[int] = None) -> int:
    cpus = processor_count if processor_count is not None else (os.cpu_count() or 1)
    return max(1, min(job_count, cpus // 2))


def config_hash(config: RunConfig) -> str:
    payload = config.model_dump_json(by_alias=True).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()[:12]


def collect_environment(config: Optional[RunConfig] = None) -> EnvironmentInfo:
    return EnvironmentInfo(
        os=platform_module.platform(),
        python_version=sys.version.split()[0],
        hostname=socket.gethostname(),
        working_directory=os.getcwd(),
        version=PACKAGE_VERSION,
        config_hash=config_hash(config) if config is not None else None,
    )


class Orchestrator:
    """Fan a run plan out over worker threads and assemble the run result.

    Dispatch follows plan order, at most ``parallelism`` jobs at a time and
    never two jobs on the same simulator/emulator at once. Results land in
    slots addressed by job index, so completion order does not matter.
    """

    def __init__(
        self,
        runtime: DeviceRuntime,
        registry: ProcessRegistry,
        *,
        processor_count: Optional[int] = None,
        device_poll_seconds: float = DEFAULT_DEVICE_POLL_SECONDS,
        executor_factory: Optional[Callable[[LanguageLedger], JobExecutor]] = None,
    ) -> None:
        self._runtime = runtime
        self._registry = registry
        self._processor_count = processor_count
        self._device_poll_seconds = device_poll_seconds
        self._executor_factory = executor_factory or self._default_executor

    def _default_executor(self, ledger: LanguageLedger) -> JobExecutor:
        return JobExecutor(
            self._runtime,
            self._registry,
            ledger=ledger,
            device_poll_seconds=self._device_poll_seconds,
        )

    def parallelism(self, job_count: int, overrides: Optional[RunOverrides] = None) -> int:
        if overrides is not None and overrides.max_parallel:
            return max(1, min(job_count, overrides.max_parallel))
        return default_parallelism(job_count, self._processor_count)

    def execute(
        self,
        plan: RunPlan,
        config: RunConfig,
        overrides: Optional[RunOverrides] = None,
        token: Optional[CancellationToken] = None,
        *,
        run_id: Optional[str] = None,
        on_job_finished: Optional[Callable[[JobResult], None]] = None,
    ) -> RunResult:
        overrides = overrides or RunOverrides()
        token = token or CancellationToken()
        run_id = run_id or uuid.uuid4().hex[:8]
        started_at = _utcnow()
        started_clock = time.monotonic()

        executor = self._executor_factory(LanguageLedger())
        limit = self.parallelism(len(plan.jobs), overrides)
        LOGGER.info("Starting run %s: %d jobs, parallelism %d", run_id, len(plan.jobs), limit)

        slots: List[Optional[JobResult]] = [None] * len(plan.jobs)
        completion_queue: "queue.Queue[Tuple[int, Optional[JobResult]]]" = queue.Queue()
        token.on_cancel(lambda: completion_queue.put((_WAKE, None)))

        pending: Deque[RunJob] = deque(plan.jobs)
        active: Dict[int, Tuple[RunJob, threading.Thread]] = {}
        busy_devices: Set[str] = set()

        while active or (pending and not token.cancelled):
            while not token.cancelled and len(active) < limit:
                job = self._next_dispatchable(pending, busy_devices)
                if job is None:
                    break
                thread = threading.Thread(
                    target=self._run_job,
                    args=(executor, job, config, overrides, token, completion_queue),
                    daemon=True,
                    name=f"shotmatrix-{job.job_id}",
                )
                busy_devices.add(job.device_key)
                active[job.index] = (job, thread)
                thread.start()

            if not active:
                break

            try:
                index, job_result = completion_queue.get(timeout=1.0)
            except queue.Empty:
                continue
            if index == _WAKE:
                continue

            job, thread = active.pop(index)
            busy_devices.discard(job.device_key)
            thread.join()
            slots[index] = job_result
            if on_job_finished is not None:
                try:
                    on_job_finished(job_result)
                except Exception:
                    LOGGER.exception("Job completion callback failed for %s", job.job_id)

        for job in pending:
            slots[job.index] = self._not_started_result(job, token.reason)
        if pending:
            LOGGER.info("Run %s: %d jobs were never dispatched", run_id, len(pending))

        leftovers = [key for key in self._registry.keys() if key.split(":", 1)[0] in {job.job_id for job in plan.jobs}]
        if leftovers:
            LOGGER.warning("Run %s left registered resources behind: %s", run_id, ", ".join(leftovers))

        return self._assemble(
            run_id=run_id,
            plan=plan,
            config=config,
            jobs=[slot for slot in slots if slot is not None],
            token=token,
            started_at=started_at,
            duration=time.monotonic() - started_clock,
        )

    @staticmethod
    def _next_dispatchable(pending: Deque[RunJob], busy_devices: Set[str]) -> Optional[RunJob]:
        for job in pending:
            if job.device_key not in busy_devices:
                pending.remove(job)
                return job
        return None

    def _run_job(
        self,
        executor: JobExecutor,
        job: RunJob,
        config: RunConfig,
        overrides: RunOverrides,
        token: CancellationToken,
        completion_queue: "queue.Queue[Tuple[int, Optional[JobResult]]]",
    ) -> None:
        started_at = _utcnow()
        try:
            result = executor.execute(job, config, token, overrides)
        except BaseException as exc:
            # a worker must always post a completion or execute() never returns
            LOGGER.exception("Worker for %s crashed", job.job_id)
            result = JobResult(
                index=job.index,
                job_id=job.job_id,
                platform=job.platform,
                device=job.device_name,
                folder=job.folder,
                language=job.language,
                output_dir=str(job.output_dir),
                status=JobStatus.failed,
                phases=[JobPhase.pending, JobPhase.failed],
                started_at=started_at,
                ended_at=_utcnow(),
                error=f"Job worker crashed: {type(exc).__name__}: {exc}",
            )
        completion_queue.put((job.index, result))

    @staticmethod
    def _not_started_result(job: RunJob, reason: Optional[str]) -> JobResult:
        return JobResult(
            index=job.index,
            job_id=job.job_id,
            platform=job.platform,
            device=job.device_name,
            folder=job.folder,
            language=job.language,
            output_dir=str(job.output_dir),
            status=JobStatus.cancelled,
            phases=[JobPhase.pending, JobPhase.cancelled],
            error=f"Not started: {reason or 'run cancelled'}",
        )

    def _assemble(
        self,
        *,
        run_id: str,
        plan: RunPlan,
        config: RunConfig,
        jobs: List[JobResult],
        token: CancellationToken,
        started_at: str,
        duration: float,
    ) -> RunResult:
        counts = {status: 0 for status in JobStatus}
        for job in jobs:
            counts[job.status] += 1
        touched = [job for job in jobs if job.started_at is not None]
        summary = RunSummary(
            total_jobs=len(jobs),
            succeeded=counts[JobStatus.success],
            failed=counts[JobStatus.failed],
            cancelled=counts[JobStatus.cancelled],
            platforms=sorted({job.platform.value for job in touched}),
            devices=sorted({job.device for job in touched}),
            languages=sorted({job.language for job in touched}),
            screenshots=sum(len(job.screenshots) for job in jobs),
        )

        success = bool(jobs) and all(job.status == JobStatus.success for job in jobs)
        if success:
            status = RunStatus.success
            error_message = None
        elif token.cancelled:
            status = RunStatus.cancelled
            error_message = f"Run cancelled: {token.reason or 'cancellation requested'}"
        elif summary.succeeded:
            status = RunStatus.partial_success
            error_message = f"{summary.failed} of {summary.total_jobs} jobs failed"
        else:
            status = RunStatus.failed
            error_message = f"{summary.failed} of {summary.total_jobs} jobs failed"

        LOGGER.info(
            "Completed run %s: %s (succeeded=%s failed=%s cancelled=%s)",
            run_id,
            status.value,
            summary.succeeded,
            summary.failed,
            summary.cancelled,
        )
        return RunResult(
            run_id=run_id,
            started_at=started_at,
            ended_at=_utcnow(),
            duration_seconds=round(duration, 3),
            success=success,
            status=status,
            summary=summary,
            jobs=jobs,
            environment=collect_environment(config),
            output_root=str(plan.output_root),
            error_message=error_message,
        )
