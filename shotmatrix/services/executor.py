from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from shotmatrix.constants import (
    DEFAULT_DEVICE_POLL_SECONDS,
    JOB_LOG_FILENAME,
    LOG_TRUNCATION_MARKER,
    MAX_DEVICE_LOG_BYTES,
)
from shotmatrix.errors import JobCancelledError, JobError, ProvisioningError, TeardownError
from shotmatrix.schemas import (
    FailureArtifact,
    FailureArtifactKind,
    JobPhase,
    JobResult,
    JobStatus,
    RunConfig,
    RunOverrides,
)
from shotmatrix.services.actions import ActionRunner
from shotmatrix.services.artifacts import OutputLayout
from shotmatrix.services.cancellation import CancellationToken
from shotmatrix.services.interfaces import DeviceRuntime
from shotmatrix.services.planning import RunJob
from shotmatrix.services.platforms import LanguageLedger, PlatformHandler, platform_for
from shotmatrix.services.registry import ManagedDevice, ManagedServer, ProcessRegistry
from shotmatrix.services.validation import ImageValidator

LOGGER = logging.getLogger("shotmatrix.executor")

TERMINAL_PHASES = {JobPhase.succeeded, JobPhase.failed, JobPhase.cancelled}


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def truncate_log(text: str, max_bytes: int = MAX_DEVICE_LOG_BYTES) -> str:
    """Keep the tail of ``text`` within ``max_bytes`` UTF-8 bytes, prefixed by a marker."""
    data = text.encode("utf-8")
    if len(data) <= max_bytes:
        return text
    tail = data[-max_bytes:].decode("utf-8", errors="ignore")
    return LOG_TRUNCATION_MARKER + tail


@dataclass
class JobContext:
    job: RunJob
    handler: PlatformHandler
    log_path: Path
    server_url: str
    external_server: bool = False
    server_started: bool = False
    device_id: Optional[str] = None
    session: Optional[object] = None
    artifacts_captured: bool = False
    teardown_notes: List[str] = field(default_factory=list)

    @property
    def server_key(self) -> str:
        return f"{self.job.job_id}:server"

    @property
    def device_key(self) -> str:
        return f"{self.job.job_id}:device"


class JobExecutor:
    """Run a single job through provisioning, actions, validation and teardown.

    ``execute`` never raises for job-scoped problems; every outcome comes back
    as a finalized ``JobResult``.
    """

    def __init__(
        self,
        runtime: DeviceRuntime,
        registry: ProcessRegistry,
        *,
        ledger: Optional[LanguageLedger] = None,
        device_poll_seconds: float = DEFAULT_DEVICE_POLL_SECONDS,
    ) -> None:
        self._runtime = runtime
        self._registry = registry
        self._ledger = ledger or LanguageLedger()
        self._device_poll_seconds = device_poll_seconds

    def execute(
        self,
        job: RunJob,
        config: RunConfig,
        token: CancellationToken,
        overrides: Optional[RunOverrides] = None,
    ) -> JobResult:
        overrides = overrides or RunOverrides()
        output_dir = OutputLayout.ensure_dir(Path(job.output_dir))
        log_path = output_dir / JOB_LOG_FILENAME
        result = JobResult(
            index=job.index,
            job_id=job.job_id,
            platform=job.platform,
            device=job.device_name,
            folder=job.folder,
            language=job.language,
            output_dir=str(output_dir),
            log_path=str(log_path),
        )
        handler = platform_for(
            job,
            config,
            self._runtime.driver_for(job.platform),
            token,
            poll_interval=self._device_poll_seconds,
            log=lambda message: self._append_log(log_path, message),
        )
        ctx = JobContext(
            job=job,
            handler=handler,
            log_path=log_path,
            server_url=overrides.server_url or f"http://127.0.0.1:{job.ports.automation_port}",
            external_server=bool(overrides.server_url),
        )

        result.status = JobStatus.running
        result.started_at = _utcnow()
        self._append_log(
            log_path,
            f"Job {job.job_id} started: {job.platform.value} {job.device_name} {job.language} "
            f"(port {job.ports.automation_port}/{job.aux_port})",
        )
        LOGGER.info("Starting %s on %s (%s)", job.job_id, job.device_name, job.language)

        try:
            self._enter(ctx, result, JobPhase.provisioning)
            self._provision(ctx, config)

            self._enter(ctx, result, JobPhase.executing)
            runner = ActionRunner(
                handler,
                self._runtime.automation,
                ctx.session,
                ctx.device_id,
                token,
                config.timeouts,
                log=lambda message: self._append_log(log_path, message),
            )
            try:
                runner.run()
            finally:
                result.screenshots = list(runner.screenshots)
                result.warnings.extend(runner.warnings)

            self._enter(ctx, result, JobPhase.validating)
            self._validate(ctx, result, config)

            self._enter(ctx, result, JobPhase.succeeded)
            result.status = JobStatus.success
        except JobCancelledError:
            self._enter(ctx, result, JobPhase.cancelled)
            result.status = JobStatus.cancelled
            result.error = f"Cancelled: {token.reason or 'cancellation requested'}"
        except JobError as exc:
            self._fail(ctx, result, config, exc.detail)
        except Exception as exc:
            LOGGER.exception("Unexpected error while executing %s", job.job_id)
            self._fail(ctx, result, config, f"{type(exc).__name__}: {exc}")
        finally:
            self._teardown(ctx)
            result.notes.extend(ctx.teardown_notes)
            result.ended_at = _utcnow()
            self._append_log(log_path, f"Job {job.job_id} finished with status {result.status.value}")

        LOGGER.info("Finished %s: %s", job.job_id, result.status.value)
        return result

    def _enter(self, ctx: JobContext, result: JobResult, phase: JobPhase) -> None:
        current = result.phase
        if current in TERMINAL_PHASES:
            raise RuntimeError(f"{ctx.job.job_id} already finished as {current.value}")
        result.phases.append(phase)
        self._append_log(ctx.log_path, f"Phase {current.value} -> {phase.value}")

    def _fail(self, ctx: JobContext, result: JobResult, config: RunConfig, message: str) -> None:
        LOGGER.error("%s failed during %s: %s", ctx.job.job_id, result.phase.value, message)
        self._append_log(ctx.log_path, f"ERROR {message}")
        self._capture_failure_artifacts(ctx, result, config)
        self._enter(ctx, result, JobPhase.failed)
        result.status = JobStatus.failed
        result.error = message

    def _provision(self, ctx: JobContext, config: RunConfig) -> None:
        job = ctx.job
        handler = ctx.handler
        automation = self._runtime.automation

        if not ctx.external_server:
            handler.run_step("start automation server", automation.start_server, job.ports.automation_port)
            ctx.server_started = True
            self._registry.register(ctx.server_key, ManagedServer(automation, job.ports.automation_port))

        device_id = handler.boot()
        ctx.device_id = device_id
        self._registry.register(ctx.device_key, ManagedDevice(handler.driver, device_id, job.platform))
        self._append_log(ctx.log_path, f"Device ready: {device_id}")

        handler.prepare(device_id, self._ledger)

        capabilities = handler.capabilities(device_id)
        ctx.session = handler.run_step(
            "create session",
            automation.create_session,
            ctx.server_url,
            capabilities.to_wire(),
        )
        if ctx.session is None:
            raise ProvisioningError(job.job_id, "create session", RuntimeError("provider returned no session"))

    def _validate(self, ctx: JobContext, result: JobResult, config: RunConfig) -> None:
        validator = ImageValidator(self._runtime.inspector, enforce=config.validation.enforce_image_size)
        result.screenshots = [
            validator.check(ctx.job.job_id, shot, ctx.handler.expected_size(shot.orientation))
            for shot in result.screenshots
        ]
        result.warnings.extend(validator.warnings)
        for warning in validator.warnings:
            self._append_log(ctx.log_path, f"WARNING {warning}")
        if validator.errors:
            raise validator.errors[0]

    def _capture_failure_artifacts(self, ctx: JobContext, result: JobResult, config: RunConfig) -> None:
        if ctx.artifacts_captured:
            return
        ctx.artifacts_captured = True
        settings = config.failure_artifacts
        if not (settings.save_page_source or settings.save_screenshot or settings.save_device_logs):
            return

        try:
            target_dir = OutputLayout.failure_dir(Path(ctx.job.output_dir), settings.artifacts_dir)
        except OSError as exc:
            result.notes.append(f"failure artifacts skipped: {exc}")
            return
        stamp = time.strftime("%Y%m%d_%H%M%S", time.gmtime())

        def _record(kind: FailureArtifactKind, filename: str, payload: bytes) -> None:
            path = target_dir / filename
            path.write_bytes(payload)
            result.artifacts.append(
                FailureArtifact(kind=kind, path=str(path), captured_at=_utcnow(), size_bytes=len(payload))
            )
            self._append_log(ctx.log_path, f"Saved {kind.value} to {path.name}")

        if settings.save_page_source and ctx.session is not None:
            try:
                source = self._runtime.automation.page_source(ctx.session)
                _record(FailureArtifactKind.page_source, f"page_source_{stamp}.xml", source.encode("utf-8"))
            except Exception as exc:
                LOGGER.debug("%s: page source capture failed: %s", ctx.job.job_id, exc)
                result.notes.append(f"page source not captured: {exc}")

        if settings.save_screenshot and ctx.device_id is not None:
            try:
                image = ctx.handler.screenshot(ctx.device_id)
                _record(FailureArtifactKind.screenshot, f"failure_screenshot_{stamp}.png", image)
            except Exception as exc:
                LOGGER.debug("%s: failure screenshot failed: %s", ctx.job.job_id, exc)
                result.notes.append(f"failure screenshot not captured: {exc}")

        if settings.save_device_logs and ctx.device_id is not None:
            try:
                logs = truncate_log(ctx.handler.device_logs(ctx.device_id))
                _record(FailureArtifactKind.device_logs, f"device_logs_{stamp}.txt", logs.encode("utf-8"))
            except Exception as exc:
                LOGGER.debug("%s: device log capture failed: %s", ctx.job.job_id, exc)
                result.notes.append(f"device logs not captured: {exc}")

    def _teardown(self, ctx: JobContext) -> None:
        job = ctx.job

        def _attempt(label: str, func, *args) -> None:
            try:
                func(*args)
            except Exception as exc:
                error = TeardownError(job.job_id, f"{label} failed: {exc}")
                LOGGER.warning("%s", error)
                ctx.teardown_notes.append(f"teardown: {error.detail}")
                self._append_log(ctx.log_path, f"WARNING {error.detail}")

        if ctx.session is not None:
            _attempt("quit session", self._runtime.automation.quit_session, ctx.session)

        if not ctx.external_server:
            server = self._registry.unregister(ctx.server_key)
            if server is not None:
                _attempt("stop automation server", server.stop)
            elif not ctx.server_started:
                _attempt("stop automation server", self._runtime.automation.stop_server, job.ports.automation_port)

        device = self._registry.unregister(ctx.device_key)
        if device is not None:
            _attempt("shut down device", device.stop)
        elif ctx.device_id is None:
            _attempt("shut down device", ctx.handler.driver.shutdown, ctx.handler.target)
        self._append_log(ctx.log_path, "Teardown complete")

    def _append_log(self, log_path: Path, message: str) -> None:
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("a", encoding="utf-8") as handle:
                handle.write(f"[{_utcnow()}] {message}\n")
        except OSError as exc:
            LOGGER.debug("Could not write job log %s: %s", log_path, exc)
