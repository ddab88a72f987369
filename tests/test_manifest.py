from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional

import pytest

from shotmatrix.schemas import (
    EnvironmentInfo,
    FailureArtifact,
    FailureArtifactKind,
    JobPhase,
    JobResult,
    JobStatus,
    Platform,
    RunResult,
    RunStatus,
    RunSummary,
    ScreenshotResult,
)
from shotmatrix.services.manifest import ManifestWriter


def _job(index: int, status: JobStatus, **extra) -> JobResult:
    return JobResult(
        index=index,
        job_id=f"job-{index}",
        platform=Platform.android,
        device="Pixel 7",
        folder="pixel_7",
        language="en-US",
        output_dir="Screenshots/Android/pixel_7/en-US",
        status=status,
        phases=[JobPhase.pending],
        **extra,
    )


def _result(jobs: List[JobResult], *, success: bool, status: RunStatus, error: Optional[str] = None) -> RunResult:
    return RunResult(
        run_id="abc12345",
        started_at="2026-01-01T10:00:00+00:00",
        ended_at="2026-01-01T10:02:30+00:00",
        duration_seconds=150.0,
        success=success,
        status=status,
        summary=RunSummary(
            total_jobs=len(jobs),
            succeeded=sum(1 for job in jobs if job.status == JobStatus.success),
            failed=sum(1 for job in jobs if job.status == JobStatus.failed),
            cancelled=sum(1 for job in jobs if job.status == JobStatus.cancelled),
            screenshots=sum(len(job.screenshots) for job in jobs),
        ),
        jobs=jobs,
        environment=EnvironmentInfo(
            os="Linux",
            python_version="3.12.1",
            hostname="ci-runner",
            working_directory="/work",
            version="0.1.0",
            config_hash="0123456789ab",
        ),
        output_root="Screenshots",
        error_message=error,
    )


@pytest.mark.unit
def test_manifest_and_summary_land_in_output_root(tmp_path: Path) -> None:
    shot = ScreenshotResult(
        name="home",
        language="en-US",
        path="Screenshots/Android/pixel_7/en-US/home_en-US.png",
        width=1080,
        height=2400,
        size_bytes=1234,
        captured_at="2026-01-01T10:01:00+00:00",
    )
    result = _result([_job(0, JobStatus.success, screenshots=[shot])], success=True, status=RunStatus.success)

    manifest_path, summary_path = ManifestWriter(tmp_path).write(result)

    manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    assert manifest_path.name == "run_manifest.json"
    assert manifest["success"] is True
    assert manifest["status"] == "success"
    assert manifest["jobs"][0]["screenshots"][0]["width"] == 1080
    summary = summary_path.read_text(encoding="utf-8")
    assert "Run ID: abc12345" in summary
    assert "Overall Success: yes" in summary
    assert "  [ok] job-0 android pixel_7 en-US" in summary
    assert summary.endswith("All jobs completed successfully.\n")


@pytest.mark.unit
def test_summary_reports_failures_without_recomputing() -> None:
    artifact = FailureArtifact(
        kind=FailureArtifactKind.page_source,
        path="Screenshots/Android/pixel_7/de-DE/failure_artifacts/page_source_20260101_100100.xml",
        captured_at="2026-01-01T10:01:00+00:00",
        size_bytes=42,
    )
    jobs = [
        _job(0, JobStatus.success),
        _job(1, JobStatus.failed, error="element not found: id=login", artifacts=[artifact]),
        _job(2, JobStatus.cancelled, error="Not started: operator abort"),
    ]
    result = _result(jobs, success=False, status=RunStatus.cancelled, error="Run cancelled: operator abort")

    summary = ManifestWriter().render_summary(result)

    assert "Overall Success: no" in summary
    assert "Run Error: Run cancelled: operator abort" in summary
    assert "  [failed] job-1 android pixel_7 en-US" in summary
    assert "    Error: element not found: id=login" in summary
    assert "      page_source: page_source_20260101_100100.xml" in summary
    assert "  [cancelled] job-2 android pixel_7 en-US" in summary
    assert summary.endswith("1 job(s) failed, 1 cancelled.\n")
