from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from shotmatrix.constants import MANIFEST_FILENAME, SUMMARY_FILENAME
from shotmatrix.schemas import JobStatus, RunResult

LOGGER = logging.getLogger("shotmatrix.manifest")

STATUS_MARKERS = {
    JobStatus.success: "[ok]",
    JobStatus.failed: "[failed]",
    JobStatus.cancelled: "[cancelled]",
    JobStatus.pending: "[pending]",
    JobStatus.running: "[running]",
}

MAX_LISTED_SCREENSHOTS = 3


class ManifestWriter:
    """Serialize a finished run into ``run_manifest.json`` and ``run_summary.txt``.

    Everything is read straight off ``RunResult``; success and counts are never
    recomputed here.
    """

    def __init__(self, output_root: Optional[Path] = None) -> None:
        self._output_root = Path(output_root) if output_root else None

    def write(self, result: RunResult) -> Tuple[Path, Path]:
        root = self._output_root or Path(result.output_root)
        root.mkdir(parents=True, exist_ok=True)
        manifest_path = root / MANIFEST_FILENAME
        summary_path = root / SUMMARY_FILENAME
        manifest_path.write_text(self.render_manifest(result), encoding="utf-8")
        summary_path.write_text(self.render_summary(result), encoding="utf-8")
        LOGGER.info("Wrote run manifest %s and summary %s", manifest_path, summary_path)
        return manifest_path, summary_path

    def render_manifest(self, result: RunResult) -> str:
        return json.dumps(result.model_dump(mode="json"), indent=2, sort_keys=True)

    def render_summary(self, result: RunResult) -> str:
        lines: List[str] = [
            "Screenshot Run Summary",
            "======================",
            "",
            f"Run ID: {result.run_id}",
            f"Start Time: {result.started_at}",
            f"End Time: {result.ended_at}",
            f"Duration: {result.duration_seconds:.1f} seconds",
            f"Status: {result.status.value}",
            f"Overall Success: {'yes' if result.success else 'no'}",
        ]
        if result.error_message:
            lines.append(f"Run Error: {result.error_message}")
        env = result.environment
        lines += [
            "",
            "Environment:",
            f"  OS: {env.os}",
            f"  Python: {env.python_version}",
            f"  Host: {env.hostname}",
            f"  shotmatrix: {env.version}",
        ]
        if env.config_hash:
            lines.append(f"  Config: {env.config_hash}")
        summary = result.summary
        lines += [
            "",
            "Summary:",
            f"  Total Jobs: {summary.total_jobs}",
            f"  Successful: {summary.succeeded}",
            f"  Failed: {summary.failed}",
            f"  Cancelled: {summary.cancelled}",
            f"  Screenshots: {summary.screenshots}",
            f"  Failure Artifacts: {sum(len(job.artifacts) for job in result.jobs)}",
            "",
            "Job Results:",
        ]
        for job in result.jobs:
            lines.append(
                f"  {STATUS_MARKERS[job.status]} {job.job_id} {job.platform.value} {job.folder} {job.language}"
            )
            if job.error:
                lines.append(f"    Error: {job.error}")
            if job.screenshots:
                lines.append(f"    Screenshots: {len(job.screenshots)}")
                for shot in job.screenshots[:MAX_LISTED_SCREENSHOTS]:
                    marker = "ok" if shot.success else "invalid"
                    lines.append(f"      {marker} {shot.name}")
                if len(job.screenshots) > MAX_LISTED_SCREENSHOTS:
                    lines.append(f"      ... and {len(job.screenshots) - MAX_LISTED_SCREENSHOTS} more")
            if job.artifacts:
                lines.append(f"    Failure Artifacts: {len(job.artifacts)}")
                for artifact in job.artifacts:
                    lines.append(f"      {artifact.kind.value}: {Path(artifact.path).name}")
            for warning in job.warnings:
                lines.append(f"    Warning: {warning}")
        lines.append("")
        if result.success:
            lines.append("All jobs completed successfully.")
        else:
            lines.append(f"{summary.failed} job(s) failed, {summary.cancelled} cancelled.")
        return "\n".join(lines) + "\n"
