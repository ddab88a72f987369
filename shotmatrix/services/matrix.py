"""Read-only CI matrix projections of a run plan."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List

from shotmatrix.errors import ConfigurationError
from shotmatrix.services.planning import RunJob, RunPlan


def job_record(job: RunJob) -> Dict[str, Any]:
    return {
        "job_id": job.job_id,
        "index": job.index,
        "platform": job.platform.value,
        "device": job.folder,
        "device_name": job.device_name,
        "language": job.language,
        "locale": job.platform_locale,
        "screenshots": len(job.screenshots),
        "output_dir": str(job.output_dir),
        "automation_port": job.ports.automation_port,
    }


def as_list(plan: RunPlan) -> List[Dict[str, Any]]:
    return [job_record(job) for job in plan.jobs]


def as_map(plan: RunPlan) -> Dict[str, Dict[str, Any]]:
    return {job.job_id: job_record(job) for job in plan.jobs}


def github_matrix(plan: RunPlan) -> Dict[str, Any]:
    return {
        "include": [
            {
                "job_id": job.job_id,
                "platform": job.platform.value,
                "device": job.folder,
                "language": job.language,
                "screenshots": len(job.screenshots),
                "output_dir": str(job.output_dir),
            }
            for job in plan.jobs
        ]
    }


def gitlab_matrix(plan: RunPlan) -> Dict[str, Any]:
    return {
        f"JOB_{job.index}": {
            "JOB_ID": job.job_id,
            "PLATFORM": job.platform.value,
            "DEVICE": job.folder,
            "LANGUAGE": job.language,
            "OUTPUT_DIR": str(job.output_dir),
        }
        for job in plan.jobs
    }


def azure_matrix(plan: RunPlan) -> Dict[str, Any]:
    return {
        "strategy": {
            "matrix": {
                f"job_{job.index}": {
                    "jobId": job.job_id,
                    "platform": job.platform.value,
                    "device": job.folder,
                    "language": job.language,
                    "outputDir": str(job.output_dir),
                }
                for job in plan.jobs
            }
        }
    }


FORMATS: Dict[str, Callable[[RunPlan], Any]] = {
    "list": as_list,
    "map": as_map,
    "github": github_matrix,
    "gitlab": gitlab_matrix,
    "azure": azure_matrix,
}


def render_matrix(plan: RunPlan, fmt: str = "github") -> Any:
    renderer = FORMATS.get(fmt.strip().lower())
    if renderer is None:
        raise ConfigurationError(f"Unknown matrix format '{fmt}'; expected one of {', '.join(FORMATS)}")
    return renderer(plan)


def render_matrix_json(plan: RunPlan, fmt: str = "github") -> str:
    return json.dumps(render_matrix(plan, fmt), indent=2)
