from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException

from shotmatrix.errors import ConfigurationError
from shotmatrix.schemas import PlanRequest, PlanView, RunRecord, RunState
from shotmatrix.services.artifacts import GlobArtifactResolver
from shotmatrix.services.matrix import render_matrix
from shotmatrix.services.planning import RunPlan, RunPlanBuilder
from shotmatrix.services.run_manager import RunManager, get_run_manager
from shotmatrix.services.storage import RepositoryDep, RunRepository

router = APIRouter(prefix="/api", tags=["api"])

ACTIVE_STATES = {RunState.queued.value, RunState.running.value}


def _build_plan(payload: PlanRequest) -> RunPlan:
    resolver = GlobArtifactResolver(payload.config.build_config)
    try:
        return RunPlanBuilder().build(
            payload.config,
            payload.output_root,
            platforms=payload.platforms,
            devices=payload.devices,
            languages=payload.languages,
            screenshots=payload.screenshots,
            overrides=payload.overrides,
            resolver=resolver,
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _get_run_or_404(repo: RunRepository, run_id: str) -> Dict[str, Any]:
    record = repo.get_run(run_id)
    if not record:
        raise HTTPException(status_code=404, detail="Run not found")
    return record


@router.get("/ping")
async def ping() -> Dict[str, str]:
    return {"status": "ok"}


@router.post("/plans", response_model=PlanView)
async def create_plan(payload: PlanRequest) -> PlanView:
    return _build_plan(payload).to_view()


@router.post("/matrix")
async def create_matrix(payload: PlanRequest, format: str = "github") -> Any:
    plan = _build_plan(payload)
    try:
        return render_matrix(plan, format)
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


# Runs ----------------------------------------------------------------------------
@router.get("/runs", response_model=List[RunRecord])
async def list_runs(state: Optional[RunState] = None, repo: RunRepository = RepositoryDep) -> List[RunRecord]:
    return repo.list_runs(state=state.value if state else None)


@router.post("/runs", response_model=RunRecord, status_code=202)
async def create_run(
    payload: PlanRequest,
    manager: Optional[RunManager] = Depends(get_run_manager),
) -> RunRecord:
    if manager is None:
        raise HTTPException(status_code=503, detail="No device runtime configured")
    plan = _build_plan(payload)
    return manager.submit(plan, payload.config, payload.overrides)


@router.get("/runs/{run_id}", response_model=RunRecord)
async def get_run(run_id: str, repo: RunRepository = RepositoryDep) -> RunRecord:
    return _get_run_or_404(repo, run_id)


@router.post("/runs/{run_id}/cancel", response_model=RunRecord)
async def cancel_run(
    run_id: str,
    repo: RunRepository = RepositoryDep,
    manager: Optional[RunManager] = Depends(get_run_manager),
) -> RunRecord:
    record = _get_run_or_404(repo, run_id)
    if record.get("state") not in ACTIVE_STATES or manager is None or not manager.cancel(run_id):
        raise HTTPException(status_code=409, detail="Run is not active")
    return repo.update_run(run_id, {"note": "Cancellation requested"})


@router.delete("/runs/{run_id}", status_code=204)
async def delete_run(run_id: str, repo: RunRepository = RepositoryDep) -> None:
    record = _get_run_or_404(repo, run_id)
    if record.get("state") in ACTIVE_STATES:
        raise HTTPException(status_code=409, detail="Cancel the run before deleting it")
    repo.delete_run(run_id)
