from __future__ import annotations

import json
import os
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends

STATE_VERSION = 1
STATE_PATH_ENV = "SHOTMATRIX_STATE_PATH"


def _utcnow() -> str:
    """Return timezone-aware ISO timestamp."""
    return datetime.now(tz=timezone.utc).isoformat()


def _default_state() -> Dict[str, Any]:
    return {"version": STATE_VERSION, "runs": {}}


class LocalJsonStorage:
    """Collections of JSON documents persisted to a single file.

    Writes are serialised through an internal lock and flushed on every change.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._state = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return _default_state()
        with self._path.open("r", encoding="utf-8") as handle:
            state = json.load(handle)
        state.setdefault("version", STATE_VERSION)
        state.setdefault("runs", {})
        return state

    def _persist(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as handle:
            json.dump(self._state, handle, indent=2, sort_keys=True)

    def _collection(self, name: str) -> Dict[str, Any]:
        return self._state.setdefault(name, {})

    def upsert(self, collection: str, item_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self._collection(collection)[item_id] = payload
            self._persist()
            return payload

    def get(self, collection: str, item_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._collection(collection).get(item_id)
            return dict(item) if item is not None else None

    def delete(self, collection: str, item_id: str) -> None:
        with self._lock:
            if item_id in self._collection(collection):
                del self._collection(collection)[item_id]
                self._persist()

    def list(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(item) for item in self._collection(collection).values()]


class RunRepository:
    """Run records on top of LocalJsonStorage."""

    def __init__(self, storage: LocalJsonStorage) -> None:
        self._storage = storage

    def list_runs(self, *, state: Optional[str] = None) -> List[Dict[str, Any]]:
        items = self._storage.list("runs")
        if state:
            items = [item for item in items if item.get("state") == state]
        return sorted(items, key=lambda item: item["created_at"], reverse=True)

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("runs", run_id)

    def create_run(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        now = _utcnow()
        run_id = payload.get("id") or uuid.uuid4().hex[:8]
        record = {
            "id": run_id,
            "state": payload.get("state", "queued"),
            "output_root": payload["output_root"],
            "total_jobs": int(payload.get("total_jobs", 0)),
            "completed_jobs": 0,
            "note": payload.get("note"),
            "result": None,
            "created_at": now,
            "updated_at": now,
        }
        return self._storage.upsert("runs", run_id, record)

    def update_run(self, run_id: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        record = self.get_run(run_id)
        if not record:
            return None
        record.update({key: value for key, value in payload.items() if value is not None})
        record["updated_at"] = _utcnow()
        return self._storage.upsert("runs", run_id, record)

    def delete_run(self, run_id: str) -> None:
        self._storage.delete("runs", run_id)


_repository: Optional[RunRepository] = None


def get_repository() -> RunRepository:
    """FastAPI dependency to retrieve the singleton repository instance."""
    global _repository
    if _repository is None:
        storage_path = Path(os.environ.get(STATE_PATH_ENV, "shotmatrix.state.json"))
        _repository = RunRepository(LocalJsonStorage(storage_path))
    return _repository


RepositoryDep = Depends(get_repository)
