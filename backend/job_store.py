from __future__ import annotations

import copy
import json
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from backend.errors import JobNotFound


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobStore(Protocol):
    def create(self, record: dict[str, Any]) -> dict[str, Any]:
        ...

    def update(self, job_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        ...

    def get(self, job_id: str) -> dict[str, Any] | None:
        ...


class InMemoryJobStore:
    def __init__(self) -> None:
        self._jobs: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create(self, record: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._jobs[record["id"]] = copy.deepcopy(record)
            return copy.deepcopy(record)

    def update(self, job_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            job.update(copy.deepcopy(fields))
            return copy.deepcopy(job)

    def get(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job is not None else None


def _atomic_write_json(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        json.dump(payload, handle, indent=2)
        handle.flush()
        temp_path = Path(handle.name)
    temp_path.replace(path)


class JsonFileJobStore:
    """Keeps every job in one JSON file, rewritten atomically on each change."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"updated_at": None, "jobs": {}}
        return json.loads(self.path.read_text(encoding="utf-8"))

    def _save(self, store: dict[str, Any]) -> None:
        store["updated_at"] = _utc_now()
        _atomic_write_json(self.path, store)

    def create(self, record: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            store = self._load()
            store["jobs"][record["id"]] = record
            self._save(store)
            return copy.deepcopy(record)

    def update(self, job_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            store = self._load()
            job = store["jobs"].get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            job.update(fields)
            self._save(store)
            return job

    def get(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            return self._load()["jobs"].get(job_id)
