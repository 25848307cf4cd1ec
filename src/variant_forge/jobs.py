"""Durable background jobs.

    pending --start()--> processing --complete(result)--> completed
                                    --fail(error)-------> failed

Terminal states are final. A job may name another job it depends on; it is not
runnable until that job completed, and it fails when that job failed.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from variant_forge.config import settings
from variant_forge.errors import InvalidTransition, JobNotFound
from variant_forge.storage import _write_json_atomic

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobType(str, Enum):
    GENERATE_VARIANTS = "generateVariants"
    GENERATE_THUMBNAILS = "generateThumbnails"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Job:
    job_id: str
    shop: str
    type: str
    status: JobStatus = JobStatus.PENDING
    data: dict[str, Any] = field(default_factory=dict)
    progress: int = 0
    total: int | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    depends_on: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def to_public(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.job_id,
            "type": self.type,
            "status": self.status.value,
            "progress": self.progress,
            "total": self.total,
            "dependsOn": self.depends_on,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.status == JobStatus.FAILED:
            out["error"] = self.error
        else:
            out["result"] = self.result
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        data = dict(data)
        data["status"] = JobStatus(data.get("status", JobStatus.PENDING.value))
        return cls(**data)


class JobStore:
    def __init__(self, root_dir: Path | None = None) -> None:
        self.root_dir = Path(root_dir or settings.data_dir).resolve()
        self.jobs_dir = self.root_dir / "jobs"
        self.jobs_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def create(
        self,
        shop: str,
        type: str,
        data: dict[str, Any] | None = None,
        total: int | None = None,
        depends_on: str | None = None,
    ) -> Job:
        if depends_on is not None and self.get(depends_on) is None:
            raise JobNotFound(depends_on)
        now = _now().isoformat()
        job = Job(
            job_id=uuid.uuid4().hex[:12],
            shop=shop,
            type=str(type.value if isinstance(type, JobType) else type),
            data=dict(data or {}),
            total=total,
            depends_on=depends_on,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._write(job)
        logger.info("job %s (%s) created for %s", job.job_id, job.type, shop)
        return job

    def get(self, job_id: str, shop: str | None = None) -> Job | None:
        path = self._path(job_id)
        if not path.exists():
            return None
        job = Job.from_dict(json.loads(path.read_text("utf-8")))
        if shop is not None and job.shop != shop:
            return None
        return job

    def require(self, job_id: str, shop: str | None = None) -> Job:
        job = self.get(job_id, shop)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def start(self, job_id: str) -> Job:
        return self._transition(job_id, {JobStatus.PENDING}, JobStatus.PROCESSING)

    def complete(self, job_id: str, result: dict[str, Any]) -> Job:
        job = self._transition(job_id, {JobStatus.PROCESSING}, JobStatus.COMPLETED, result=result)
        logger.info("job %s completed", job_id)
        return job

    def fail(self, job_id: str, error: str) -> Job:
        # A pending job can fail without running, e.g. when its dependency failed.
        job = self._transition(job_id, {JobStatus.PENDING, JobStatus.PROCESSING}, JobStatus.FAILED, error=error)
        logger.warning("job %s failed: %s", job_id, error)
        for dependent in self.dependents(job_id):
            if dependent.status == JobStatus.PENDING:
                self.fail(dependent.job_id, f"dependency {job_id} failed")
        return job

    def update_progress(self, job_id: str, progress: int, total: int | None = None) -> Job:
        with self._lock:
            job = self.require(job_id)
            if job.status != JobStatus.PROCESSING:
                raise InvalidTransition(f"job {job_id} is {job.status.value}; progress can only change while processing")
            new_total = job.total if total is None else max(0, int(total))
            new_progress = max(0, int(progress))
            if new_total is not None:
                new_progress = min(new_progress, new_total)
            updated = replace(job, progress=new_progress, total=new_total, updated_at=_now().isoformat())
            self._write(updated)
            return updated

    def dependents(self, job_id: str) -> list[Job]:
        return [job for job in self._all() if job.depends_on == job_id]

    def list_runnable(self, shop: str, type: str | None = None) -> list[Job]:
        """Pending jobs whose dependency (if any) has completed, oldest first."""
        out = []
        for job in self._all():
            if job.shop != shop or job.status != JobStatus.PENDING:
                continue
            if type is not None and job.type != type:
                continue
            if job.depends_on is not None:
                dep = self.get(job.depends_on)
                if dep is None or dep.status != JobStatus.COMPLETED:
                    continue
            out.append(job)
        out.sort(key=lambda j: j.created_at)
        return out

    def recent(self, shop: str, limit: int = 10) -> list[Job]:
        jobs = [job for job in self._all() if job.shop == shop]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    def cleanup(self, older_than_days: int | None = None) -> int:
        days = settings.job_retention_days if older_than_days is None else older_than_days
        cutoff = _now() - timedelta(days=days)
        removed = 0
        with self._lock:
            for job in self._all():
                if job.status.is_terminal and datetime.fromisoformat(job.created_at) < cutoff:
                    self._path(job.job_id).unlink(missing_ok=True)
                    removed += 1
        return removed

    def _transition(self, job_id: str, allowed: set[JobStatus], target: JobStatus, **changes: Any) -> Job:
        with self._lock:
            job = self.require(job_id)
            if job.status not in allowed:
                raise InvalidTransition(f"job {job_id} cannot go from {job.status.value} to {target.value}")
            updated = replace(job, status=target, updated_at=_now().isoformat(), **changes)
            self._write(updated)
            return updated

    def _all(self) -> list[Job]:
        out = []
        for path in self.jobs_dir.glob("*.json"):
            try:
                out.append(Job.from_dict(json.loads(path.read_text("utf-8"))))
            except (ValueError, TypeError):
                continue
        return out

    def _path(self, job_id: str) -> Path:
        safe = os.path.basename(job_id).replace("..", "_")
        return self.jobs_dir / f"{safe}.json"

    def _write(self, job: Job) -> None:
        data = asdict(job)
        data["status"] = job.status.value
        _write_json_atomic(self._path(job.job_id), data)
