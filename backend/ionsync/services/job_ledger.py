"""
Durable job ledger shared by the sync engine and the control/status endpoints.

Two actors write to a ledger row concurrently (the engine task and control
requests), so every mutation here is a single targeted UPDATE or INSERT:
counters are incremented in SQL, flags are set individually, and status
changes are conditional on the current status.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ionsync.models.sync_job import SyncJob, SyncJobError

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("pending", "running", "paused")
TERMINAL_STATUSES = ("completed", "failed", "stopped")

# target status -> statuses it may be entered from
_ALLOWED_SOURCES = {
    "running": ("pending", "paused"),
    "paused": ("running",),
    "completed": ("running",),
    "failed": ("pending", "running"),
    "stopped": ("running",),
}


def percent_complete(processed: int, total: int) -> float:
    if not total:
        return 0.0
    return round(min(max(processed / total * 100, 0.0), 100.0), 2)


@dataclass
class ControlAck:
    job_id: str
    action: str
    applied: bool
    status: str
    paused: bool
    stop_requested: bool


@dataclass
class EntityStats:
    job_type: str
    runs: int = 0
    completed: int = 0
    failed: int = 0
    stopped: int = 0
    processed_records: int = 0
    inserted_records: int = 0
    updated_records: int = 0
    error_records: int = 0
    average_duration_seconds: Optional[float] = None
    last_status: Optional[str] = None
    last_start_time: Optional[datetime] = None


class JobLedger:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory

    async def create(
        self,
        job_type: str,
        warehouse_id: Optional[str] = None,
        filters: Optional[dict[str, Any]] = None,
        options: Optional[dict[str, Any]] = None,
        job_id: Optional[str] = None,
        status: str = "running",
        worker_id: Optional[str] = None,
    ) -> str:
        job_id = job_id or uuid.uuid4().hex
        async with self.session_factory() as db:
            db.add(SyncJob(
                job_id=job_id,
                job_type=job_type,
                warehouse_id=warehouse_id,
                status=status,
                filters=dict(filters or {}),
                options=dict(options or {}),
                worker_id=worker_id,
                message=f"Starting {job_type} sync",
            ))
            await db.commit()
        logger.info("Ledger: created job %s (%s, warehouse=%s)", job_id, job_type, warehouse_id)
        return job_id

    async def get(self, job_id: str) -> Optional[SyncJob]:
        async with self.session_factory() as db:
            result = await db.execute(select(SyncJob).where(SyncJob.job_id == job_id))
            return result.scalar_one_or_none()

    async def get_errors(self, job_id: str) -> list[str]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SyncJobError.message).where(SyncJobError.job_id == job_id).order_by(SyncJobError.id)
            )
            return list(result.scalars().all())

    async def _update(self, job_id: str, *conditions, **values) -> int:
        values["last_updated"] = datetime.now(timezone.utc)
        async with self.session_factory() as db:
            result = await db.execute(
                update(SyncJob)
                .where(SyncJob.job_id == job_id, *conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount

    async def set_total(self, job_id: str, total_records: int) -> None:
        await self._update(job_id, total_records=total_records)

    async def advance(
        self,
        job_id: str,
        processed: int = 0,
        inserted: int = 0,
        updated: int = 0,
        errors: int = 0,
        current_offset: Optional[int] = None,
        current_batch: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        if min(processed, inserted, updated, errors) < 0:
            raise ValueError("Ledger counters never decrease")
        values: dict[str, Any] = {
            "processed_records": SyncJob.processed_records + processed,
            "inserted_records": SyncJob.inserted_records + inserted,
            "updated_records": SyncJob.updated_records + updated,
            "error_records": SyncJob.error_records + errors,
        }
        if current_offset is not None:
            values["current_offset"] = current_offset
        if current_batch is not None:
            values["current_batch"] = current_batch
        if message is not None:
            values["message"] = message
        await self._update(job_id, **values)

    async def record_error(self, job_id: str, message: str) -> None:
        async with self.session_factory() as db:
            db.add(SyncJobError(job_id=job_id, message=message))
            await db.commit()

    async def set_status(
        self,
        job_id: str,
        status: str,
        error: Optional[str] = None,
        message: Optional[str] = None,
    ) -> bool:
        """Move the job to ``status`` if the transition is legal. Returns False otherwise."""
        if status not in _ALLOWED_SOURCES:
            raise ValueError(f"Unknown job status: {status}")
        values: dict[str, Any] = {"status": status}
        if status in TERMINAL_STATUSES:
            values["end_time"] = datetime.now(timezone.utc)
        if error is not None:
            values["error"] = error
        if message is not None:
            values["message"] = message
        changed = await self._update(job_id, SyncJob.status.in_(_ALLOWED_SOURCES[status]), **values)
        if not changed:
            logger.warning("Ledger: refused transition of job %s to %s", job_id, status)
        return bool(changed)

    async def _control(self, job_id: str, action: str, **flags) -> Optional[ControlAck]:
        applied = await self._update(job_id, SyncJob.status.in_(ACTIVE_STATUSES), **flags)
        job = await self.get(job_id)
        if job is None:
            return None
        if applied:
            logger.info("Ledger: %s requested for job %s", action, job_id)
        else:
            logger.info("Ledger: %s ignored for job %s, already %s", action, job_id, job.status)
        return ControlAck(
            job_id=job_id,
            action=action,
            applied=bool(applied),
            status=job.status,
            paused=job.paused,
            stop_requested=job.stop_requested,
        )

    async def request_pause(self, job_id: str) -> Optional[ControlAck]:
        return await self._control(job_id, "pause", paused=True)

    async def request_resume(self, job_id: str) -> Optional[ControlAck]:
        return await self._control(job_id, "resume", paused=False)

    async def request_stop(self, job_id: str) -> Optional[ControlAck]:
        return await self._control(job_id, "stop", stop_requested=True)

    async def list_jobs(self, job_type: Optional[str] = None, limit: int = 40) -> list[SyncJob]:
        query = select(SyncJob).order_by(SyncJob.created_at.desc(), SyncJob.id.desc()).limit(limit)
        if job_type:
            query = query.where(SyncJob.job_type == job_type)
        async with self.session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def find_active(self, job_type: str, warehouse_id: Optional[str]) -> Optional[SyncJob]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SyncJob)
                .where(
                    SyncJob.job_type == job_type,
                    SyncJob.warehouse_id == warehouse_id,
                    SyncJob.status.in_(ACTIVE_STATUSES),
                )
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def find_interrupted(self) -> list[SyncJob]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SyncJob).where(SyncJob.status.in_(("running", "paused"))).order_by(SyncJob.id)
            )
            return list(result.scalars().all())

    async def claim(self, job_id: str, worker_id: str, stale_after_seconds: int) -> bool:
        """Take ownership of an interrupted job.

        Succeeds only when the job is still running/paused and has no owner or its
        owner has not touched the row for ``stale_after_seconds``.
        Of several engines racing for the same row exactly one UPDATE matches.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=stale_after_seconds)
        claimed = await self._update(
            job_id,
            SyncJob.status.in_(("running", "paused")),
            or_(
                SyncJob.worker_id.is_(None),
                SyncJob.last_updated < cutoff,
            ),
            worker_id=worker_id,
        )
        if claimed:
            logger.info("Ledger: job %s claimed by worker %s", job_id, worker_id)
        return bool(claimed)

    async def heartbeat(self, job_id: str, worker_id: str) -> None:
        await self._update(job_id, SyncJob.worker_id == worker_id)

    async def release(self, worker_id: str) -> int:
        """Drop ownership of every active job held by ``worker_id``."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(SyncJob)
                .where(SyncJob.worker_id == worker_id, SyncJob.status.in_(ACTIVE_STATUSES))
                .values(worker_id=None)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount

    async def last_completed(self, job_type: str, warehouse_id: Optional[str]) -> Optional[SyncJob]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SyncJob)
                .where(
                    SyncJob.job_type == job_type,
                    SyncJob.warehouse_id == warehouse_id,
                    SyncJob.status == "completed",
                )
                .order_by(SyncJob.start_time.desc(), SyncJob.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def stats(self, job_type: Optional[str] = None) -> dict[str, EntityStats]:
        """Aggregate run history per job type over the retained ledger."""
        totals = (
            select(
                SyncJob.job_type,
                func.count(SyncJob.id),
                func.sum(case((SyncJob.status == "completed", 1), else_=0)),
                func.sum(case((SyncJob.status == "failed", 1), else_=0)),
                func.sum(case((SyncJob.status == "stopped", 1), else_=0)),
                func.sum(SyncJob.processed_records),
                func.sum(SyncJob.inserted_records),
                func.sum(SyncJob.updated_records),
                func.sum(SyncJob.error_records),
            )
            .group_by(SyncJob.job_type)
        )
        latest_ids = select(func.max(SyncJob.id)).group_by(SyncJob.job_type)
        latest = select(SyncJob).where(SyncJob.id.in_(latest_ids))
        durations = select(SyncJob.job_type, SyncJob.start_time, SyncJob.end_time).where(
            SyncJob.status == "completed",
            SyncJob.start_time.is_not(None),
            SyncJob.end_time.is_not(None),
        )
        if job_type:
            totals = totals.where(SyncJob.job_type == job_type)
            latest = latest.where(SyncJob.job_type == job_type)
            durations = durations.where(SyncJob.job_type == job_type)

        async with self.session_factory() as db:
            stats = {
                row[0]: EntityStats(row[0], *(int(value or 0) for value in row[1:]))
                for row in (await db.execute(totals)).all()
            }
            for job in (await db.execute(latest)).scalars():
                stats[job.job_type].last_status = job.status
                stats[job.job_type].last_start_time = job.start_time
            elapsed: dict[str, list[float]] = {}
            for name, start, end in (await db.execute(durations)).all():
                elapsed.setdefault(name, []).append((end - start).total_seconds())
        for name, seconds in elapsed.items():
            stats[name].average_duration_seconds = round(sum(seconds) / len(seconds), 2)
        return stats

    async def purge_expired(self, retention_days: int) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        expired = select(SyncJob.job_id).where(SyncJob.created_at < cutoff)
        async with self.session_factory() as db:
            await db.execute(
                delete(SyncJobError)
                .where(SyncJobError.job_id.in_(expired))
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(
                delete(SyncJob).where(SyncJob.created_at < cutoff).execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount:
            logger.info("Ledger: purged %d jobs older than %d days", result.rowcount, retention_days)
        return result.rowcount
