"""
Generic polling-batch sync engine.

One job = one entity/warehouse/filter combination. The engine counts the
filtered rows on the remote side, then walks LIMIT/OFFSET windows in
increasing order: submit page query -> poll until terminal -> fetch -> transform
-> bulk upsert -> advance ledger counters. Everything a client needs to follow
the job lives in the ledger; the engine itself only keeps the asyncio tasks.

Failure policy:
- count query failure is fatal (job -> failed)
- page query failure is recorded, the page is skipped, offset still advances
- a failed bulk write counts the page's rows as errors, the job continues
- a short page means the remote data shrank since the count; the job completes
- pause/stop are honoured before each page and between write chunks of a page
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from ionsync.config import settings
from ionsync.exceptions import CountQueryError, JobConflictError, PageQueryError, RemoteQueryError, WriteError
from ionsync.services.batch_writer import build_operations
from ionsync.services.entities import EntitySpec, get_entity
from ionsync.services.ion_api import parse_count, run_query
from ionsync.services.job_ledger import JobLedger
from ionsync.services.query_builder import build_count_query, build_page_query
from ionsync.services.transformer import transform

logger = logging.getLogger(__name__)


@dataclass
class SyncParams:
    entity: str
    warehouse_id: Optional[str] = None
    filters: dict[str, Any] = field(default_factory=dict)
    batch_size: Optional[int] = None
    record_ceiling: Optional[int] = None
    client_job_id: Optional[str] = None


@dataclass
class StartResult:
    job_id: str
    status: str
    total_records: int
    error: Optional[str] = None
    existing: bool = False


class SyncEngine:
    def __init__(
        self,
        ledger: JobLedger,
        query_client,
        store,
        *,
        poll_interval: float = 2.0,
        max_poll_attempts: int = 150,
        pause_poll_interval: float = 5.0,
        page_delay: float = 0.0,
        page_retry_attempts: int = 0,
        page_retry_backoff: float = 1.0,
        default_batch_size: int = 1000,
        default_record_ceiling: int = 10000,
        max_batch_size: int = 10000,
        write_chunk_size: int = 500,
        worker_id: Optional[str] = None,
        stale_after_seconds: int = 900,
    ) -> None:
        self.ledger = ledger
        self.query_client = query_client
        self.store = store
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.pause_poll_interval = pause_poll_interval
        self.page_delay = page_delay
        self.page_retry_attempts = page_retry_attempts
        self.page_retry_backoff = page_retry_backoff
        self.default_batch_size = default_batch_size
        self.default_record_ceiling = default_record_ceiling
        self.max_batch_size = max_batch_size
        self.write_chunk_size = write_chunk_size
        self.worker_id = worker_id or uuid.uuid4().hex
        self.stale_after_seconds = stale_after_seconds
        self._tasks: dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(cls, ledger: JobLedger, query_client, store) -> "SyncEngine":
        return cls(
            ledger,
            query_client,
            store,
            poll_interval=settings.query_poll_interval,
            max_poll_attempts=settings.query_max_poll_attempts,
            pause_poll_interval=settings.pause_poll_interval,
            page_delay=settings.page_delay,
            page_retry_attempts=settings.page_retry_attempts,
            page_retry_backoff=settings.page_retry_backoff,
            default_batch_size=settings.default_batch_size,
            default_record_ceiling=settings.default_record_ceiling,
            max_batch_size=settings.max_batch_size,
            write_chunk_size=settings.write_chunk_size,
            stale_after_seconds=settings.job_stale_after_seconds,
        )

    # ------------------------------------------------------------------
    # Task bookkeeping
    # ------------------------------------------------------------------

    def _launch(self, job_id: str, coro) -> None:
        task = asyncio.create_task(coro, name=f"sync-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))

    def is_running(self, job_id: str) -> bool:
        return job_id in self._tasks

    async def wait(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is not None:
            await task

    async def shutdown(self) -> None:
        # Cancelled jobs stay running/paused in the ledger, unowned, so any engine can resume them
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.ledger.release(self.worker_id)
        if tasks:
            logger.info("Sync engine stopped %d in-flight job(s)", len(tasks))

    # ------------------------------------------------------------------
    # Initializing + Counting
    # ------------------------------------------------------------------

    def _validate(self, params: SyncParams) -> tuple[EntitySpec, int, int]:
        try:
            entity = get_entity(params.entity)
        except KeyError as e:
            raise ValueError(str(e.args[0])) from e
        batch_size = params.batch_size or self.default_batch_size
        record_ceiling = params.record_ceiling or self.default_record_ceiling
        if not 1 <= batch_size <= self.max_batch_size:
            raise ValueError(f"batch_size must be between 1 and {self.max_batch_size}")
        if record_ceiling < 1:
            raise ValueError("record_ceiling must be at least 1")
        return entity, batch_size, record_ceiling

    async def _count(self, entity: EntitySpec, warehouse_id: Optional[str], filters: dict[str, Any]) -> int:
        sql = build_count_query(entity, warehouse_id, filters)
        try:
            rows = await run_query(self.query_client, sql, 0, 1, self.poll_interval, self.max_poll_attempts)
        except RemoteQueryError as e:
            raise CountQueryError(f"Count query failed: {e}") from e
        return parse_count(rows)

    async def start(self, params: SyncParams) -> StartResult:
        """Create the ledger entry, count, and launch the paging loop in the background.

        Returns once counting is done; the caller polls the ledger for progress.
        """
        entity, batch_size, record_ceiling = self._validate(params)
        filters = {k: v for k, v in (params.filters or {}).items() if v not in (None, "")}

        if params.client_job_id:
            existing = await self.ledger.get(params.client_job_id)
            if existing is not None:
                logger.info("Job %s already exists (%s), not starting again", existing.job_id, existing.status)
                return StartResult(
                    job_id=existing.job_id,
                    status=existing.status,
                    total_records=existing.total_records,
                    error=existing.error,
                    existing=True,
                )

        active = await self.ledger.find_active(entity.name, params.warehouse_id)
        if active is not None:
            raise JobConflictError(
                f"A {entity.name} sync for warehouse {params.warehouse_id} is already {active.status}",
                job_id=active.job_id,
            )

        job_id = await self.ledger.create(
            entity.name,
            warehouse_id=params.warehouse_id,
            filters=filters,
            options={"batch_size": batch_size, "record_ceiling": record_ceiling},
            job_id=params.client_job_id,
            worker_id=self.worker_id,
        )

        try:
            remote_count = await self._count(entity, params.warehouse_id, filters)
        except Exception as e:
            logger.error("Job %s: count phase failed: %s", job_id, e)
            message = str(e) if isinstance(e, CountQueryError) else f"Count query failed: {e}"
            await self.ledger.record_error(job_id, message)
            await self.ledger.set_status(job_id, "failed", error=message, message="Count query failed")
            return StartResult(job_id=job_id, status="failed", total_records=0, error=message)

        total = min(remote_count, record_ceiling)
        await self.ledger.set_total(job_id, total)
        logger.info(
            "Job %s: %s has %d matching records, syncing %d in batches of %d",
            job_id, entity.name, remote_count, total, batch_size,
        )

        self._launch(job_id, self.run(job_id, entity, params.warehouse_id, filters, batch_size, total))
        return StartResult(job_id=job_id, status="running", total_records=total)

    async def resume_interrupted(self) -> list[str]:
        """Relaunch running/paused jobs that no live engine owns, from their saved offset.

        A job is only launched after this engine wins the ledger claim on it, so
        engines sharing one ledger never run the same job twice.
        """
        resumed = []
        for job in await self.ledger.find_interrupted():
            if self.is_running(job.job_id):
                continue
            if not await self.ledger.claim(job.job_id, self.worker_id, self.stale_after_seconds):
                continue
            self._launch(job.job_id, self._resume(job.job_id))
            resumed.append(job.job_id)
        if resumed:
            logger.info("Resuming %d interrupted job(s): %s", len(resumed), ", ".join(resumed))
        return resumed

    async def _resume(self, job_id: str) -> None:
        job = await self.ledger.get(job_id)
        if job is None:
            return
        try:
            entity = get_entity(job.job_type)
            total = job.total_records
            if total == 0 and job.current_batch == 0:
                # Interrupted before the count was stored
                record_ceiling = (job.options or {}).get("record_ceiling") or self.default_record_ceiling
                total = min(await self._count(entity, job.warehouse_id, job.filters or {}), record_ceiling)
                await self.ledger.set_total(job_id, total)
        except Exception as e:
            logger.error("Job %s: cannot resume: %s", job_id, e)
            await self.ledger.record_error(job_id, f"Resume failed: {e}")
            await self._finalize(job_id, "failed", error=f"Resume failed: {e}")
            return
        batch_size = (job.options or {}).get("batch_size") or self.default_batch_size
        await self.run(
            job_id, entity, job.warehouse_id, job.filters or {}, batch_size, total,
            offset=job.current_offset, batch_number=job.current_batch,
        )

    # ------------------------------------------------------------------
    # PagingLoop
    # ------------------------------------------------------------------

    async def _check_controls(self, job_id: str) -> bool:
        """Honour pause/stop flags. Returns False when the job should stop."""
        job = await self.ledger.get(job_id)
        if job is None:
            raise RuntimeError(f"Ledger entry for job {job_id} disappeared")
        if job.stop_requested or not job.paused:
            if job.status == "paused":
                await self.ledger.set_status(job_id, "running")
            return not job.stop_requested

        if job.status == "running":
            await self.ledger.set_status(job_id, "paused", message=f"Paused at offset {job.current_offset}")
        logger.info("Job %s paused at offset %d", job_id, job.current_offset)
        while True:
            await asyncio.sleep(self.pause_poll_interval)
            await self.ledger.heartbeat(job_id, self.worker_id)
            job = await self.ledger.get(job_id)
            if job is None:
                raise RuntimeError(f"Ledger entry for job {job_id} disappeared")
            if job.stop_requested or not job.paused:
                break
        # Leave pause through running, also when finalizing as stopped
        await self.ledger.set_status(job_id, "running", message=f"Resumed at offset {job.current_offset}")
        logger.info("Job %s resumed (stop_requested=%s)", job_id, job.stop_requested)
        return not job.stop_requested

    async def _fetch_page(self, sql: str, limit: int) -> list[dict[str, Any]]:
        attempts = self.page_retry_attempts + 1
        for attempt in range(1, attempts + 1):
            try:
                return await run_query(self.query_client, sql, 0, limit, self.poll_interval, self.max_poll_attempts)
            except RemoteQueryError as e:
                if attempt == attempts:
                    raise PageQueryError(str(e)) from e
                logger.warning("Page query attempt %d/%d failed, retrying: %s", attempt, attempts, e)
                await asyncio.sleep(self.page_retry_backoff * attempt)

    async def _write_page(self, job_id: str, entity: EntitySpec, rows: list[dict[str, Any]]):
        documents = [transform(row, entity, job_id) for row in rows]
        try:
            operations = build_operations(documents, entity.key_fields)
        except ValueError as e:
            raise WriteError(str(e)) from e
        return await self.store.bulk_upsert(entity.collection, operations)

    async def _write_chunk(
        self, job_id: str, entity: EntitySpec, rows: list[dict[str, Any]], batch_number: int, offset: int,
    ) -> tuple[int, int, int, int]:
        """Upsert one slice of a page. Returns (processed, inserted, updated, errors)."""
        if not rows:
            return 0, 0, 0, 0
        try:
            result = await self._write_page(job_id, entity, rows)
        except WriteError as e:
            logger.error("Job %s: batch %d write failed: %s", job_id, batch_number, e)
            await self.ledger.record_error(job_id, f"Batch {batch_number} at offset {offset}: {e}")
            return 0, 0, 0, len(rows)
        if result.errors:
            await self.ledger.record_error(
                job_id,
                f"Batch {batch_number} at offset {offset}: {result.errors} write error(s): "
                + "; ".join(result.messages[:5]),
            )
        return len(rows) - result.errors, result.inserted, result.modified, result.errors

    async def run(
        self,
        job_id: str,
        entity: EntitySpec,
        warehouse_id: Optional[str],
        filters: dict[str, Any],
        batch_size: int,
        total: int,
        offset: int = 0,
        batch_number: int = 0,
    ) -> None:
        outcome = "completed"
        error = None
        try:
            while offset < total:
                if not await self._check_controls(job_id):
                    outcome = "stopped"
                    logger.info("Job %s: stop requested at offset %d", job_id, offset)
                    break

                limit = min(batch_size, total - offset)
                batch_number += 1
                sql = build_page_query(entity, offset, limit, warehouse_id, filters)

                try:
                    rows = await self._fetch_page(sql, limit)
                except PageQueryError as e:
                    logger.error("Job %s: batch %d (offset %d) failed, skipping: %s", job_id, batch_number, offset, e)
                    await self.ledger.record_error(job_id, f"Batch {batch_number} at offset {offset}: {e}")
                    offset += limit
                    await self.ledger.advance(
                        job_id, errors=limit, current_offset=offset, current_batch=batch_number,
                        message=f"Batch {batch_number} skipped after query failure",
                    )
                    await self._page_delay(offset, total)
                    continue

                rows = rows[:limit]
                short_page = len(rows) < limit
                chunks = [rows[i:i + self.write_chunk_size] for i in range(0, len(rows), self.write_chunk_size)]
                written = processed = inserted = updated = errors = 0
                for index, chunk in enumerate(chunks or [[]]):
                    # Controls are honoured between chunks of a large page too
                    if index and not await self._check_controls(job_id):
                        outcome = "stopped"
                        break
                    counts = await self._write_chunk(job_id, entity, chunk, batch_number, offset + written)
                    written += len(chunk)
                    processed += counts[0]
                    inserted += counts[1]
                    updated += counts[2]
                    errors += counts[3]
                    last = index == len(chunks) - 1 or not chunks
                    await self.ledger.advance(
                        job_id,
                        processed=counts[0],
                        inserted=counts[1],
                        updated=counts[2],
                        errors=counts[3],
                        current_offset=offset + limit if last else offset + written,
                        current_batch=batch_number,
                        message=f"Batch {batch_number}: {written} records ({inserted} inserted, {updated} updated)",
                    )
                logger.info(
                    "Job %s: batch %d processed %d records (%d inserted, %d updated, %d errors)",
                    job_id, batch_number, processed, inserted, updated, errors,
                )
                if outcome == "stopped":
                    logger.info("Job %s: stop requested at offset %d", job_id, offset + written)
                    break
                offset += limit

                if short_page:
                    # Remote data shrank since the count; nothing more to fetch
                    logger.info("Job %s: short page (%d < %d), ending early", job_id, len(rows), limit)
                    break

                await self._page_delay(offset, total)
        except Exception as e:
            logger.exception("Job %s failed: %s", job_id, e)
            outcome = "failed"
            error = str(e)

        await self._finalize(job_id, outcome, error=error)

    async def _page_delay(self, offset: int, total: int) -> None:
        if self.page_delay and offset < total:
            await asyncio.sleep(self.page_delay)

    # ------------------------------------------------------------------
    # Finalizing
    # ------------------------------------------------------------------

    async def _finalize(self, job_id: str, outcome: str, error: Optional[str] = None) -> None:
        try:
            job = await self.ledger.get(job_id)
            if job is not None and job.status == "paused":
                await self.ledger.set_status(job_id, "running")
            if error:
                await self.ledger.record_error(job_id, error)
            messages = {
                "completed": "Sync completed",
                "stopped": "Sync stopped by request",
                "failed": "Sync failed",
            }
            await self.ledger.set_status(job_id, outcome, error=error, message=messages[outcome])
            job = await self.ledger.get(job_id)
            if job is not None:
                logger.info(
                    "Job %s %s: %d/%d processed, %d inserted, %d updated, %d errors",
                    job_id, job.status, job.processed_records, job.total_records,
                    job.inserted_records, job.updated_records, job.error_records,
                )
        except Exception as e:
            logger.error("Job %s: could not finalize ledger as %s: %s", job_id, outcome, e)
