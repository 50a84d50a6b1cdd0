import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ionsync.exceptions import JobConflictError, StoreError
from ionsync.models.sync_job import SyncJob
from ionsync.schemas.sync import (
    ControlAction,
    ControlRequest,
    ControlResponse,
    EntityInfo,
    EntityStatsResponse,
    JobStatusResponse,
    SyncStartRequest,
    SyncStartResponse,
)
from ionsync.services.batch_writer import MongoDocumentStore
from ionsync.services.entities import ENTITIES, get_entity
from ionsync.services.job_ledger import EntityStats, JobLedger, percent_complete
from ionsync.services.sync_engine import SyncEngine, SyncParams

logger = logging.getLogger(__name__)
router = APIRouter()


def get_ledger(request: Request) -> JobLedger:
    return request.app.state.ledger


def get_engine(request: Request) -> SyncEngine:
    return request.app.state.sync_engine


def get_store(request: Request) -> MongoDocumentStore:
    return request.app.state.document_store


def _job_response(job: SyncJob, errors: Optional[List[str]] = None) -> JobStatusResponse:
    return JobStatusResponse(
        job_id=job.job_id,
        job_type=job.job_type,
        warehouse_id=job.warehouse_id,
        status=job.status,
        total_records=job.total_records,
        processed_records=job.processed_records,
        inserted_records=job.inserted_records,
        updated_records=job.updated_records,
        error_records=job.error_records,
        percent_complete=percent_complete(job.processed_records, job.total_records),
        percent_attempted=percent_complete(job.processed_records + job.error_records, job.total_records),
        paused=job.paused,
        stop_requested=job.stop_requested,
        current_offset=job.current_offset,
        current_batch=job.current_batch,
        message=job.message,
        error=job.error,
        errors=errors or [],
        filters=job.filters or {},
        start_time=job.start_time,
        end_time=job.end_time,
        last_updated=job.last_updated,
    )


@router.post("/sync/jobs", response_model=SyncStartResponse)
async def start_sync(body: SyncStartRequest, engine: SyncEngine = Depends(get_engine)) -> SyncStartResponse:
    params = SyncParams(
        entity=body.entity,
        warehouse_id=body.warehouse_id,
        filters=body.filters.model_dump(exclude_none=True),
        batch_size=body.batch_size,
        record_ceiling=body.record_ceiling,
        client_job_id=body.client_job_id,
    )
    try:
        result = await engine.start(params)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except JobConflictError as e:
        logger.info("Sync start rejected, job %s is active: %s", e.job_id, e)
        raise HTTPException(status_code=409, detail={"message": str(e), "job_id": e.job_id}) from e
    return SyncStartResponse(
        job_id=result.job_id,
        status=result.status,
        total_records=result.total_records,
        error=result.error,
    )


@router.get("/sync/jobs", response_model=List[JobStatusResponse])
async def list_jobs(
    job_type: Optional[str] = None,
    limit: int = Query(40, ge=1, le=500),
    ledger: JobLedger = Depends(get_ledger),
) -> List[JobStatusResponse]:
    jobs = await ledger.list_jobs(job_type=job_type.lower() if job_type else None, limit=limit)
    return [_job_response(job) for job in jobs]


@router.get("/sync/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job(job_id: str, ledger: JobLedger = Depends(get_ledger)) -> JobStatusResponse:
    job = await ledger.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_response(job, await ledger.get_errors(job_id))


@router.post("/sync/jobs/{job_id}/control", response_model=ControlResponse)
async def control_job(
    job_id: str,
    body: ControlRequest,
    ledger: JobLedger = Depends(get_ledger),
) -> ControlResponse:
    handlers = {
        ControlAction.pause: ledger.request_pause,
        ControlAction.resume: ledger.request_resume,
        ControlAction.stop: ledger.request_stop,
    }
    ack = await handlers[body.action](job_id)
    if ack is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return ControlResponse(
        job_id=ack.job_id,
        action=ack.action,
        applied=ack.applied,
        status=ack.status,
        paused=ack.paused,
        stop_requested=ack.stop_requested,
    )


@router.get("/sync/entities", response_model=List[EntityInfo])
async def list_entities() -> List[EntityInfo]:
    return [
        EntityInfo(
            name=spec.name,
            table=spec.table,
            collection=spec.collection,
            key_fields=list(spec.key_fields),
            date_fields=list(spec.date_fields),
            supports_task_type=spec.task_type_column is not None,
        )
        for spec in ENTITIES.values()
    ]


@router.get("/sync/stats", response_model=List[EntityStatsResponse])
async def sync_stats(
    entity: Optional[str] = None,
    ledger: JobLedger = Depends(get_ledger),
    store: MongoDocumentStore = Depends(get_store),
) -> List[EntityStatsResponse]:
    if entity:
        try:
            specs = [get_entity(entity)]
        except KeyError as e:
            raise HTTPException(status_code=422, detail=str(e.args[0])) from e
    else:
        specs = list(ENTITIES.values())

    history = await ledger.stats(job_type=specs[0].name if entity else None)
    out = []
    for spec in specs:
        try:
            document_count = await store.count_documents(spec.collection)
        except StoreError as e:
            logger.warning("Stats: %s", e)
            document_count = None
        stats = history.get(spec.name) or EntityStats(spec.name)
        out.append(EntityStatsResponse(
            entity=spec.name,
            collection=spec.collection,
            document_count=document_count,
            runs=stats.runs,
            completed=stats.completed,
            failed=stats.failed,
            stopped=stats.stopped,
            processed_records=stats.processed_records,
            inserted_records=stats.inserted_records,
            updated_records=stats.updated_records,
            error_records=stats.error_records,
            average_duration_seconds=stats.average_duration_seconds,
            last_status=stats.last_status,
            last_start_time=stats.last_start_time,
        ))
    return out
