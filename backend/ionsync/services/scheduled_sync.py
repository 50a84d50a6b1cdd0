import logging
from typing import Optional

from ionsync.exceptions import JobConflictError
from ionsync.services.job_ledger import JobLedger
from ionsync.services.sync_engine import StartResult, SyncEngine, SyncParams

logger = logging.getLogger(__name__)


async def purge_expired_jobs(ledger: JobLedger, retention_days: int) -> int:
    try:
        return await ledger.purge_expired(retention_days)
    except Exception as e:
        logger.error("Ledger retention purge failed: %s", e)
        return 0


async def scheduled_sync(
    engine: SyncEngine,
    entities: list[str],
    warehouse_id: Optional[str],
) -> list[StartResult]:
    """Start an incremental sync per configured entity.

    The first run for an entity is a full sync; later runs only ask for rows
    added since the start of the last completed job for the same warehouse.
    """
    started = []
    for name in entities:
        if await engine.ledger.find_active(name, warehouse_id) is not None:
            logger.info("Scheduled sync: %s already running for %s, skipped", name, warehouse_id)
            continue

        filters = {}
        last = await engine.ledger.last_completed(name, warehouse_id)
        if last is not None and last.start_time is not None:
            filters["start_date"] = last.start_time.strftime("%Y-%m-%d %H:%M:%S")

        try:
            result = await engine.start(SyncParams(entity=name, warehouse_id=warehouse_id, filters=filters))
        except (JobConflictError, ValueError) as e:
            logger.warning("Scheduled sync: %s not started: %s", name, e)
            continue
        logger.info(
            "Scheduled sync: %s job %s %s (%d records, since=%s)",
            name, result.job_id, result.status, result.total_records, filters.get("start_date", "beginning"),
        )
        started.append(result)
    return started
