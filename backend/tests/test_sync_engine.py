import asyncio

import pytest

from ionsync.exceptions import JobConflictError
from ionsync.services.sync_engine import SyncParams


async def _wait_for_status(ledger, job_id, status, timeout=5.0):
    async def _poll():
        while (await ledger.get(job_id)).status != status:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout)


@pytest.mark.asyncio
async def test_full_sync_writes_every_record(ledger, store, make_engine, make_remote, make_rows):
    remote = make_remote(make_rows(3))
    engine = make_engine(remote)

    result = await engine.start(SyncParams(entity="taskdetail", warehouse_id="wmwhse1", batch_size=2))
    assert result.status == "running"
    assert result.total_records == 3
    await engine.wait(result.job_id)

    job = await ledger.get(result.job_id)
    assert job.status == "completed"
    assert (job.processed_records, job.inserted_records, job.error_records) == (3, 3, 0)
    assert job.current_offset == 3
    assert job.current_batch == 2
    assert job.end_time is not None
    pages = remote.page_queries()
    assert pages[0].endswith("LIMIT 2 OFFSET 0")
    assert pages[1].endswith("LIMIT 1 OFFSET 2")
    docs = store.documents("taskdetail")
    assert len(docs) == 3
    assert all(doc["_syncJobId"] == result.job_id for doc in docs)
    assert all(doc["QTY"] == 5.0 for doc in docs)


@pytest.mark.asyncio
async def test_rerun_updates_instead_of_duplicating(ledger, store, make_engine, make_remote, make_rows):
    engine = make_engine(make_remote(make_rows(3)))

    first = await engine.start(SyncParams(entity="taskdetail", warehouse_id="wmwhse1"))
    await engine.wait(first.job_id)
    second = await engine.start(SyncParams(entity="taskdetail", warehouse_id="wmwhse1"))
    await engine.wait(second.job_id)

    job = await ledger.get(second.job_id)
    assert (job.inserted_records, job.updated_records) == (0, 3)
    assert len(store.documents("taskdetail")) == 3


@pytest.mark.asyncio
async def test_zero_matching_records_completes_immediately(ledger, make_engine, make_remote):
    remote = make_remote([])
    engine = make_engine(remote)

    result = await engine.start(SyncParams(entity="orders"))
    await engine.wait(result.job_id)

    job = await ledger.get(result.job_id)
    assert job.status == "completed"
    assert job.processed_records == 0
    assert remote.page_queries() == []


@pytest.mark.asyncio
async def test_failed_page_is_skipped(ledger, store, make_engine, make_remote, make_rows):
    remote = make_remote(make_rows(6), fail_offsets={2})
    engine = make_engine(remote)

    result = await engine.start(SyncParams(entity="taskdetail", batch_size=2))
    await engine.wait(result.job_id)

    job = await ledger.get(result.job_id)
    assert job.status == "completed"
    assert job.processed_records == 4
    assert job.error_records == 2
    assert job.current_offset == 6
    errors = await ledger.get_errors(result.job_id)
    assert len(errors) == 1
    assert "offset 2" in errors[0]
    assert {doc["TASKDETAILKEY"] for doc in store.documents("taskdetail")} == {
        "T000001", "T000002", "T000005", "T000006",
    }


@pytest.mark.asyncio
async def test_failed_page_is_retried_when_configured(ledger, make_engine, make_remote, make_rows):
    remote = make_remote(make_rows(4), fail_offsets={0}, fail_once=True)
    engine = make_engine(remote, page_retry_attempts=1, page_retry_backoff=0)

    result = await engine.start(SyncParams(entity="taskdetail", batch_size=2))
    await engine.wait(result.job_id)

    job = await ledger.get(result.job_id)
    assert (job.processed_records, job.error_records) == (4, 0)
    assert len(remote.page_queries()) == 3


@pytest.mark.asyncio
async def test_failed_write_counts_page_as_errors(ledger, make_engine, make_remote, make_rows, make_store):
    engine = make_engine(make_remote(make_rows(4)), target=make_store(fail_writes=1))

    result = await engine.start(SyncParams(entity="taskdetail", batch_size=2))
    await engine.wait(result.job_id)

    job = await ledger.get(result.job_id)
    assert job.status == "completed"
    assert (job.processed_records, job.error_records) == (2, 2)
    assert "connection reset" in (await ledger.get_errors(result.job_id))[0]


@pytest.mark.asyncio
async def test_short_page_ends_job_early(ledger, make_engine, make_remote, make_rows):
    # remote reports 10 rows but only 5 are left by the time pages are read
    remote = make_remote(make_rows(5), count=10)
    engine = make_engine(remote)

    result = await engine.start(SyncParams(entity="taskdetail", batch_size=2))
    assert result.total_records == 10
    await engine.wait(result.job_id)

    job = await ledger.get(result.job_id)
    assert job.status == "completed"
    assert job.processed_records == 5
    assert job.total_records == 10
    assert len(remote.page_queries()) == 3


@pytest.mark.asyncio
async def test_record_ceiling_caps_total(ledger, make_engine, make_remote, make_rows):
    remote = make_remote(make_rows(10))
    engine = make_engine(remote)

    result = await engine.start(SyncParams(entity="taskdetail", batch_size=2, record_ceiling=5))
    await engine.wait(result.job_id)

    job = await ledger.get(result.job_id)
    assert job.total_records == 5
    assert job.processed_records == 5
    assert remote.page_queries()[-1].endswith("LIMIT 1 OFFSET 4")


@pytest.mark.asyncio
async def test_count_failure_fails_job(ledger, make_engine, make_remote, make_rows):
    remote = make_remote(make_rows(3), fail_count=True)
    engine = make_engine(remote)

    result = await engine.start(SyncParams(entity="taskdetail"))

    assert result.status == "failed"
    assert "Count query failed" in result.error
    job = await ledger.get(result.job_id)
    assert job.status == "failed"
    assert job.end_time is not None
    assert remote.page_queries() == []
    assert not engine.is_running(result.job_id)


@pytest.mark.asyncio
async def test_invalid_parameters_raise(make_engine, make_remote):
    engine = make_engine(make_remote([]), max_batch_size=100)

    with pytest.raises(ValueError, match="Unknown entity"):
        await engine.start(SyncParams(entity="shipments"))
    with pytest.raises(ValueError, match="batch_size"):
        await engine.start(SyncParams(entity="orders", batch_size=500))


@pytest.mark.asyncio
async def test_client_job_id_is_idempotent(ledger, make_engine, make_remote, make_rows):
    remote = make_remote(make_rows(2))
    engine = make_engine(remote)

    first = await engine.start(SyncParams(entity="taskdetail", client_job_id="nightly-0401"))
    assert first.job_id == "nightly-0401"
    await engine.wait(first.job_id)
    submitted = len(remote.submitted)

    again = await engine.start(SyncParams(entity="taskdetail", client_job_id="nightly-0401"))

    assert again.existing is True
    assert again.status == "completed"
    assert len(remote.submitted) == submitted


@pytest.mark.asyncio
async def test_second_active_job_conflicts(ledger, make_engine, make_remote):
    active = await ledger.create("taskdetail", warehouse_id="wmwhse1")
    engine = make_engine(make_remote([]))

    with pytest.raises(JobConflictError) as exc:
        await engine.start(SyncParams(entity="taskdetail", warehouse_id="wmwhse1"))
    assert exc.value.job_id == active

    other = await engine.start(SyncParams(entity="taskdetail", warehouse_id="wmwhse2"))
    assert other.job_id != active
    await engine.wait(other.job_id)


@pytest.mark.asyncio
async def test_stop_request_ends_job_after_current_page(ledger, make_engine, make_remote, make_rows):
    async def stop_after_first(offset):
        if offset == 0:
            await ledger.request_stop("stop-me")

    remote = make_remote(make_rows(6), after_page=stop_after_first)
    engine = make_engine(remote)

    result = await engine.start(SyncParams(entity="taskdetail", batch_size=2, client_job_id="stop-me"))
    await engine.wait(result.job_id)

    job = await ledger.get(result.job_id)
    assert job.status == "stopped"
    assert job.processed_records == 2
    assert len(remote.page_queries()) == 1


@pytest.mark.asyncio
async def test_pause_then_resume(ledger, make_engine, make_remote, make_rows):
    async def pause_after_first(offset):
        if offset == 0:
            await ledger.request_pause("pause-me")

    remote = make_remote(make_rows(6), after_page=pause_after_first)
    engine = make_engine(remote)

    result = await engine.start(SyncParams(entity="taskdetail", batch_size=2, client_job_id="pause-me"))
    await _wait_for_status(ledger, result.job_id, "paused")

    job = await ledger.get(result.job_id)
    assert job.processed_records == 2
    assert len(remote.page_queries()) == 1

    ack = await ledger.request_resume(result.job_id)
    assert ack.applied
    await engine.wait(result.job_id)

    job = await ledger.get(result.job_id)
    assert job.status == "completed"
    assert job.processed_records == 6


@pytest.mark.asyncio
async def test_stop_while_paused(ledger, make_engine, make_remote, make_rows):
    async def pause_after_first(offset):
        if offset == 0:
            await ledger.request_pause("pause-stop")

    engine = make_engine(make_remote(make_rows(6), after_page=pause_after_first))

    result = await engine.start(SyncParams(entity="taskdetail", batch_size=2, client_job_id="pause-stop"))
    await _wait_for_status(ledger, result.job_id, "paused")
    await ledger.request_stop(result.job_id)
    await engine.wait(result.job_id)

    job = await ledger.get(result.job_id)
    assert job.status == "stopped"
    assert job.processed_records == 2


@pytest.mark.asyncio
async def test_resume_interrupted_continues_from_saved_offset(ledger, make_engine, make_remote, make_rows):
    job_id = await ledger.create("taskdetail", options={"batch_size": 2, "record_ceiling": 100})
    await ledger.set_total(job_id, 4)
    await ledger.advance(job_id, processed=2, inserted=2, current_offset=2, current_batch=1)
    remote = make_remote(make_rows(4))
    engine = make_engine(remote)

    assert await engine.resume_interrupted() == [job_id]
    await engine.wait(job_id)

    job = await ledger.get(job_id)
    assert job.status == "completed"
    assert job.processed_records == 4
    assert job.current_batch == 2
    pages = remote.page_queries()
    assert len(pages) == 1
    assert pages[0].endswith("LIMIT 2 OFFSET 2")


@pytest.mark.asyncio
async def test_shutdown_leaves_job_resumable(ledger, make_engine, make_remote, make_rows):
    async def pause_after_first(offset):
        if offset == 0:
            await ledger.request_pause("shutdown-me")

    engine = make_engine(make_remote(make_rows(6), after_page=pause_after_first))
    result = await engine.start(SyncParams(entity="taskdetail", batch_size=2, client_job_id="shutdown-me"))
    await _wait_for_status(ledger, result.job_id, "paused")

    await engine.shutdown()

    assert not engine.is_running(result.job_id)
    assert [job.job_id for job in await ledger.find_interrupted()] == [result.job_id]


@pytest.mark.asyncio
async def test_shutdown_releases_ownership(ledger, make_engine, make_remote, make_rows):
    async def pause_after_first(offset):
        if offset == 0:
            await ledger.request_pause("release-me")

    engine = make_engine(make_remote(make_rows(6), after_page=pause_after_first))
    result = await engine.start(SyncParams(entity="taskdetail", batch_size=2, client_job_id="release-me"))
    await _wait_for_status(ledger, result.job_id, "paused")
    assert (await ledger.get(result.job_id)).worker_id == engine.worker_id

    await engine.shutdown()

    assert (await ledger.get(result.job_id)).worker_id is None


@pytest.mark.asyncio
async def test_second_engine_does_not_resume_a_live_job(ledger, store, make_engine, make_remote, make_rows):
    async def pause_after_first(offset):
        if offset == 0:
            await ledger.request_pause("shared")

    owner = make_engine(make_remote(make_rows(6), after_page=pause_after_first), worker_id="engine-a")
    other_remote = make_remote(make_rows(6))
    other = make_engine(other_remote, worker_id="engine-b")

    result = await owner.start(SyncParams(entity="taskdetail", batch_size=2, client_job_id="shared"))
    await _wait_for_status(ledger, result.job_id, "paused")

    assert await other.resume_interrupted() == []
    assert not other.is_running(result.job_id)

    await ledger.request_resume(result.job_id)
    await owner.wait(result.job_id)

    job = await ledger.get(result.job_id)
    assert job.status == "completed"
    assert job.processed_records == 6
    assert job.processed_records <= job.total_records
    assert other_remote.submitted == []
    assert len(store.documents("taskdetail")) == 6


@pytest.mark.asyncio
async def test_job_of_stale_owner_is_taken_over(ledger, make_engine, make_remote, make_rows):
    job_id = await ledger.create(
        "taskdetail", options={"batch_size": 2, "record_ceiling": 100}, worker_id="crashed-engine",
    )
    await ledger.set_total(job_id, 4)
    await ledger.advance(job_id, processed=2, inserted=2, current_offset=2, current_batch=1)
    engine = make_engine(make_remote(make_rows(4)), worker_id="engine-b", stale_after_seconds=0)

    assert await engine.resume_interrupted() == [job_id]
    await engine.wait(job_id)

    job = await ledger.get(job_id)
    assert job.status == "completed"
    assert job.worker_id == "engine-b"
    assert job.processed_records == 4


@pytest.mark.asyncio
async def test_job_of_recently_active_owner_is_left_alone(ledger, make_engine, make_remote):
    job_id = await ledger.create("taskdetail", worker_id="busy-engine")
    engine = make_engine(make_remote([]), worker_id="engine-b", stale_after_seconds=900)

    assert await engine.resume_interrupted() == []
    assert (await ledger.get(job_id)).worker_id == "busy-engine"


@pytest.mark.asyncio
async def test_expired_result_page_is_skipped_not_read_as_empty(ledger, store, make_engine, make_remote, make_rows):
    remote = make_remote(make_rows(6), expired_offsets={2})
    engine = make_engine(remote)

    result = await engine.start(SyncParams(entity="taskdetail", batch_size=2))
    await engine.wait(result.job_id)

    job = await ledger.get(result.job_id)
    assert job.status == "completed"
    assert (job.processed_records, job.error_records) == (4, 2)
    assert len(remote.page_queries()) == 3
    errors = await ledger.get_errors(result.job_id)
    assert len(errors) == 1
    assert "result expired" in errors[0]
    assert len(store.documents("taskdetail")) == 4


@pytest.mark.asyncio
async def test_finished_queries_are_released(make_engine, make_remote, make_rows):
    remote = make_remote(make_rows(4), fail_offsets={2})
    engine = make_engine(remote)

    result = await engine.start(SyncParams(entity="taskdetail", batch_size=2))
    await engine.wait(result.job_id)

    assert sorted(remote.released) == sorted(f"q{n}" for n in range(1, len(remote.submitted) + 1))


@pytest.mark.asyncio
async def test_stop_is_honoured_between_write_chunks(ledger, store, make_engine, make_remote, make_rows):
    async def stop_during_page(offset):
        if offset == 0:
            await ledger.request_stop("chunked-stop")

    engine = make_engine(make_remote(make_rows(6), after_page=stop_during_page), write_chunk_size=2)

    result = await engine.start(SyncParams(entity="taskdetail", batch_size=6, client_job_id="chunked-stop"))
    await engine.wait(result.job_id)

    job = await ledger.get(result.job_id)
    assert job.status == "stopped"
    assert job.processed_records == 2
    assert job.current_offset == 2
    assert len(store.documents("taskdetail")) == 2


@pytest.mark.asyncio
async def test_pause_between_write_chunks_then_resume(ledger, store, make_engine, make_remote, make_rows):
    async def pause_during_page(offset):
        if offset == 0:
            await ledger.request_pause("chunked-pause")

    remote = make_remote(make_rows(6), after_page=pause_during_page)
    engine = make_engine(remote, write_chunk_size=2)

    result = await engine.start(SyncParams(entity="taskdetail", batch_size=6, client_job_id="chunked-pause"))
    await _wait_for_status(ledger, result.job_id, "paused")

    job = await ledger.get(result.job_id)
    assert job.processed_records == 2
    assert job.current_offset == 2

    await ledger.request_resume(result.job_id)
    await engine.wait(result.job_id)

    job = await ledger.get(result.job_id)
    assert job.status == "completed"
    assert (job.processed_records, job.current_offset) == (6, 6)
    assert len(remote.page_queries()) == 1
    assert len(store.documents("taskdetail")) == 6
