import os
import re

# Set required env vars before any ionsync module is imported so
# pydantic-settings validation succeeds during tests.
_test_env = {
    "ION_TENANT": "TEST_TENANT",
    "ION_SAAK": "test-saak",
    "ION_SASK": "test-sask",
    "ION_CLIENT_ID": "test-client-id",
    "ION_CLIENT_SECRET": "test-client-secret",
    "ION_API_URL": "https://ion.test",
    "ION_SSO_URL": "https://sso.test/TEST_TENANT/as/",
    "MONGODB_URI": "mongodb://localhost:27017",
    "MONGODB_DATABASE": "wms_test",
    "LEDGER_DATABASE_URL": "sqlite+aiosqlite:///:memory:",
    "SCHEDULER_ENABLED": "false",
    "CORS_ORIGINS": '["http://localhost:5173"]',
}

for key, value in _test_env.items():
    os.environ.setdefault(key, value)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from ionsync.exceptions import WriteError  # noqa: E402
from ionsync.pg_database import Base  # noqa: E402
from ionsync.models import sync_job  # noqa: E402,F401
from ionsync.services.batch_writer import WriteResult  # noqa: E402
from ionsync.services.ion_api import QueryStatus, _rows_from_payload  # noqa: E402
from ionsync.services.job_ledger import JobLedger  # noqa: E402
from ionsync.services.sync_engine import SyncEngine  # noqa: E402

_PAGE = re.compile(r"LIMIT (\d+) OFFSET (\d+)")


class FakeRemote:
    """Stands in for IonQueryClient: answers COUNT and LIMIT/OFFSET queries from a row list."""

    def __init__(
        self, rows, count=None, fail_count=False, fail_offsets=(), fail_once=False, after_page=None, expired_offsets=(),
    ):
        self.rows = list(rows)
        self.count = count
        self.fail_count = fail_count
        self.fail_offsets = set(fail_offsets)
        self.fail_once = fail_once
        self.after_page = after_page
        self.expired_offsets = set(expired_offsets)
        self.submitted = []
        self.released = []
        self._queries = {}

    def page_queries(self):
        return [sql for sql in self.submitted if "COUNT(*)" not in sql]

    async def submit(self, sql):
        query_id = f"q{len(self.submitted) + 1}"
        self.submitted.append(sql)
        self._queries[query_id] = sql
        return query_id

    async def poll_status(self, query_id):
        sql = self._queries[query_id]
        if "COUNT(*)" in sql:
            if self.fail_count:
                return QueryStatus(status="failed", message="count exploded")
            return QueryStatus(status="completed")
        offset = int(_PAGE.search(sql).group(2))
        if offset in self.fail_offsets:
            if self.fail_once:
                self.fail_offsets.discard(offset)
            return QueryStatus(status="failed", message=f"page at {offset} exploded")
        return QueryStatus(status="completed")

    async def fetch_page(self, query_id, offset=0, limit=1000):
        sql = self._queries[query_id]
        if "COUNT(*)" in sql:
            return [{"count": len(self.rows) if self.count is None else self.count}]
        page_limit, page_offset = (int(g) for g in _PAGE.search(sql).groups())
        if page_offset in self.expired_offsets:
            return _rows_from_payload({"error": "result expired"})
        rows = self.rows[page_offset:page_offset + page_limit]
        if self.after_page is not None:
            await self.after_page(page_offset)
        return [dict(row) for row in rows]

    def release(self, query_id):
        self.released.append(query_id)


class FakeStore:
    """In-memory document store with upsert-by-filter semantics."""

    def __init__(self, fail_writes=0):
        self.collections = {}
        self.fail_writes = fail_writes
        self.calls = 0

    def documents(self, collection):
        return list(self.collections.get(collection, {}).values())

    async def count_documents(self, collection):
        return len(self.collections.get(collection, {}))

    async def bulk_upsert(self, collection, operations):
        self.calls += 1
        if self.fail_writes:
            self.fail_writes -= 1
            raise WriteError(f"Bulk upsert into {collection} failed: connection reset")
        docs = self.collections.setdefault(collection, {})
        result = WriteResult()
        for op in operations:
            key = tuple(sorted(op.filter.items()))
            if key in docs:
                docs[key].update(op.update["$set"])
                result.modified += 1
            else:
                docs[key] = {**op.filter, **op.update["$set"]}
                result.inserted += 1
        return result


def task_rows(count, warehouse="wmwhse1", start=1):
    return [
        {
            "WHSEID": warehouse,
            "TASKDETAILKEY": f"T{n:06d}",
            "SERIALKEY": n,
            "TASKTYPE": "PK",
            "QTY": "5",
            "ADDDATE": "2024-03-01T08:00:00Z",
        }
        for n in range(start, start + count)
    ]


@pytest.fixture
def make_remote():
    return FakeRemote


@pytest.fixture
def make_rows():
    return task_rows


@pytest.fixture
def make_store():
    return FakeStore


@pytest.fixture
def store():
    return FakeStore()


@pytest_asyncio.fixture
async def ledger(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield JobLedger(async_sessionmaker(engine, expire_on_commit=False))
    await engine.dispose()


@pytest.fixture
def make_engine(ledger, store):
    def _make(remote, target=None, **overrides):
        options = {
            "poll_interval": 0,
            "max_poll_attempts": 3,
            "pause_poll_interval": 0.01,
            "default_batch_size": 2,
            "default_record_ceiling": 10000,
        }
        options.update(overrides)
        return SyncEngine(ledger, remote, target or store, **options)
    return _make
