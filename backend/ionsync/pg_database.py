from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from ionsync.config import settings


engine = create_async_engine(settings.ledger_url, echo=False, pool_pre_ping=True)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def init_pg() -> None:
    # Import all models so they are registered with Base.metadata
    from ionsync.models import sync_job  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if conn.dialect.name == "postgresql":
            # Columns added after the first release
            await conn.execute(text("ALTER TABLE sync_job ADD COLUMN IF NOT EXISTS worker_id VARCHAR(64)"))
