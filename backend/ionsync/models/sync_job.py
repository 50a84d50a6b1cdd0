from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from ionsync.pg_database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncJob(Base):
    __tablename__ = "sync_job"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(64), nullable=False, unique=True, index=True)
    job_type = Column(String(50), nullable=False, index=True)  # entity name, e.g. "taskdetail"
    warehouse_id = Column(String(50), nullable=True)
    # "pending" | "running" | "paused" | "completed" | "failed" | "stopped"
    status = Column(String(20), nullable=False, default="pending", index=True)
    # Engine instance currently running the job; cleared on graceful shutdown
    worker_id = Column(String(64), nullable=True)

    total_records = Column(Integer, nullable=False, default=0)
    processed_records = Column(Integer, nullable=False, default=0)
    inserted_records = Column(Integer, nullable=False, default=0)
    updated_records = Column(Integer, nullable=False, default=0)
    error_records = Column(Integer, nullable=False, default=0)

    paused = Column(Boolean, nullable=False, default=False)
    stop_requested = Column(Boolean, nullable=False, default=False)
    current_offset = Column(Integer, nullable=False, default=0)
    current_batch = Column(Integer, nullable=False, default=0)

    message = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    filters = Column(JSON, nullable=False, default=dict)
    options = Column(JSON, nullable=False, default=dict)

    # Rows older than LEDGER_RETENTION_DAYS are purged by the scheduler
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    start_time = Column(DateTime(timezone=True), default=_utcnow, nullable=True)
    end_time = Column(DateTime(timezone=True), nullable=True)
    last_updated = Column(DateTime(timezone=True), default=_utcnow, nullable=True)


class SyncJobError(Base):
    __tablename__ = "sync_job_error"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(64), ForeignKey("sync_job.job_id", ondelete="CASCADE"), nullable=False, index=True)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
