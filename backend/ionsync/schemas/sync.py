from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    pending = "pending"
    running = "running"
    paused = "paused"
    completed = "completed"
    failed = "failed"
    stopped = "stopped"


class ControlAction(str, Enum):
    pause = "pause"
    resume = "resume"
    stop = "stop"


class SyncFilters(BaseModel):
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    task_type: Optional[str] = None


class SyncStartRequest(BaseModel):
    entity: str
    warehouse_id: Optional[str] = None
    filters: SyncFilters = Field(default_factory=SyncFilters)
    batch_size: Optional[int] = Field(default=None, ge=1)
    record_ceiling: Optional[int] = Field(default=None, ge=1)
    client_job_id: Optional[str] = Field(default=None, min_length=1, max_length=64)


class SyncStartResponse(BaseModel):
    job_id: str
    status: JobStatus
    total_records: int
    error: Optional[str] = None


class JobStatusResponse(BaseModel):
    job_id: str
    job_type: str
    warehouse_id: Optional[str] = None
    status: JobStatus
    total_records: int
    processed_records: int
    inserted_records: int
    updated_records: int
    error_records: int
    percent_complete: float = Field(description="processed_records / total_records, excluding skipped and failed rows")
    percent_attempted: float = Field(description="(processed_records + error_records) / total_records")
    paused: bool
    stop_requested: bool
    current_offset: int
    current_batch: int
    message: Optional[str] = None
    error: Optional[str] = None
    errors: List[str] = []
    filters: dict = {}
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    last_updated: Optional[datetime] = None


class ControlRequest(BaseModel):
    action: ControlAction


class ControlResponse(BaseModel):
    job_id: str
    action: ControlAction
    applied: bool
    status: JobStatus
    paused: bool
    stop_requested: bool


class EntityInfo(BaseModel):
    name: str
    table: str
    collection: str
    key_fields: List[str]
    date_fields: List[str]
    supports_task_type: bool


class EntityStatsResponse(BaseModel):
    entity: str
    collection: str
    document_count: Optional[int] = None
    runs: int
    completed: int
    failed: int
    stopped: int
    processed_records: int
    inserted_records: int
    updated_records: int
    error_records: int
    average_duration_seconds: Optional[float] = None
    last_status: Optional[JobStatus] = None
    last_start_time: Optional[datetime] = None
