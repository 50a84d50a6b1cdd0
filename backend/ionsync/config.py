from typing import List, Optional
from urllib.parse import quote_plus

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ION API: either the individual keys below or a .ionapi credentials file
    ion_tenant: str = ""
    ion_saak: str = ""
    ion_sask: str = ""
    ion_client_id: str = ""
    ion_client_secret: str = ""
    ion_api_url: str = "https://mingle-ionapi.inforcloudsuite.com"
    ion_sso_url: str = ""
    ion_credentials_path: Optional[str] = None
    ion_request_timeout: float = 30.0

    # MongoDB (target document store)
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_database: str = "wms"
    mongodb_server_selection_timeout_ms: int = 5000

    # PostgreSQL (job ledger)
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "ionsync"
    postgres_user: str = "ionsync"
    postgres_password: str = ""
    # Full SQLAlchemy URL; takes precedence over the postgres_* fields when set
    ledger_database_url: str = ""
    ledger_retention_days: int = 7

    # Sync engine defaults
    default_batch_size: int = 1000
    default_record_ceiling: int = 10000
    max_batch_size: int = 10000
    query_poll_interval: float = 2.0
    query_max_poll_attempts: int = 150
    pause_poll_interval: float = 5.0
    page_delay: float = 0.0
    page_retry_attempts: int = 0
    page_retry_backoff: float = 1.0
    write_chunk_size: int = 500
    # running/paused jobs whose owner has not touched the ledger for this long are resumable
    job_stale_after_seconds: int = 900
    resume_check_interval_minutes: int = 5

    # Scheduler
    scheduler_enabled: bool = True
    scheduled_entities: List[str] = []
    scheduled_interval_minutes: int = 60
    scheduled_warehouse_id: str = "wmwhse"

    # CORS
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost"]

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def ledger_url(self) -> str:
        if self.ledger_database_url:
            return self.ledger_database_url
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{quote_plus(self.postgres_password)}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def ion_sso_base_url(self) -> str:
        return self.ion_sso_url or f"https://mingle-sso.inforcloudsuite.com:443/{self.ion_tenant}/as/"


settings = Settings()
