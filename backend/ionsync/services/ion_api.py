"""
Client for the ION DataFabric "compass" asynchronous SQL API.

Every query goes through the same three phases: submit the SQL text and get a
query id back, poll the query status until it is terminal, then fetch result
pages. Results can only be fetched once this client has seen the query reach
``completed``.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import httpx

from ionsync.config import settings
from ionsync.exceptions import CountQueryError, NotReadyError, RemoteQueryError, RemoteSubmissionError

logger = logging.getLogger(__name__)

_COMPLETED = {"COMPLETED", "FINISHED", "DONE", "SUCCEEDED"}
_FAILED = {"FAILED", "ERROR", "CANCELLED", "CANCELED", "ABORTED"}
_RUNNING = {"RUNNING", "EXECUTING", "IN_PROGRESS"}


@dataclass
class IonCredentials:
    tenant: str
    saak: str
    sask: str
    client_id: str
    client_secret: str
    ion_api_url: str
    sso_url: str


@dataclass
class QueryStatus:
    status: str  # "pending" | "running" | "completed" | "failed"
    message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


def load_credentials() -> IonCredentials:
    """Credentials from ION_* settings, else from the .ionapi file at ION_CREDENTIALS_PATH."""
    if all((settings.ion_tenant, settings.ion_saak, settings.ion_sask, settings.ion_client_id, settings.ion_client_secret)):
        return IonCredentials(
            tenant=settings.ion_tenant,
            saak=settings.ion_saak,
            sask=settings.ion_sask,
            client_id=settings.ion_client_id,
            client_secret=settings.ion_client_secret,
            ion_api_url=settings.ion_api_url,
            sso_url=settings.ion_sso_base_url,
        )

    if not settings.ion_credentials_path:
        raise RuntimeError("ION API credentials are not configured (set ION_* or ION_CREDENTIALS_PATH)")
    path = Path(settings.ion_credentials_path)
    data = json.loads(path.read_text(encoding="utf-8"))
    tenant = data["ti"]
    logger.info("Loaded ION API credentials from %s", path)
    return IonCredentials(
        tenant=tenant,
        saak=data["saak"],
        sask=data["sask"],
        client_id=data["ci"],
        client_secret=data["cs"],
        ion_api_url=(data.get("iu") or settings.ion_api_url).rstrip("/"),
        sso_url=data.get("pu") or f"https://mingle-sso.inforcloudsuite.com:443/{tenant}/as/",
    )


def normalize_status(raw: Any) -> str:
    value = str(raw or "").strip().upper()
    if value in _COMPLETED:
        return "completed"
    if value in _FAILED:
        return "failed"
    if value in _RUNNING:
        return "running"
    return "pending"


def _rows_from_payload(payload: Any) -> list[dict[str, Any]]:
    """Rows of a result payload. Error or unrecognised payloads raise instead of reading as an empty page."""
    if not isinstance(payload, dict):
        raise RemoteQueryError(f"Unexpected result payload: {str(payload)[:200]}")
    if payload.get("error"):
        raise RemoteQueryError(f"Result fetch failed: {payload.get('message') or payload['error']}")
    if isinstance(payload.get("results"), list):
        rows = payload["results"]
    elif isinstance(payload.get("rows"), list):
        rows = payload["rows"]
    elif isinstance(payload.get("data"), dict):
        rows = [payload["data"]]
    else:
        raise RemoteQueryError(f"Result payload has no rows: {str(payload)[:200]}")

    columns = [c.get("name") if isinstance(c, dict) else c for c in payload.get("columns") or []]
    out = []
    for row in rows:
        if isinstance(row, dict):
            out.append(row)
        elif isinstance(row, (list, tuple)):
            names = columns if len(columns) == len(row) else [f"col{i}" for i in range(len(row))]
            out.append(dict(zip(names, row)))
    return out


def parse_count(rows: list[dict[str, Any]]) -> int:
    if not rows:
        raise CountQueryError("Count query returned no rows")
    first = rows[0]
    value = None
    for key, item in first.items():
        if str(key).lower() == "count":
            value = item
            break
    if value is None and len(first) == 1:
        value = next(iter(first.values()))
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise CountQueryError(f"Count query returned an unparseable count: {first!r}")
    if count < 0:
        raise CountQueryError(f"Count query returned a negative count: {count}")
    return count


class IonQueryClient:
    def __init__(self, client: httpx.AsyncClient, credentials: Optional[IonCredentials] = None) -> None:
        self.client = client
        self._credentials = credentials
        self._token: Optional[str] = None
        self._token_expiry = 0.0
        self._token_lock = asyncio.Lock()
        self._completed: set[str] = set()

    @property
    def credentials(self) -> IonCredentials:
        if self._credentials is None:
            self._credentials = load_credentials()
        return self._credentials

    def _jobs_url(self, suffix: str = "") -> str:
        creds = self.credentials
        return f"{creds.ion_api_url}/{creds.tenant}/DATAFABRIC/compass/v2/jobs/{suffix}"

    async def _get_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expiry:
                return self._token
            creds = self.credentials
            response = await self.client.post(
                f"{creds.sso_url}token.oauth2",
                data={
                    "grant_type": "password",
                    "username": creds.saak,
                    "password": creds.sask,
                    "scope": "openid",
                },
                auth=(creds.client_id, creds.client_secret),
                headers={"Accept": "application/json"},
                timeout=settings.ion_request_timeout,
            )
            response.raise_for_status()
            data = response.json()
            self._token = data["access_token"]
            # Refresh five minutes before the server-side expiry
            self._token_expiry = time.monotonic() + max(int(data.get("expires_in", 3600)) - 300, 0)
            logger.info("ION API token retrieved")
            return self._token

    async def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {await self._get_token()}", "Accept": "application/json"}

    async def submit(self, sql: str) -> str:
        try:
            headers = await self._headers()
            headers["Content-Type"] = "text/plain"
            response = await self.client.post(
                self._jobs_url(),
                content=sql.encode("utf-8"),
                headers=headers,
                timeout=settings.ion_request_timeout,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise RemoteSubmissionError(f"HTTP {e.response.status_code}: {e.response.text[:500]}") from e
        except (httpx.HTTPError, ValueError, KeyError) as e:
            raise RemoteSubmissionError(f"Query submission failed: {e}") from e

        query_id = (data.get("queryId") or data.get("id")) if isinstance(data, dict) else None
        if not query_id:
            raise RemoteSubmissionError(f"Submission response has no query id: {data!r}")
        logger.debug("Submitted query %s: %s", query_id, sql[:100])
        return str(query_id)

    async def poll_status(self, query_id: str) -> QueryStatus:
        try:
            response = await self.client.get(
                self._jobs_url(f"{query_id}/status/"),
                headers=await self._headers(),
                timeout=settings.ion_request_timeout,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise RemoteQueryError(f"Status check for {query_id} failed: HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError, KeyError) as e:
            raise RemoteQueryError(f"Status check for {query_id} failed: {e}") from e

        status = QueryStatus(status=normalize_status(data.get("status")), message=data.get("message") or data.get("error"))
        if status.status == "completed":
            self._completed.add(query_id)
        elif status.status == "failed":
            logger.error("Query %s failed: %s", query_id, status.message)
        return status

    async def fetch_page(self, query_id: str, offset: int = 0, limit: int = 1000) -> list[dict[str, Any]]:
        if query_id not in self._completed:
            raise NotReadyError(f"Query {query_id} has not completed")
        try:
            response = await self.client.get(
                self._jobs_url(f"{query_id}/result/"),
                params={"offset": offset, "limit": limit},
                headers=await self._headers(),
                timeout=settings.ion_request_timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise RemoteQueryError(f"Fetching results for {query_id} failed: HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError, KeyError) as e:
            raise RemoteQueryError(f"Fetching results for {query_id} failed: {e}") from e
        return _rows_from_payload(payload)

    def release(self, query_id: str) -> None:
        """Forget a query whose results have been read."""
        self._completed.discard(query_id)


async def wait_for_query(client, query_id: str, interval: float, max_attempts: int) -> QueryStatus:
    for attempt in range(max_attempts):
        status = await client.poll_status(query_id)
        if status.is_terminal:
            if status.status == "failed":
                raise RemoteQueryError(f"Query failed: {status.message or 'Unknown error'}")
            return status
        if attempt < max_attempts - 1:
            await asyncio.sleep(interval)
    raise RemoteQueryError(f"Query {query_id} timed out after {max_attempts} attempts")


async def run_query(client, sql: str, offset: int, limit: int, interval: float, max_attempts: int) -> list[dict[str, Any]]:
    """submit -> poll until terminal -> fetch one page of results."""
    query_id = await client.submit(sql)
    try:
        await wait_for_query(client, query_id, interval, max_attempts)
        return await client.fetch_page(query_id, offset, limit)
    finally:
        client.release(query_id)
