"""
HTTP client for the pipeline backend.

Blocking calls use a shared requests.Session; the async fetch_* variants
run them on a small thread pool so the event loop never waits on I/O.
"""
import os
import asyncio
import logging
import threading
from functools import partial
from typing import Any, Callable, Dict, Mapping, Optional
from concurrent.futures import ThreadPoolExecutor

import requests
from dotenv import load_dotenv
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from config.settings import settings
from console_sync.errors import ApiError, RateLimitError
from console_sync.models import JobRecord
from console_sync.pagination.models import Page

load_dotenv()

logger = logging.getLogger("api_client")


def _clean_params(params: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Drop unset query parameters."""
    return {k: v for k, v in (params or {}).items() if v is not None and v != ""}


def _first(data: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in data:
            return data[name]
    return None


def _error_detail(response: Optional[requests.Response]) -> str:
    """Pull the backend's "detail" message out of an error response."""
    if response is None:
        return "no response"
    try:
        body = response.json()
    except ValueError:
        return response.reason or "error"
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return response.reason or "error"


class ConsoleApiClient:
    """
    Read-only client for the endpoints the console synchronizes.

    Usage:
        client = ConsoleApiClient()
        stats = client.get_stats()
        page = await client.fetch_jobs_page({"status": "running"}, None, 20)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        max_concurrent: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else (
            settings.api_key or os.getenv("CONSOLE_API_KEY")
        )
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds
        max_concurrent = max_concurrent or settings.max_concurrent_requests

        self._session = session or requests.Session()
        # Limits concurrent backend requests across all callers
        self._semaphore = threading.Semaphore(max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent,
            thread_name_prefix="console-api",
        )

    def _get_headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(RateLimitError),
        reraise=True,
    )
    def _get(self, endpoint: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """
        GET an endpoint and decode its JSON body.

        Retries on rate limit responses with exponential backoff; every
        other failure is raised straight away.

        Raises:
            ApiError: On transport failure, HTTP error status or invalid JSON
        """
        with self._semaphore:
            try:
                response = self._session.get(
                    f"{self.base_url}/{endpoint}",
                    headers=self._get_headers(),
                    params=_clean_params(params),
                    timeout=self.timeout,
                )
                response.raise_for_status()
                return response.json()
            except requests.HTTPError as e:
                status = e.response.status_code if e.response is not None else None
                if status == 429:
                    logger.warning(f"Rate limit hit on {endpoint}")
                    raise RateLimitError(endpoint, status, _error_detail(e.response)) from e
                raise ApiError(endpoint, status, _error_detail(e.response)) from e
            except requests.RequestException as e:
                raise ApiError(endpoint, None, str(e)) from e
            except ValueError as e:
                raise ApiError(endpoint, None, f"invalid JSON: {e}") from e

    # =========================================================================
    # Blocking endpoints
    # =========================================================================

    def get_jobs(
        self,
        name: Optional[str] = None,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> dict:
        """Background jobs: {jobs: {id: record}, total, hasMore, nextCursor}."""
        return self._get("system/jobs", {
            "name": name,
            "type": job_type,
            "status": status,
            "limit": limit,
            "cursor": cursor,
        })

    def get_job_status(self, job_id: str) -> dict:
        return self._get(f"system/jobs/{job_id}")

    def get_items(
        self,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> dict:
        """News items: {items: [...], next_offset}."""
        return self._get("news", {"status": status, "limit": limit, "offset": offset})

    def get_stats(self) -> dict:
        return self._get("stats")

    def get_health(self) -> dict:
        return self._get("health")

    def get_logs(
        self,
        limit: Optional[int] = None,
        activity_type: Optional[str] = None,
        level: Optional[str] = None,
    ) -> dict:
        return self._get("logs", {"limit": limit, "activity_type": activity_type, "level": level})

    def get_logs_summary(self) -> dict:
        return self._get("logs/summary")

    # =========================================================================
    # Async variants
    # =========================================================================

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, partial(fn, *args, **kwargs))

    async def fetch_jobs(self, **kwargs: Any) -> dict:
        return await self._call(self.get_jobs, **kwargs)

    async def fetch_items(self, **kwargs: Any) -> dict:
        return await self._call(self.get_items, **kwargs)

    async def fetch_stats(self) -> dict:
        return await self._call(self.get_stats)

    async def fetch_health(self) -> dict:
        return await self._call(self.get_health)

    async def fetch_logs(self, **kwargs: Any) -> dict:
        return await self._call(self.get_logs, **kwargs)

    async def fetch_logs_summary(self) -> dict:
        return await self._call(self.get_logs_summary)

    async def fetch_jobs_page(self, filters: Mapping[str, Any], cursor: Optional[Any], limit: int) -> Page:
        """Page fetcher for the jobs list."""
        response = await self.fetch_jobs(
            name=filters.get("name"),
            job_type=filters.get("type"),
            status=filters.get("status"),
            limit=limit,
            cursor=cursor,
        )
        return jobs_page(response)

    async def fetch_items_page(self, filters: Mapping[str, Any], cursor: Optional[Any], limit: int) -> Page:
        """Page fetcher for the items list; the offset serves as cursor."""
        response = await self.fetch_items(
            status=filters.get("status"),
            limit=limit,
            offset=cursor,
        )
        return items_page(response)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self._session.close()


# =============================================================================
# Response adapters
# =============================================================================

def jobs_page(response: Mapping[str, Any]) -> Page:
    """
    Convert a jobs response into a Page of JobRecords.

    The id -> record mapping is flattened in the order the server sent it.
    """
    raw_jobs = response.get("jobs") or {}
    if isinstance(raw_jobs, Mapping):
        items = [JobRecord.from_dict(record, job_id=job_id) for job_id, record in raw_jobs.items()]
    else:
        items = [JobRecord.from_dict(record) for record in raw_jobs]

    next_cursor = _first(response, "nextCursor", "next_cursor")
    has_more = _first(response, "hasMore", "has_more")
    if has_more is None:
        has_more = next_cursor is not None
    return Page(
        items=items,
        next_cursor=next_cursor,
        has_more=bool(has_more),
        total=_first(response, "total"),
    )


def items_page(response: Mapping[str, Any]) -> Page:
    """Convert an items response into a Page; next_offset is the cursor."""
    next_offset = _first(response, "nextOffset", "next_offset")
    return Page(
        items=list(response.get("items") or []),
        next_cursor=next_offset,
        has_more=next_offset is not None,
        total=_first(response, "total"),
    )
