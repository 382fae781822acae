"""
Console session: wires the synchronization layer for the operator console.

One session owns one coordinator, cache, scheduler and the paginators of
its list views. Views subscribe through it and release their polls with
unwatch() when they go away.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional

from config.settings import Settings, settings as default_settings
from console_sync.api_client import ConsoleApiClient
from console_sync.cache import CacheRead, CacheStore, RequestCoordinator, Storage, get_ttl_for_key
from console_sync.metrics import CostPoint, derive_cost_trend, distribution_from_stats, summarize_jobs
from console_sync.models import make_query_key
from console_sync.pagination import PaginationCursorManager, normalize_filters
from console_sync.polling import PollHandle, PollingScheduler, fixed_interval, job_interval_policy

logger = logging.getLogger("console.session")

DASHBOARD_KEY = "dashboard:snapshot"
JOBS_KEY = "jobs:all"


@dataclass
class DashboardView:
    """What the dashboard renders: the cached snapshot plus derived bars."""
    read: CacheRead
    virality: Dict[str, Dict[str, float]] = field(default_factory=dict)

    @property
    def stats(self) -> Dict[str, Any]:
        return (self.read.value or {}).get("stats") or {}

    @property
    def health(self) -> Dict[str, Any]:
        return (self.read.value or {}).get("health") or {}

    @property
    def recent_logs(self) -> List[Any]:
        return (self.read.value or {}).get("logs") or []


class ConsoleSession:
    """
    Composition root of the synchronization layer.

    Usage:
        session = ConsoleSession().init()
        view = session.read_dashboard()
        session.watch_jobs(owner="pipeline", on_result=render_jobs)
        ...
        session.unwatch("pipeline")
        session.dispose()
    """

    def __init__(
        self,
        api: Optional[ConsoleApiClient] = None,
        app_settings: Optional[Settings] = None,
        storage: Optional[Storage] = None,
    ):
        self.settings = app_settings or default_settings
        self.api = api or ConsoleApiClient()
        self.coordinator = RequestCoordinator()
        self.cache = CacheStore.from_settings(
            self.settings,
            coordinator=self.coordinator,
            storage=storage,
        )
        self.scheduler = PollingScheduler(self.coordinator, cache=self.cache)
        self._pagers: List[PaginationCursorManager] = []

    def init(self) -> "ConsoleSession":
        self.cache.init([DASHBOARD_KEY, JOBS_KEY])
        logger.info("Console session started")
        return self

    def dispose(self) -> None:
        """Stop every poll, cancel outstanding requests and drop in-memory state."""
        stopped = self.scheduler.stop_all()
        for pager in self._pagers:
            pager.dispose()
        self._pagers.clear()
        self.cache.dispose()
        self.coordinator.cancel_all()
        logger.info(f"Console session disposed ({stopped} polls stopped)")

    # =========================================================================
    # Dashboard
    # =========================================================================

    async def _fetch_dashboard(self) -> Dict[str, Any]:
        stats, health, logs = await asyncio.gather(
            self.api.fetch_stats(),
            self.api.fetch_health(),
            self.api.fetch_logs(limit=self.settings.dashboard_logs_limit),
        )
        return {
            "stats": stats,
            "health": health,
            "logs": (logs or {}).get("logs") or [],
        }

    def read_dashboard(self) -> DashboardView:
        """Dashboard snapshot right now, revalidating in the background if stale."""
        read = self.cache.read(DASHBOARD_KEY, get_ttl_for_key(DASHBOARD_KEY), self._fetch_dashboard)
        stats = (read.value or {}).get("stats")
        return DashboardView(read=read, virality=distribution_from_stats(stats))

    def watch_dashboard(
        self,
        owner: Hashable,
        on_result: Optional[Callable[[Any], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> PollHandle:
        return self.scheduler.start(
            DASHBOARD_KEY,
            fixed_interval(self.settings.dashboard_refresh_ms),
            self._fetch_dashboard,
            owner=owner,
            ttl_ms=get_ttl_for_key(DASHBOARD_KEY),
            on_result=on_result,
            on_error=on_error,
        )

    def cost_trend(self, records: List[Mapping[str, Any]]) -> List[CostPoint]:
        return derive_cost_trend(records, self.settings.cost_trend_max_points)

    # =========================================================================
    # Jobs
    # =========================================================================

    async def _fetch_jobs(self) -> Dict[str, Any]:
        return await self.api.fetch_jobs()

    def read_jobs(self) -> CacheRead:
        return self.cache.read(JOBS_KEY, get_ttl_for_key(JOBS_KEY), self._fetch_jobs)

    def job_summary(self) -> Dict[str, int]:
        """Counts per job status from the cached jobs snapshot."""
        entry = self.cache.peek(JOBS_KEY)
        jobs = (entry.value or {}).get("jobs") if entry is not None else None
        return summarize_jobs(jobs or {})

    def watch_jobs(
        self,
        owner: Hashable,
        on_result: Optional[Callable[[Any], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> PollHandle:
        """Poll jobs fast while any is running and slowly while idle."""
        return self.scheduler.start(
            JOBS_KEY,
            job_interval_policy(self.settings.jobs_poll_fast_ms, self.settings.jobs_poll_idle_ms),
            self._fetch_jobs,
            owner=owner,
            ttl_ms=get_ttl_for_key(JOBS_KEY),
            on_result=on_result,
            on_error=on_error,
        )

    def refresh_jobs(self) -> int:
        """
        Poll jobs now, e.g. right after a job was started.

        A handle that is mid-poll polls once more when it finishes. Returns
        the number of handles woken or queued.
        """
        return sum(
            1 for handle in self.scheduler.handles
            if handle.key == JOBS_KEY and self.scheduler.trigger(handle)
        )

    # =========================================================================
    # Activity logs
    # =========================================================================

    def logs_key(self, filters: Optional[Mapping[str, Any]]) -> str:
        return make_query_key("logs", normalize_filters(filters))

    def watch_logs(
        self,
        owner: Hashable,
        filters: Optional[Mapping[str, Any]] = None,
        on_result: Optional[Callable[[Any], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> PollHandle:
        """
        Poll the activity log for a filter set.

        Calling again with new filters replaces the owner's previous poll.
        """
        filters = normalize_filters(filters)
        limit = filters.get("limit", self.settings.logs_limit)

        async def fetch_logs() -> Dict[str, Any]:
            logs, summary = await asyncio.gather(
                self.api.fetch_logs(
                    limit=limit,
                    activity_type=filters.get("activity_type"),
                    level=filters.get("level"),
                ),
                self.api.fetch_logs_summary(),
            )
            return {"logs": (logs or {}).get("logs") or [], "summary": summary}

        key = self.logs_key(filters)
        return self.scheduler.start(
            key,
            fixed_interval(self.settings.logs_refresh_ms),
            fetch_logs,
            owner=owner,
            ttl_ms=get_ttl_for_key(key),
            on_result=on_result,
            on_error=on_error,
        )

    # =========================================================================
    # List views
    # =========================================================================

    def items_pager(self) -> PaginationCursorManager:
        return self._register(PaginationCursorManager(
            self.coordinator,
            self.api.fetch_items_page,
            page_size=self.settings.page_size,
            name="items",
        ))

    def jobs_pager(self) -> PaginationCursorManager:
        return self._register(PaginationCursorManager(
            self.coordinator,
            self.api.fetch_jobs_page,
            page_size=self.settings.page_size,
            name="jobs:list",
        ))

    def _register(self, pager: PaginationCursorManager) -> PaginationCursorManager:
        self._pagers.append(pager)
        return pager

    def unwatch(self, owner: Hashable) -> bool:
        """Release the poll held by a view that is going away."""
        return self.scheduler.stop_owner(owner)
