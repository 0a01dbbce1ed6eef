"""
Analysis Fetcher — retrieves analysis runs as result values.

A missing analysis is a valid answer (`RunNotFound`), not an error: the
dashboard shows an empty state with no retry affordance. Everything else
that goes wrong comes back as `FetchFailed` carrying the classified
`InventoryApiError`. Nothing raised by the transport escapes this module.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union

import structlog

from core.errors import ErrorKind, InventoryApiError
from integrations.orchestrator import OrchestratorClient
from inventory.schemas import (
    TERMINAL_STATUSES,
    AnalysisStatus,
    InventoryAnalysisRun,
    InventoryPagination,
    RunListItem,
)

logger = structlog.get_logger()

DEFAULT_PAGE_SIZE = 20

TargetKind = Literal["container", "session"]


@dataclass(frozen=True)
class ObservedTarget:
    """What the operator is looking at: a container's latest run or one session's run."""

    kind: TargetKind
    id: str

    @classmethod
    def container(cls, container_id: str) -> "ObservedTarget":
        return cls("container", container_id)

    @classmethod
    def session(cls, session_id: str) -> "ObservedTarget":
        return cls("session", session_id)


# ── Results ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RunFound:
    run: InventoryAnalysisRun


@dataclass(frozen=True)
class RunNotFound:
    target: ObservedTarget


@dataclass(frozen=True)
class FetchFailed:
    error: InventoryApiError

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind

    @property
    def service_unavailable(self) -> bool:
        return self.error.kind == ErrorKind.SERVICE_UNAVAILABLE

    @property
    def retryable(self) -> bool:
        return self.error.retryable

    @property
    def retry_after_seconds(self) -> float | None:
        return self.error.retry_after_seconds


@dataclass(frozen=True)
class RunPage:
    runs: tuple[RunListItem, ...]
    pagination: InventoryPagination

    @property
    def all_terminal(self) -> bool:
        return all(run.status in TERMINAL_STATUSES for run in self.runs)


FetchResult = Union[RunFound, RunNotFound, FetchFailed]
RunListResult = Union[RunPage, RunNotFound, FetchFailed]


class AnalysisFetcher:
    """Fetch analysis runs by container or session."""

    def __init__(self, client: OrchestratorClient):
        self.client = client

    async def fetch(self, target: ObservedTarget) -> FetchResult:
        if target.kind == "container":
            return await self.fetch_latest(target.id)
        return await self.fetch_by_session(target.id)

    async def fetch_latest(self, container_id: str) -> FetchResult:
        target = ObservedTarget.container(container_id)
        try:
            run = await self.client.get_latest(container_id)
        except InventoryApiError as exc:
            return self._classify(target, exc)
        return RunFound(run)

    async def fetch_by_session(self, session_id: str) -> FetchResult:
        target = ObservedTarget.session(session_id)
        try:
            run = await self.client.get_by_session(session_id)
        except InventoryApiError as exc:
            return self._classify(target, exc)
        return RunFound(run)

    async def lookup_session(self, raw_session_id: str) -> FetchResult:
        """Operator-typed session lookup: trims input and rejects blanks before any request."""
        session_id = raw_session_id.strip()
        if not session_id:
            return FetchFailed(InventoryApiError("VALIDATION_FAILED", "Please enter a session ID"))
        return await self.fetch_by_session(session_id)

    async def fetch_runs(
        self,
        container_id: str,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
        status: AnalysisStatus | None = None,
    ) -> RunListResult:
        target = ObservedTarget.container(container_id)
        try:
            data = await self.client.get_runs(container_id, limit=limit, offset=offset, status=status)
        except InventoryApiError as exc:
            return self._classify(target, exc)
        return RunPage(runs=tuple(data.runs), pagination=data.pagination)

    def _classify(self, target: ObservedTarget, exc: InventoryApiError) -> RunNotFound | FetchFailed:
        if exc.kind == ErrorKind.NOT_FOUND:
            logger.info("inventory.fetch_not_found", target_kind=target.kind, target_id=target.id, code=exc.code)
            return RunNotFound(target)
        logger.warning(
            "inventory.fetch_failed",
            target_kind=target.kind,
            target_id=target.id,
            code=exc.code,
            kind=exc.kind.value,
        )
        return FetchFailed(exc)


def run_list_poll_delay(result: RunListResult | None, interval: float) -> float | None:
    """
    Delay until the next run-list refresh, or None to stop.

    Stops when the list is unavailable or every listed run is terminal.
    An empty list keeps polling so a newly started analysis shows up.
    """
    if result is None:
        return interval
    if isinstance(result, (RunNotFound, FetchFailed)):
        if isinstance(result, FetchFailed) and result.kind == ErrorKind.TRANSIENT:
            return interval
        return None
    if result.runs and result.all_terminal:
        return None
    return interval
