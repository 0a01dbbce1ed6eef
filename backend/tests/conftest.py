"""
Test Configuration — Fake orchestrator, API client, and virtual-time scheduler.

The orchestrator is a small in-memory FastAPI app mounted through
httpx.ASGITransport, so the real client code runs end to end without a
network. Poller tests drive timers with ManualScheduler instead of sleeping.
"""

import copy
import itertools
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import pytest
from fastapi import Body, FastAPI, Request
from fastapi.responses import JSONResponse
from httpx import ASGITransport, AsyncClient

from integrations.orchestrator import OrchestratorClient

BASE_URL = "http://orchestrator.test/api"
CONTAINER_ID = "550e8400-e29b-41d4-a716-446655440001"
SESSION_ID = "sess-0001"
RUN_ID = "run-0001"

FLAT_DELTA = [
    {"name": "Coca-Cola", "sku": "CC-330", "before_count": 5, "after_count": 3, "change": -2, "confidence": 0.92},
]

_DELTA_STATUSES = {"done", "needs_review"}
_UNSET: Any = object()


def make_run(
    *,
    run_id: str = RUN_ID,
    session_id: str = SESSION_ID,
    container_id: str = CONTAINER_ID,
    status: str = "done",
    delta: Any = _UNSET,
    review: dict | None = None,
    **overrides: Any,
) -> dict:
    """Wire-format analysis run. Delta defaults to FLAT_DELTA only for analysed statuses."""
    if delta is _UNSET:
        delta = copy.deepcopy(FLAT_DELTA) if status in _DELTA_STATUSES else None
    run = {
        "run_id": run_id,
        "session_id": session_id,
        "container_id": container_id,
        "status": status,
        "items_before": None,
        "items_after": None,
        "delta": delta,
        "evidence": {
            "before_image_url": "https://evidence.test/before.jpg?sig=abc",
            "after_image_url": "https://evidence.test/after.jpg?sig=def",
        },
        "review": review,
        "metadata": {
            "provider": "openai",
            "processing_time_ms": 4200,
            "model_version": "gpt-4o-2024-08-06",
            "created_at": "2026-01-10T10:00:00Z",
            "completed_at": "2026-01-10T10:00:05Z" if status in _DELTA_STATUSES else None,
            "error_message": "vision timeout" if status == "error" else None,
        },
    }
    run.update(overrides)
    return run


class FakeOrchestrator:
    """In-memory stand-in for the orchestrator's inventory endpoints."""

    def __init__(self) -> None:
        self.runs: dict[str, dict] = {}
        self.containers: set[str] = set()
        self.unavailable = False
        self.rerun_supported = True
        self.reviewer_id = "operator-1"
        self.requests: list[tuple[str, str]] = []
        self._failures: dict[str, list[tuple[int, dict | None]]] = {}
        self._request_ids = itertools.count(1)
        self.app = self._build_app()

    # ── Test controls ──────────────────────────────────────────────────────

    def add_run(self, run: dict) -> dict:
        self.runs[run["run_id"]] = run
        self.containers.add(run["container_id"])
        return run

    def fail_next(
        self,
        route: str,
        status: int,
        code: str | None = None,
        message: str = "",
        retry_after_seconds: float | None = None,
    ) -> None:
        error = None
        if code is not None:
            error = {"code": code, "message": message, "retryable": status >= 500}
            if retry_after_seconds is not None:
                error["retry_after_seconds"] = retry_after_seconds
        self._failures.setdefault(route, []).append((status, error))

    def count(self, method: str, fragment: str = "") -> int:
        return sum(1 for m, path in self.requests if m == method and fragment in path)

    # ── Helpers ────────────────────────────────────────────────────────────

    def _envelope(self, data: Any = None, error: dict | None = None, status: int = 200) -> JSONResponse:
        return JSONResponse(
            {
                "success": error is None,
                "data": data,
                "error": error,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "request_id": f"req-{next(self._request_ids)}",
            },
            status_code=status,
        )

    def _error(self, status: int, code: str, message: str = "", retry_after: float | None = None) -> JSONResponse:
        error: dict[str, Any] = {"code": code, "message": message or code, "retryable": status >= 500}
        if retry_after is not None:
            error["retry_after_seconds"] = retry_after
        return self._envelope(error=error, status=status)

    def _injected(self, route: str) -> JSONResponse | None:
        if self.unavailable:
            return self._error(503, "SERVICE_UNAVAILABLE", "Inventory service unavailable", retry_after=30)
        queue = self._failures.get(route)
        if not queue:
            return None
        status, error = queue.pop(0)
        if error is None:
            return JSONResponse(None, status_code=status)
        return self._envelope(error=error, status=status)

    def _latest_for(self, container_id: str) -> dict | None:
        matches = [run for run in self.runs.values() if run["container_id"] == container_id]
        return matches[-1] if matches else None

    @staticmethod
    def _summary(run: dict) -> dict:
        delta = run.get("delta")
        summary = None
        if isinstance(delta, list):
            summary = {
                "total_items": len(delta),
                "items_changed": sum(1 for e in delta if e["change"] != 0),
                "items_added": sum(1 for e in delta if e["before_count"] == 0 and e["after_count"] > 0),
                "items_removed": sum(1 for e in delta if e["after_count"] == 0 and e["before_count"] > 0),
            }
        return {
            "run_id": run["run_id"],
            "session_id": run["session_id"],
            "container_id": run["container_id"],
            "status": run["status"],
            "delta_summary": summary,
            "metadata": run["metadata"],
        }

    # ── App ────────────────────────────────────────────────────────────────

    def _build_app(self) -> FastAPI:
        app = FastAPI()

        @app.middleware("http")
        async def record_requests(request: Request, call_next):
            self.requests.append((request.method, request.url.path))
            return await call_next(request)

        @app.get("/api/v1/containers/{container_id}/inventory/latest")
        async def latest(container_id: str):
            injected = self._injected("latest")
            if injected is not None:
                return injected
            run = self._latest_for(container_id)
            if run is None:
                return self._error(404, "INVENTORY_NOT_FOUND", "No inventory analysis found")
            return self._envelope(run)

        @app.get("/api/v1/sessions/{session_id}/inventory-delta")
        async def by_session(session_id: str):
            injected = self._injected("session")
            if injected is not None:
                return injected
            for run in self.runs.values():
                if run["session_id"] == session_id:
                    return self._envelope(run)
            return self._error(404, "INVENTORY_NOT_FOUND", "No inventory analysis found")

        @app.get("/api/v1/containers/{container_id}/inventory/runs")
        async def runs(container_id: str, limit: int = 20, offset: int = 0, status: str | None = None):
            injected = self._injected("runs")
            if injected is not None:
                return injected
            if container_id not in self.containers:
                return self._error(404, "CONTAINER_NOT_FOUND", "Container not found")
            matches = [
                run
                for run in reversed(list(self.runs.values()))
                if run["container_id"] == container_id and (status is None or run["status"] == status)
            ]
            page = matches[offset : offset + limit]
            return self._envelope(
                {
                    "runs": [self._summary(run) for run in page],
                    "pagination": {
                        "total": len(matches),
                        "limit": limit,
                        "offset": offset,
                        "has_more": offset + len(page) < len(matches),
                    },
                }
            )

        @app.post("/api/v1/inventory/{run_id}/review")
        async def review(run_id: str, body: dict = Body(...)):
            injected = self._injected("review")
            if injected is not None:
                return injected
            run = self.runs.get(run_id)
            if run is None:
                return self._error(404, "INVENTORY_NOT_FOUND", "Run not found")
            if run.get("review"):
                return self._error(409, "REVIEW_CONFLICT", "Run already reviewed")
            if body.get("action") not in ("approve", "override"):
                return self._error(400, "REVIEW_INVALID", "Unknown review action")
            recorded = {
                "reviewer_id": self.reviewer_id,
                "action": body["action"],
                "corrections": body.get("corrections") or [],
                "notes": body.get("notes"),
                "reviewed_at": datetime.now(timezone.utc).isoformat(),
            }
            run["review"] = recorded
            run["status"] = "done"
            return self._envelope({"run_id": run_id, "status": "done", "review": recorded})

        @app.post("/api/v1/inventory/{run_id}/rerun")
        async def rerun(run_id: str):
            if not self.rerun_supported:
                return JSONResponse({"detail": "Not Found"}, status_code=404)
            injected = self._injected("rerun")
            if injected is not None:
                return injected
            return self._envelope({"new_run_id": f"{run_id}-rerun", "status": "pending"})

        return app


# ── Virtual time ──────────────────────────────────────────────────────────


@dataclass(eq=False)
class _Timer:
    when: float
    seq: int
    callback: Any
    cancelled: bool = False


class ManualScheduler:
    """Scheduler whose timers fire only when a test calls `advance`."""

    def __init__(self) -> None:
        self.now = 0.0
        self._timers: list[_Timer] = []
        self._seq = itertools.count()

    def call_later(self, delay: float, callback) -> _Timer:
        timer = _Timer(self.now + max(delay, 0.0), next(self._seq), callback)
        self._timers.append(timer)
        return timer

    def cancel(self, handle: _Timer) -> None:
        handle.cancelled = True

    @property
    def pending(self) -> list[_Timer]:
        return [timer for timer in self._timers if not timer.cancelled]

    async def advance(self, seconds: float = 0.0) -> None:
        deadline = self.now + seconds
        while True:
            due = [timer for timer in self.pending if timer.when <= deadline]
            if not due:
                break
            timer = min(due, key=lambda t: (t.when, t.seq))
            self._timers.remove(timer)
            self.now = timer.when
            await timer.callback()
        self._timers = self.pending
        self.now = deadline


# ── Fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture
def orchestrator() -> FakeOrchestrator:
    return FakeOrchestrator()


@pytest.fixture
async def http_client(orchestrator):
    async with AsyncClient(transport=ASGITransport(app=orchestrator.app)) as ac:
        yield ac


@pytest.fixture
def api_client(http_client) -> OrchestratorClient:
    return OrchestratorClient(
        BASE_URL,
        api_key="test-key",
        http_client=http_client,
        retry_attempts=1,
        retry_wait_max=0,
    )


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()
