"""
Orchestrator v1 API Client

Transport for the inventory endpoints the Pi orchestrator proxies from the
analysis service. Every response is unwrapped from the
`{success, data, error, timestamp, request_id}` envelope and validated
against the contracts in `inventory.schemas`; anything that does not fit is
raised as an `InventoryApiError` instead of being coerced.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, TypeVar
from urllib.parse import quote

import httpx
import structlog
from pydantic import BaseModel, ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import get_settings
from core.errors import InventoryApiError
from inventory.schemas import (
    AnalysisStatus,
    ApiEnvelope,
    InventoryAnalysisRun,
    ReviewResponseData,
    RunListData,
    SubmitReviewRequest,
)

logger = structlog.get_logger()

ModelT = TypeVar("ModelT", bound=BaseModel)

# Status-derived codes, used when the body carries no error envelope.
_CODE_BY_STATUS = {
    400: "REVIEW_INVALID",
    404: "INVENTORY_NOT_FOUND",
    409: "REVIEW_CONFLICT",
    503: "SERVICE_UNAVAILABLE",
}


@dataclass(frozen=True)
class RerunResult:
    supported: bool
    new_run_id: str | None = None


def encode_segment(identifier: str) -> str:
    """Encode an opaque identifier as a single path segment."""
    return quote(identifier, safe="")


def _retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class OrchestratorClient:
    """Client for the orchestrator's inventory analysis endpoints."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        api_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        request_timeout: float | None = None,
        review_timeout: float | None = None,
        retry_attempts: int | None = None,
        retry_wait_max: float | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.orchestrator_base_url).rstrip("/")
        self.api_key = settings.orchestrator_api_key if api_key is None else api_key
        self.request_timeout = settings.request_timeout_seconds if request_timeout is None else request_timeout
        self.review_timeout = settings.review_timeout_seconds if review_timeout is None else review_timeout
        self.retry_attempts = max(1, settings.transient_retry_attempts if retry_attempts is None else retry_attempts)
        self.retry_wait_max = settings.transient_retry_wait_max_seconds if retry_wait_max is None else retry_wait_max
        self.last_request_id: str | None = None
        self._http_client = http_client
        self.headers = {"Accept": "application/json"}
        if self.api_key:
            self.headers["X-API-Key"] = self.api_key
        self.logger = logger.bind(base_url=self.base_url)

    # ── Transport ─────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient() as client:
            yield client

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        timeout: float,
    ) -> httpx.Response:
        try:
            async with self._session() as client:
                return await client.request(
                    method,
                    f"{self.base_url}{path}",
                    params=params,
                    json=json,
                    headers=self.headers,
                    timeout=timeout,
                )
        except httpx.TimeoutException as exc:
            raise InventoryApiError("TIMEOUT", f"{method} {path} timed out after {timeout}s", retryable=True) from exc
        except httpx.TransportError as exc:
            raise InventoryApiError("NETWORK_ERROR", str(exc) or type(exc).__name__, retryable=True) from exc

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        """GET with transport-level retries; only network/timeout failures are retried."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.5, max=self.retry_wait_max),
            retry=retry_if_exception_type(InventoryApiError),
            reraise=True,
        )
        return await retrying(self._send, "GET", path, params=params, timeout=self.request_timeout)

    # ── Envelope handling ─────────────────────────────────────────────────

    def _decode(self, response: httpx.Response, path: str) -> ApiEnvelope | None:
        content_type = response.headers.get("content-type", "")
        if "json" not in content_type:
            if response.status_code >= 400:
                return None
            raise InventoryApiError(
                "HTML_FALLBACK" if "html" in content_type else "SCHEMA_MISMATCH",
                f"Expected JSON but received {content_type or 'no content type'} from {path}",
                http_status=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise InventoryApiError(
                "SCHEMA_MISMATCH", f"Malformed JSON from {path}", http_status=response.status_code
            ) from exc
        if response.status_code >= 400 and not (isinstance(body, dict) and "success" in body):
            return None
        try:
            return ApiEnvelope.model_validate(body)
        except ValidationError as exc:
            self.logger.error("orchestrator.schema_mismatch", path=path, errors=exc.errors(include_url=False))
            raise InventoryApiError(
                "SCHEMA_MISMATCH",
                f"Invalid response envelope from {path}",
                http_status=response.status_code,
                details=[str(err["msg"]) for err in exc.errors()],
            ) from exc

    def _error_from(
        self,
        response: httpx.Response,
        envelope: ApiEnvelope | None,
        not_found_code: str,
    ) -> InventoryApiError:
        status = response.status_code
        if envelope is not None and envelope.error is not None:
            error = envelope.error
            return InventoryApiError(
                error.code,
                error.message or f"Request failed with status {status}",
                retryable=error.retryable or error.code == "SERVICE_UNAVAILABLE",
                retry_after_seconds=error.retry_after_seconds or _retry_after(response),
                http_status=status,
                request_id=envelope.request_id,
            )
        if status == 404:
            code = not_found_code
        elif status in _CODE_BY_STATUS:
            code = _CODE_BY_STATUS[status]
        elif status >= 500 or status < 400:
            code = "INTERNAL_ERROR"
        else:
            code = "UNEXPECTED_STATUS"
        return InventoryApiError(
            code,
            f"Request failed with status {status}",
            retryable=status >= 500 or code == "INTERNAL_ERROR",
            retry_after_seconds=_retry_after(response),
            http_status=status,
            request_id=envelope.request_id if envelope else None,
        )

    def _unwrap(
        self,
        response: httpx.Response,
        path: str,
        model: type[ModelT],
        *,
        not_found_code: str = "INVENTORY_NOT_FOUND",
    ) -> ModelT:
        envelope = self._decode(response, path)
        if response.status_code >= 400 or envelope is None or not envelope.success:
            error = self._error_from(response, envelope, not_found_code)
            log = self.logger.info if error.code == not_found_code else self.logger.warning
            log("orchestrator.request_failed", path=path, code=error.code, http_status=error.http_status)
            raise error
        if envelope.data is None:
            raise InventoryApiError(
                "SCHEMA_MISMATCH", f"Successful response from {path} carried no data", http_status=response.status_code
            )
        try:
            data = model.model_validate(envelope.data)
        except ValidationError as exc:
            self.logger.error("orchestrator.schema_mismatch", path=path, errors=exc.errors(include_url=False))
            raise InventoryApiError(
                "SCHEMA_MISMATCH",
                f"Response from {path} does not match {model.__name__}",
                http_status=response.status_code,
                request_id=envelope.request_id,
                details=[str(err["msg"]) for err in exc.errors()],
            ) from exc
        self.last_request_id = envelope.request_id
        return data

    # ── Endpoints ─────────────────────────────────────────────────────────

    async def get_latest(self, container_id: str) -> InventoryAnalysisRun:
        """Latest analysis run for a container. Raises INVENTORY_NOT_FOUND when none exists."""
        path = f"/v1/containers/{encode_segment(container_id)}/inventory/latest"
        response = await self._get(path)
        return self._unwrap(response, path, InventoryAnalysisRun)

    async def get_by_session(self, session_id: str) -> InventoryAnalysisRun:
        path = f"/v1/sessions/{encode_segment(session_id)}/inventory-delta"
        response = await self._get(path)
        return self._unwrap(response, path, InventoryAnalysisRun)

    async def get_runs(
        self,
        container_id: str,
        *,
        limit: int | None = None,
        offset: int | None = None,
        status: AnalysisStatus | None = None,
    ) -> RunListData:
        path = f"/v1/containers/{encode_segment(container_id)}/inventory/runs"
        params: dict[str, Any] = {}
        if limit is not None:
            params["limit"] = limit
        if offset is not None:
            params["offset"] = offset
        if status is not None:
            params["status"] = AnalysisStatus(status).value
        response = await self._get(path, params=params or None)
        return self._unwrap(response, path, RunListData, not_found_code="CONTAINER_NOT_FOUND")

    async def submit_review(self, run_id: str, request: SubmitReviewRequest) -> ReviewResponseData:
        """Record a review. Never retried here: a lost response could have been applied."""
        path = f"/v1/inventory/{encode_segment(run_id)}/review"
        response = await self._send("POST", path, json=request.to_payload(), timeout=self.review_timeout)
        return self._unwrap(response, path, ReviewResponseData)

    async def rerun_analysis(self, run_id: str) -> RerunResult:
        """Ask for a fresh analysis of an errored run; 404/501 mean the server lacks the endpoint."""
        path = f"/v1/inventory/{encode_segment(run_id)}/rerun"
        response = await self._send("POST", path, json={}, timeout=self.request_timeout)
        if response.status_code in (404, 501):
            return RerunResult(supported=False)
        if response.status_code == 409:
            raise InventoryApiError(
                "RERUN_IN_PROGRESS",
                "A re-run is already in progress for this analysis.",
                http_status=409,
            )
        envelope = self._decode(response, path)
        if response.status_code >= 400 or envelope is None or not envelope.success:
            raise self._error_from(response, envelope, "INVENTORY_NOT_FOUND")
        self.last_request_id = envelope.request_id
        data = envelope.data if isinstance(envelope.data, dict) else {}
        return RerunResult(supported=True, new_run_id=data.get("new_run_id"))
