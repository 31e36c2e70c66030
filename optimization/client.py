"""
Optimizer Client - protocol facade for the external constraint optimizer.

Holds no workflow state: every call is a single request/response against
the optimizer's HTTP API, so one client can be shared by concurrent runs.
Failures are raised as typed errors from optimization.errors.
"""

import time
from typing import Optional
from urllib.parse import quote

import httpx

from shared.logging import get_logger

from .errors import (
    OptimizerUnavailable,
    OptimizerRejected,
    UnknownJob,
    MalformedResponse,
)
from .models import ExportResult, JobStatus, ScheduleGenerationRequest

log = get_logger("optimization", "client")

DEFAULT_BASE_URL = "http://localhost:8090"


class OptimizerClient:
    """
    Async HTTP client for the optimizer.

    Usage:
        client = OptimizerClient("http://optimizer:8090")
        if await client.health_check():
            job_id = await client.request_generation(request)
            status = await client.job_status(job_id)
        await client.close()
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        request_timeout: float = 30.0,
        health_timeout: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Optimizer API base URL
            request_timeout: Timeout for export/generate/status calls (seconds)
            health_timeout: Timeout for the health check (seconds); kept short so
                availability checks stay responsive when the optimizer is down
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self._base_url = base_url.rstrip("/")
        self._request_timeout = request_timeout
        self._health_timeout = health_timeout
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def request_timeout(self) -> float:
        return self._request_timeout

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the pooled HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._request_timeout,
                transport=self._transport,
            )
        return self._http_client

    async def close(self):
        """Close the HTTP connection pool."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None

    # --- Low-level request helper ---

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        operation: str,
    ) -> httpx.Response:
        """Send one request, mapping transport failures to OptimizerUnavailable."""
        start = time.time()
        try:
            response = await self._get_http_client().request(method, path, json=json)
        except httpx.TimeoutException as e:
            log.warning("optimization.client.timeout", operation=operation, path=path)
            raise OptimizerUnavailable(f"Optimizer timed out during {operation}: {e}") from e
        except httpx.TransportError as e:
            log.warning("optimization.client.connection_error",
                        operation=operation, path=path, error=str(e))
            raise OptimizerUnavailable(f"Optimizer unreachable during {operation}: {e}") from e

        log.debug("optimization.client.response",
                  operation=operation,
                  status=response.status_code,
                  duration_ms=round((time.time() - start) * 1000, 2))

        if response.status_code >= 500:
            raise OptimizerUnavailable(
                f"Optimizer returned {response.status_code} during {operation}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponse(f"Optimizer sent invalid JSON for {operation}") from e
        if not isinstance(data, dict):
            raise MalformedResponse(f"Optimizer sent a non-object body for {operation}")
        return data

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(data, dict):
            return str(data.get("message") or data.get("error") or data)
        return str(data)

    def _raise_for_rejection(self, response: httpx.Response, operation: str) -> None:
        if response.status_code >= 400:
            message = self._error_message(response)
            log.warning("optimization.client.rejected",
                        operation=operation,
                        status=response.status_code,
                        error=message)
            raise OptimizerRejected(
                f"Optimizer rejected {operation}: {message}",
                status_code=response.status_code,
            )

    # --- Contract ---

    async def health_check(self) -> bool:
        """
        Check optimizer health.

        Never raises; any failure (connection, timeout, bad body) means unhealthy.
        """
        try:
            response = await self._get_http_client().get(
                "/api/health", timeout=self._health_timeout
            )
            if response.status_code != 200:
                return False
            data = response.json()
            return str(data.get("status", "")).upper() == "UP"
        except Exception as e:
            log.debug("optimization.client.health_check_failed", error=str(e))
            return False

    async def export(self, schedule_id: str, payload: dict) -> ExportResult:
        """
        Push a schedule snapshot to the optimizer.

        Business-level refusals come back as success=False; malformed payloads
        raise OptimizerRejected.
        """
        response = await self._request(
            "POST", "/api/schedules/import", json=payload, operation="export"
        )
        self._raise_for_rejection(response, "export")
        data = self._json(response, "export")

        try:
            counts = [int(data.get(key) or 0)
                      for key in ("studentsImported", "coursesImported", "teachersImported")]
        except (TypeError, ValueError):
            raise MalformedResponse("Optimizer sent non-numeric export counts")

        return ExportResult(
            success=bool(data.get("success", False)),
            schedule_id=str(schedule_id),
            export_id=data.get("exportId"),
            import_id=data.get("importId"),
            students_exported=counts[0],
            courses_exported=counts[1],
            teachers_exported=counts[2],
            message=data.get("message") or "",
        )

    async def request_generation(self, request: ScheduleGenerationRequest) -> str:
        """
        Ask the optimizer to start generating. Returns the job ID immediately.
        """
        path = f"/api/schedules/{quote(str(request.schedule_id), safe='')}/generate"
        response = await self._request(
            "POST", path, json=request.to_wire(), operation="generate"
        )
        self._raise_for_rejection(response, "generate")
        data = self._json(response, "generate")

        job_id = data.get("jobId")
        if not job_id:
            raise MalformedResponse("Optimizer accepted generation but returned no jobId")

        log.info("optimization.client.generation_requested",
                 schedule_id=request.schedule_id,
                 job_id=job_id,
                 optimization_mode=request.optimization_mode.value,
                 time_budget=request.optimization_time_seconds)
        return str(job_id)

    async def job_status(self, job_id: str) -> JobStatus:
        """Latest known status of a job. Never waits for a state change."""
        path = f"/api/jobs/{quote(str(job_id), safe='')}/status"
        response = await self._request("GET", path, operation="job_status")
        if response.status_code == 404:
            raise UnknownJob(job_id)
        self._raise_for_rejection(response, "job_status")
        return JobStatus.from_wire(job_id, self._json(response, "job_status"))

    async def job_result(self, job_id: str) -> dict:
        """
        Optimized schedule produced by a completed job.

        Returns the raw result: {"scheduleSlots": [...], "hardScore", "softScore"}.
        """
        path = f"/api/jobs/{quote(str(job_id), safe='')}/result"
        response = await self._request("GET", path, operation="job_result")
        if response.status_code == 404:
            raise UnknownJob(job_id)
        self._raise_for_rejection(response, "job_result")
        data = self._json(response, "job_result")

        if not isinstance(data.get("scheduleSlots", []), list):
            raise MalformedResponse(f"Result for job {job_id} has no scheduleSlots list")
        return data
