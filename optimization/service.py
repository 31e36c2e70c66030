"""
Optimization Service - wires store, client, adapters and engine together.

Built from the config dict (see shared.config). The engine runs on one
asyncio event loop; other threads (the Flask API) hand it work through
submit().
"""

import asyncio
import concurrent.futures
from typing import Any, Optional

import httpx

from shared.config import load_config
from shared.logging import get_logger

from .client import OptimizerClient
from .engine import OrchestrationEngine
from .export import ExportAdapter
from .importer import ImportAdapter
from .models import ScheduleGenerationRequest
from .modes import ModeSelector
from .store import ScheduleStore, InMemoryScheduleStore

log = get_logger("optimization", "service")


class OptimizationService:
    """
    Runtime container for the optimization workflow.

    Provides:
    - Component construction from configuration
    - Event loop ownership for async engine calls
    - Thread-safe submission of coroutines from the API thread
    """

    def __init__(
        self,
        config: Optional[dict] = None,
        store: Optional[ScheduleStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or load_config()
        optimizer_cfg = self.config["optimizer"]
        orchestration_cfg = self.config["orchestration"]

        self.store = store or InMemoryScheduleStore(
            data_dir=self.config.get("store", {}).get("data_dir"),
        )
        self.client = OptimizerClient(
            base_url=optimizer_cfg["base_url"],
            request_timeout=float(optimizer_cfg["request_timeout_seconds"]),
            health_timeout=float(optimizer_cfg["health_timeout_seconds"]),
            transport=transport,
        )
        self.export_adapter = ExportAdapter(self.store, self.client)
        self.import_adapter = ImportAdapter(self.store, self.client)
        self.mode_selector = ModeSelector(self.client, enabled=bool(optimizer_cfg["enabled"]))
        self.engine = OrchestrationEngine(
            store=self.store,
            client=self.client,
            export_adapter=self.export_adapter,
            import_adapter=self.import_adapter,
            mode_selector=self.mode_selector,
            poll_interval=float(orchestration_cfg["poll_interval_seconds"]),
            max_poll_attempts=int(orchestration_cfg["max_poll_attempts"]),
        )

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Bind the service to the running event loop."""
        if self._running:
            return
        self.loop = asyncio.get_running_loop()
        self._running = True
        log.info("optimization.service.started",
                 optimizer_url=self.client.base_url,
                 optimizer_enabled=self.mode_selector.enabled,
                 poll_interval=self.engine.poll_interval,
                 max_poll_attempts=self.engine.max_poll_attempts)

    async def stop(self):
        """Cancel in-flight polls and close the HTTP pool."""
        if not self._running:
            return
        log.info("optimization.service.stopping",
                 active_runs=len(self.engine.active_runs()))
        self._running = False
        for run in self.engine.active_runs():
            await self.engine.cancel(run["scheduleId"])
        await self.client.close()
        log.info("optimization.service.stopped")

    def submit(self, coro, timeout: Optional[float] = None) -> Any:
        """
        Run a coroutine on the service loop from another thread and wait
        for its result. Exceptions raised by the coroutine propagate.

        Raises:
            concurrent.futures.TimeoutError: no result within timeout; the
                coroutine has been cancelled on the loop
        """
        if self.loop is None or not self._running:
            coro.close()
            raise RuntimeError("Optimization service is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            # Cancelling a run releases its schedule for the next request
            future.cancel()
            log.warning("optimization.service.submit_timeout", timeout_seconds=timeout)
            raise

    def build_request(self, schedule_id: str, body: dict) -> ScheduleGenerationRequest:
        """Generation request from an API body, with configured defaults."""
        defaults = self.config["orchestration"]
        return ScheduleGenerationRequest.create(
            schedule_id=schedule_id,
            mode=body.get("mode"),
            optimization_time_seconds=body.get(
                "optimizationTimeSeconds", defaults["default_optimization_time_seconds"]
            ),
            optimization_mode=body.get("optimizationMode") or defaults["default_optimization_mode"],
        )
