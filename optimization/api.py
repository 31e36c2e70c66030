"""
HTTP API for the optimization service.

Exposes mode availability, optimizer health, generation, job status,
schedule comparison and run management under /api/optimization.
Runs alongside the service's event loop in the same process; async engine
calls are marshalled onto that loop.
"""

import asyncio
import concurrent.futures
import threading
from functools import wraps
from typing import TYPE_CHECKING

from flask import Flask, jsonify, request

from shared.logging import get_logger

from .errors import ErrorKind, OptimizationError, UnknownJob, ScheduleNotFound, ValidationError
from .models import RunState, WorkflowResult

if TYPE_CHECKING:
    from .service import OptimizationService

log = get_logger("optimization", "api")

PREFIX = "/api/optimization"

# Seconds allowed beyond the poll deadline for export and import
WAIT_SLACK_SECONDS = 120

_KIND_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.CONNECTIVITY: 503,
}


def status_for_kind(kind) -> int:
    """HTTP status for an error kind; remote and local outcomes are 200."""
    return _KIND_STATUS.get(kind, 200)


def error_response(error: OptimizationError):
    if isinstance(error, (UnknownJob, ScheduleNotFound)):
        status = 404
    else:
        status = status_for_kind(error.kind)
    body = {
        "success": False,
        "error": error.message,
        "errorKind": error.kind.value,
        "retryable": error.retryable,
    }
    return jsonify(body), status


def handle_errors(f):
    """Decorator translating workflow errors into JSON responses."""
    @wraps(f)
    def decorated(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except OptimizationError as e:
            log.warning("api.request_failed",
                        path=request.path, error_kind=e.kind.value, error=e.message)
            return error_response(e)
    return decorated


def create_app(service: "OptimizationService") -> Flask:
    """Create Flask app bound to an optimization service."""
    app = Flask(__name__)

    def require_running(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            if not service.running:
                return jsonify({"error": "Optimization service not running"}), 503
            return f(*args, **kwargs)
        return decorated

    @app.route(f"{PREFIX}/modes")
    @require_running
    @handle_errors
    def modes():
        """Availability of every generation mode."""
        availability = service.submit(service.mode_selector.available_modes())
        return jsonify({"modes": [m.to_dict() for m in availability]})

    @app.route(f"{PREFIX}/health")
    @require_running
    def health():
        """Optimizer health as seen from this service."""
        if not service.mode_selector.enabled:
            return jsonify({
                "optimizerUrl": service.client.base_url,
                "healthy": False,
                "enabled": False,
            })
        healthy = service.submit(service.client.health_check())
        return jsonify({
            "optimizerUrl": service.client.base_url,
            "healthy": healthy,
            "enabled": True,
        })

    @app.route(f"{PREFIX}/schedules/<schedule_id>/generate", methods=["POST"])
    @require_running
    @handle_errors
    def generate(schedule_id: str):
        """Start an optimization run; optionally wait for its outcome."""
        data = request.get_json(silent=True) or {}
        if not data.get("mode"):
            raise ValidationError("mode is required")

        gen_request = service.build_request(schedule_id, data)
        wait = bool(data.get("waitForCompletion", False))

        timeout = None
        if wait:
            timeout = service.engine.poll_deadline_seconds + WAIT_SLACK_SECONDS

        try:
            result = service.submit(
                service.engine.run(gen_request, wait_for_completion=wait),
                timeout=timeout,
            )
        except concurrent.futures.TimeoutError:
            result = WorkflowResult(
                success=False,
                schedule_id=schedule_id,
                state=RunState.TIMEOUT,
                message=f"No outcome within {timeout:g}s; the run was cancelled",
                error_kind=ErrorKind.LOCAL_TIMEOUT,
            )
        status = 200 if result.success else status_for_kind(result.error_kind)
        if result.success and not wait:
            status = 202
        log.info("api.generate",
                 schedule_id=schedule_id,
                 mode=gen_request.mode.value,
                 wait=wait,
                 success=result.success,
                 state=result.state.value)
        return jsonify(result.to_dict()), status

    @app.route(f"{PREFIX}/status/<job_id>")
    @require_running
    @handle_errors
    def job_status(job_id: str):
        """Latest known status of an optimizer job."""
        status = service.submit(service.engine.job_status(job_id))
        return jsonify(status.to_dict())

    @app.route(f"{PREFIX}/compare")
    @require_running
    @handle_errors
    def compare():
        """Compare two stored schedules."""
        first = request.args.get("schedule1")
        second = request.args.get("schedule2")
        if not first or not second:
            raise ValidationError("schedule1 and schedule2 query parameters are required")
        return jsonify(service.engine.compare(first, second).to_dict())

    @app.route(f"{PREFIX}/schedules/<schedule_id>/cancel", methods=["POST"])
    @require_running
    def cancel(schedule_id: str):
        """Stop waiting on an in-flight run for a schedule."""
        cancelled = service.submit(service.engine.cancel(schedule_id))
        if not cancelled:
            return jsonify({
                "success": False,
                "error": f"No optimization run in progress for schedule {schedule_id}",
            }), 404
        return jsonify({"success": True, "scheduleId": schedule_id})

    @app.route(f"{PREFIX}/runs")
    @require_running
    def runs():
        """Runs currently in flight."""
        active = service.engine.active_runs()
        return jsonify({"runs": active, "total": len(active)})

    @app.route(f"{PREFIX}/schedules/<schedule_id>/validate", methods=["POST"])
    @require_running
    @handle_errors
    def validate(schedule_id: str):
        """Check a schedule for teacher and room double-bookings."""
        report = service.submit(_validate(service, schedule_id))
        return jsonify(report.to_dict())

    return app


async def _validate(service: "OptimizationService", schedule_id: str):
    # Runs on the service loop so store writes never race an import
    return service.import_adapter.validate_imported_schedule(schedule_id)


def run_api_server(service: "OptimizationService", host: str = "127.0.0.1", port: int = 9010):
    """Run the Flask API server (blocking)."""
    app = create_app(service)
    app.run(host=host, port=port, threaded=True)


async def run_with_api(
    service: "OptimizationService",
    host: str = "127.0.0.1",
    port: int = 9010,
):
    """
    Run the optimization service with HTTP API.

    Starts the service and runs Flask API in a thread.
    """
    await service.start()

    api_thread = threading.Thread(
        target=run_api_server,
        kwargs={"service": service, "host": host, "port": port},
        daemon=True,
    )
    api_thread.start()
    log.info("api.server_started", host=host, port=port)

    # Keep running until the service stops
    try:
        while service.running:
            await asyncio.sleep(1)
    finally:
        await service.stop()
