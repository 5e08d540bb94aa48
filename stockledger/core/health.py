"""
Health probes for the stock ledger service.

/health and /health/live are liveness checks and never touch the database.
/health/ready checks the database plus host disk and memory, /health/startup
checks that the ledger tables exist, and /metrics reports process figures
together with whatever the metrics provider returns under ``ledger``.
"""

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

import psutil
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("stock", "stock_movements", "checkout_items")


class HealthStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _result(state: HealthStatus, component: str, **fields: Any) -> Dict[str, Any]:
    return {"status": state, "componentType": component, "time": _now(), **fields}


def _threshold(value: float, fail_below: float, warn_below: float) -> HealthStatus:
    if value < fail_below:
        return HealthStatus.FAIL
    if value < warn_below:
        return HealthStatus.WARN
    return HealthStatus.PASS


def overall_status(checks: Dict[str, Dict[str, Any]]) -> HealthStatus:
    states = {check["status"] for check in checks.values()}
    for state in (HealthStatus.FAIL, HealthStatus.WARN):
        if state in states:
            return state
    return HealthStatus.PASS


class ServiceHealth:
    """Health router bound to the service's engine and ledger metrics."""

    def __init__(
        self,
        service_name: str,
        version: str,
        engine: Engine,
        metrics_provider: Optional[Callable[[], Dict[str, Any]]] = None,
        required_tables: Iterable[str] = REQUIRED_TABLES,
    ):
        self.service_name = service_name
        self.version = version
        self.engine = engine
        self.metrics_provider = metrics_provider
        self.required_tables = tuple(required_tables)
        self.started_at = time.time()
        self.readiness_checks = 0

    def create_health_router(self) -> APIRouter:
        router = APIRouter(tags=["health"])

        @router.get("/health")
        async def health() -> Dict[str, Any]:
            return {
                "status": HealthStatus.PASS,
                "service": self.service_name,
                "version": self.version,
                "releaseId": os.getenv("RELEASE_ID", "unknown"),
                "timestamp": _now(),
            }

        @router.get("/health/live")
        async def live() -> Dict[str, Any]:
            return {"status": "alive"}

        @router.get("/health/ready")
        async def ready() -> JSONResponse:
            self.readiness_checks += 1
            checks = {
                "database:connectivity": await asyncio.to_thread(self.check_database),
                "storage:disk_space": self.check_disk(),
                "system:memory": self.check_memory(),
            }
            state = overall_status(checks)
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE if state == HealthStatus.FAIL else status.HTTP_200_OK,
                content={
                    "status": state,
                    "serviceId": self.service_name,
                    "version": self.version,
                    "checks": checks,
                    "timestamp": _now(),
                },
            )

        @router.get("/health/startup")
        async def startup() -> JSONResponse:
            checks = {"database:schema": await asyncio.to_thread(self.check_schema)}
            if overall_status(checks) != HealthStatus.PASS:
                return JSONResponse(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    content={"status": "starting", "checks": checks},
                )
            return JSONResponse(content={"status": "started", "checks": checks})

        @router.get("/metrics")
        async def metrics() -> Dict[str, Any]:
            process = psutil.Process()
            memory = process.memory_info()
            payload: Dict[str, Any] = {
                "service": self.service_name,
                "version": self.version,
                "uptime_seconds": round(time.time() - self.started_at, 3),
                "readiness_checks": self.readiness_checks,
                "timestamp": _now(),
                "process": {
                    "memory_rss_bytes": memory.rss,
                    "cpu_percent": process.cpu_percent(),
                    "num_threads": process.num_threads(),
                },
            }
            if self.metrics_provider is not None:
                # provider queries the database
                payload["ledger"] = await asyncio.to_thread(self.metrics_provider)
            return payload

        return router

    def check_database(self) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as exc:
            logger.error(f"Database health check failed: {exc}")
            return _result(HealthStatus.FAIL, "datastore", output=str(exc))
        elapsed_ms = (time.perf_counter() - started) * 1000
        return _result(HealthStatus.PASS, "datastore", observedValue=round(elapsed_ms, 2), observedUnit="ms")

    def check_schema(self) -> Dict[str, Any]:
        try:
            existing = set(inspect(self.engine).get_table_names())
        except Exception as exc:
            return _result(HealthStatus.FAIL, "datastore", output=str(exc))
        missing = [name for name in self.required_tables if name not in existing]
        if missing:
            return _result(HealthStatus.FAIL, "datastore", output=f"Missing tables: {', '.join(missing)}")
        return _result(HealthStatus.PASS, "datastore")

    def check_disk(self) -> Dict[str, Any]:
        try:
            free_gb = psutil.disk_usage('/').free / 1024 ** 3
        except OSError as exc:
            return _result(HealthStatus.WARN, "system", output=str(exc))
        return _result(_threshold(free_gb, 1, 5), "system", observedValue=round(free_gb, 2), observedUnit="GB")

    def check_memory(self) -> Dict[str, Any]:
        available_mb = psutil.virtual_memory().available / 1024 ** 2
        return _result(
            _threshold(available_mb, 100, 500), "system", observedValue=round(available_mb, 2), observedUnit="MB"
        )
