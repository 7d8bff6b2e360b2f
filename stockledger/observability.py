"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request IDs
- Request/response logging middleware
- Metrics collection (append latency, verification runs, alerts)
- Health check utilities

Configuration:
- STOCKLEDGER_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- STOCKLEDGER_LOG_FORMAT: json, text (default: json in production)
- STOCKLEDGER_PRODUCTION: Enable production mode

Usage:
    from stockledger.observability import get_logger, RequestContextMiddleware

    logger = get_logger(__name__)
    logger.info("Entry appended", index=42, event_type="STOCK_IN")
"""

import json
import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Context variable for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

MAX_SAMPLES = 1000


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("STOCKLEDGER_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("STOCKLEDGER_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("STOCKLEDGER_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_RESERVED_RECORD_KEYS = frozenset((
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "process",
    "processName", "taskName",
))


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000000+00:00",
        "level": "WARNING",
        "logger": "stockledger.core.verifier",
        "message": "Chain verification failed: 1 tampered entries",
        "request_id": "abc-123",
        ...extra fields...
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_KEYS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        request_id = request_id_var.get()
        if request_id:
            prefix = f"[{request_id[:8]}] "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that turns keyword arguments into structured fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("Verification finished", entries_checked=120, valid=True)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})

        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """Get a structured logger for the given name (typically __name__)."""
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Configure logging for the application.

    Call this once at application startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_get_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(_get_log_level())

    if _use_json_logging():
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that sets up request context for logging.

    - Uses the X-Request-ID header or generates a short request ID
    - Logs request/response with timing
    - Records request counts and latency in the metrics collector
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request_id_var.set(request_id)

        logger = get_logger("stockledger.request")
        start_time = time.perf_counter()

        logger.debug(
            f"{request.method} {request.url.path}",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            get_metrics().record_request(duration_ms, success=response.status_code < 500)
            log_level = logging.INFO if response.status_code < 400 else logging.WARNING

            logger.log(
                log_level,
                f"{request.method} {request.url.path} -> {response.status_code}",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            get_metrics().record_request(duration_ms, success=False)
            logger.exception(
                f"{request.method} {request.url.path} -> 500",
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e),
            )
            raise

        finally:
            request_id_var.set("")


# ============================================================
# METRICS
# ============================================================

def _percentile(data: list, p: float) -> Optional[float]:
    if not data:
        return None
    sorted_data = sorted(data)
    idx = int(len(sorted_data) * p)
    return sorted_data[min(idx, len(sorted_data) - 1)]


@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    For production, replace with Prometheus, StatsD, or similar.
    """

    # Counters
    entries_appended: int = 0
    verification_runs: int = 0
    tamper_detections: int = 0
    alerts_sent: int = 0
    alerts_failed: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    # Gauges
    last_verification_valid: Optional[bool] = None
    last_verification_at: Optional[datetime] = None

    # Histograms (simplified as lists)
    append_latencies_ms: list = field(default_factory=list)
    verification_durations_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    _lock: Lock = field(default_factory=Lock, repr=False)

    def record_append(self, latency_ms: float) -> None:
        """Record a ledger append."""
        with self._lock:
            self.entries_appended += 1
            self.append_latencies_ms.append(latency_ms)
            self.append_latencies_ms = self.append_latencies_ms[-MAX_SAMPLES:]

    def record_verification(self, duration_ms: float, flagged_entries: int) -> None:
        """Record one completed verification run and how many distinct entries it flagged."""
        with self._lock:
            self.verification_runs += 1
            self.tamper_detections += flagged_entries
            self.last_verification_valid = flagged_entries == 0
            self.last_verification_at = datetime.now(timezone.utc)
            self.verification_durations_ms.append(duration_ms)
            self.verification_durations_ms = self.verification_durations_ms[-MAX_SAMPLES:]

    def record_alert(self, delivered: bool) -> None:
        with self._lock:
            if delivered:
                self.alerts_sent += 1
            else:
                self.alerts_failed += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        """Record a request."""
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1
            self.request_latencies_ms.append(latency_ms)
            self.request_latencies_ms = self.request_latencies_ms[-MAX_SAMPLES:]

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        with self._lock:
            return {
                "entries_appended": self.entries_appended,
                "verification_runs": self.verification_runs,
                "tamper_detections": self.tamper_detections,
                "alerts_sent": self.alerts_sent,
                "alerts_failed": self.alerts_failed,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                "last_verification_valid": self.last_verification_valid,
                "last_verification_at": (
                    self.last_verification_at.isoformat()
                    if self.last_verification_at else None
                ),
                "append_latency_p50_ms": _percentile(self.append_latencies_ms, 0.5),
                "append_latency_p95_ms": _percentile(self.append_latencies_ms, 0.95),
                "append_latency_p99_ms": _percentile(self.append_latencies_ms, 0.99),
                "verification_duration_p50_ms": _percentile(self.verification_durations_ms, 0.5),
                "request_latency_p50_ms": _percentile(self.request_latencies_ms, 0.5),
                "request_latency_p95_ms": _percentile(self.request_latencies_ms, 0.95),
            }


# Global metrics instance
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


def reset_metrics() -> MetricsCollector:
    """Replace the global collector with a fresh one (for tests)."""
    global _metrics
    _metrics = MetricsCollector()
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(store=None, verifier=None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        store: LedgerStore instance
        verifier: ChainVerifier instance; when given, runs a full
            verification (expensive, only for the detailed endpoint)

    Returns:
        HealthStatus with all check results
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    if store is not None:
        try:
            head = store.get_head()
            checks["ledger_store"] = {
                "status": "healthy",
                "entry_count": head.entry_count,
                "last_hash": head.last_hash[:16] + "..." if head.last_hash else None,
            }
        except Exception as e:
            checks["ledger_store"] = {
                "status": "unhealthy",
                "error": str(e),
            }
            all_healthy = False

    if verifier is not None:
        try:
            report = verifier.verify()
            checks["chain_integrity"] = {
                "status": "healthy" if report.is_valid else "unhealthy",
                "valid": report.is_valid,
                "entries_checked": report.entries_checked,
                "tampered_count": len(report.tampered_entries),
            }
            if not report.is_valid:
                all_healthy = False
        except Exception as e:
            checks["chain_integrity"] = {
                "status": "unhealthy",
                "error": str(e),
            }
            all_healthy = False

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
