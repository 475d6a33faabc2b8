"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request IDs
- Request/response logging middleware
- Secret redaction for URLs, queries and config dumps
- Metrics collection (outcomes, fees paid, latencies)
- Health check utilities

Configuration:
- ATTESTATION_RELAY_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- ATTESTATION_RELAY_LOG_FORMAT: json, text (default: json in production)
- ATTESTATION_RELAY_PRODUCTION: Enable production mode

Usage:
    from attestation_relay.observability import get_logger, RequestContextMiddleware

    logger = get_logger(__name__)
    logger.info("Hub request submitted", tx_hash=tx_hash, action_type="TEMP_SEOUL_GT_15")
"""

import json
import logging
import os
import sys
import time
import uuid
from collections import deque
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
user_address_var: ContextVar[str] = ContextVar("user_address", default="")

REDACTED = "***"

# Query parameter names that always carry credentials
SECRET_QUERY_PARAMS = frozenset({"appid", "apikey", "api_key", "key", "token", "access_token"})


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("ATTESTATION_RELAY_PRODUCTION", "").lower() in ("1", "true", "yes")


def _log_level() -> int:
    level = logging.getLevelName(os.environ.get("ATTESTATION_RELAY_LOG_LEVEL", "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _use_json_logging() -> bool:
    chosen = os.environ.get("ATTESTATION_RELAY_LOG_FORMAT", "").strip().lower()
    if chosen in ("json", "text"):
        return chosen == "json"
    return _is_production()


# ============================================================
# REDACTION
# ============================================================

def redact(text: str, secrets: Iterable[Optional[str]] = ()) -> str:
    """
    Mask every occurrence of the given secret values in a string.

    Empty or None secrets are ignored so callers can pass optional
    config values directly.
    """
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


def redact_url(url: str, secrets: Iterable[Optional[str]] = ()) -> str:
    """
    Redact credentials from a URL before it is logged.

    Masks known credential query parameters (appid, api_key, ...) and
    any explicitly supplied secret values anywhere in the URL.
    """
    parts = urlsplit(url)
    if parts.query:
        query = [
            (name, REDACTED if name.lower() in SECRET_QUERY_PARAMS else value)
            for name, value in parse_qsl(parts.query, keep_blank_values=True)
        ]
        # Keep the mask readable instead of percent-encoding it
        parts = parts._replace(query=urlencode(query, safe="*"))
    return redact(urlunsplit(parts), secrets)


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_STANDARD_RECORD_FIELDS = frozenset({
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
})


def _fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Keyword fields passed through ContextLogger, plus the request context."""
    found = {}
    request_id = request_id_var.get()
    if request_id:
        found["request_id"] = request_id
    user_address = user_address_var.get()
    if user_address:
        found["user_address"] = user_address
    for key, value in vars(record).items():
        if key not in _STANDARD_RECORD_FIELDS and not key.startswith("_"):
            found[key] = value
    return found


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line:

        {"timestamp": "...", "level": "INFO",
         "logger": "attestation_relay.core.chain",
         "message": "Hub attestation requested",
         "request_id": "1a2b3c4d", "tx_hash": "0x..."}

    Values json cannot encode (UUIDs, enums, bytes) are written with str().
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _record_time(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """`time level [request] logger: message key=value ...` for development."""

    def format(self, record: logging.LogRecord) -> str:
        fields = _fields(record)
        request_id = fields.pop("request_id", None)
        context = f"[{request_id}] " if request_id else ""

        line = (
            f"{_record_time(record):%Y-%m-%d %H:%M:%S} {record.levelname:8} "
            f"{context}{record.name}: {record.getMessage()}"
        )
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that automatically includes context fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("Fact fetched", source_id="openweathermap", value=16.2)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})

        # Move non-standard kwargs to extra
        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """
    Get a structured logger for the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        ContextLogger instance with structured output
    """
    return ContextLogger(logging.getLogger(name), {})


# httpx logs full request URLs, data-source credentials included, at INFO
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "web3", "urllib3")


def setup_logging() -> None:
    """
    Configure logging for the application.

    Call this once at application startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(_log_level())

    if _use_json_logging():
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

_request_logger = get_logger("attestation_relay.request")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with an id for the log lines it produces.

    The id comes from X-Request-ID when the caller sends one and is
    echoed back in the same header. One line per request records the
    status and duration.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        request_id_var.set(request_id)
        label = f"{request.method} {request.url.path}"
        started = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception:
            _request_logger.exception(f"{label} crashed")
            raise
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            _request_logger.log(
                logging.INFO if status_code < 400 else logging.WARNING,
                f"{label} -> {status_code}",
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=round(duration_ms, 2),
            )
            get_metrics().record_request(duration_ms, success=status_code < 500)
            request_id_var.set("")
            user_address_var.set("")


# ============================================================
# METRICS
# ============================================================

LATENCY_WINDOW = 1000


def _latency_summary(samples: Iterable[float]) -> Dict[str, Optional[float]]:
    ordered = sorted(samples)
    if not ordered:
        return {"p50_ms": None, "p95_ms": None, "max_ms": None}

    def pick(p: float) -> float:
        return round(ordered[min(int(len(ordered) * p), len(ordered) - 1)], 2)

    return {"p50_ms": pick(0.5), "p95_ms": pick(0.95), "max_ms": round(ordered[-1], 2)}


@dataclass
class MetricsCollector:
    """
    In-process counters for the relay, served at GET /metrics.

    Latencies keep the most recent LATENCY_WINDOW samples per series.
    Fees are summed in wei and reported as a string.
    """

    orchestrations_total: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    hub_submissions: int = 0
    ledger_records: int = 0
    direct_records: int = 0
    fees_paid_wei: int = 0
    verifier_retries: int = 0
    in_flight_rejections: int = 0
    in_flight_joins: int = 0
    requests_total: int = 0
    requests_failed: int = 0
    orchestration_latencies_ms: deque = field(default_factory=lambda: deque(maxlen=LATENCY_WINDOW))
    request_latencies_ms: deque = field(default_factory=lambda: deque(maxlen=LATENCY_WINDOW))

    def record_outcome(self, outcome: str, latency_ms: float) -> None:
        self.orchestrations_total += 1
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1
        self.orchestration_latencies_ms.append(latency_ms)

    def record_hub_submission(self, fee_wei: int) -> None:
        self.hub_submissions += 1
        self.fees_paid_wei += fee_wei

    def record_ledger_record(self, direct: bool) -> None:
        self.ledger_records += 1
        if direct:
            self.direct_records += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        self.requests_total += 1
        if not success:
            self.requests_failed += 1
        self.request_latencies_ms.append(latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        return {
            "orchestrations_total": self.orchestrations_total,
            "outcomes": dict(self.outcomes),
            "hub_submissions": self.hub_submissions,
            "ledger_records": self.ledger_records,
            "direct_records": self.direct_records,
            "fees_paid_wei": str(self.fees_paid_wei),
            "verifier_retries": self.verifier_retries,
            "in_flight_rejections": self.in_flight_rejections,
            "in_flight_joins": self.in_flight_joins,
            "requests_total": self.requests_total,
            "requests_failed": self.requests_failed,
            "orchestration_latency": _latency_summary(self.orchestration_latencies_ms),
            "request_latency": _latency_summary(self.request_latencies_ms),
        }


# Global metrics instance
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


def reset_metrics() -> MetricsCollector:
    """Replace the global collector (for testing only)."""
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


def _configuration_check(config) -> Dict[str, Any]:
    problems = config.problems()
    return {"status": "unhealthy" if problems else "healthy", "problems": problems}


def _chain_check(submitter) -> Dict[str, Any]:
    try:
        connected = bool(submitter.is_connected())
    except Exception as e:
        return {"status": "unhealthy", "connected": False, "error": type(e).__name__}
    return {
        "status": "healthy" if connected else "unhealthy",
        "connected": connected,
        "submitter_address": submitter.address,
        "hub_address": submitter.hub_address,
        "ledger_address": submitter.ledger_address,
    }


def check_health(config=None, submitter=None) -> HealthStatus:
    """
    Liveness, plus configuration validity and RPC reachability for
    whichever of config / submitter is given. Healthy only if every
    check that ran is healthy.
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}
    if config is not None:
        checks["configuration"] = _configuration_check(config)
    if submitter is not None:
        checks["chain"] = _chain_check(submitter)

    return HealthStatus(
        healthy=all(check["status"] == "healthy" for check in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
