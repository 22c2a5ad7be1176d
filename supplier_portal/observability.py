from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict

from flask import g, has_request_context, request


HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
TENANT_PROBE_BUCKETS_MS = HTTP_DURATION_BUCKETS_MS + (30000.0,)

_CONNECTION_EVENTS = ("opened", "failed", "evicted")
_CIRCUIT_STATES = ("closed", "open", "half_open")

# Probe threads do not inherit the Flask request, so the id travels in a contextvar.
_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("supplier_portal_request_id", default="")


def _clean_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _REQUEST_ID_CTX.set(_clean_request_id(request_id))


@contextlib.contextmanager
def bind_request_id(request_id: str | None):
    token = _REQUEST_ID_CTX.set(_clean_request_id(request_id))
    try:
        yield _REQUEST_ID_CTX.get()
    finally:
        _REQUEST_ID_CTX.reset(token)


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if not request_id:
        request_id = str(request.headers.get("X-Request-Id") or "").strip() or str(uuid.uuid4())
        g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return str(_REQUEST_ID_CTX.get() or "").strip() or default or "n/a"


_RESERVED_RECORD_KEYS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields are lifted to the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id()
            payload["method"] = request.method
            payload["path"] = request.path
            if request.url_rule is not None:
                payload["route"] = request.url_rule.rule
        else:
            payload["request_id"] = str(getattr(record, "request_id", "") or "").strip() or current_request_id()

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_KEYS or key.startswith("_") or key in payload or callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).strip().upper(), logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


class _Histogram:
    def __init__(self, limits: tuple[float, ...]) -> None:
        self.limits = limits
        self.count = 0
        self.total = 0.0
        self.hits = [0] * len(limits)

    def observe(self, value: float) -> None:
        value = max(0.0, float(value))
        self.count += 1
        self.total += value
        for index, limit in enumerate(self.limits):
            if value <= limit:
                self.hits[index] += 1

    def buckets(self) -> list[tuple[str, int]]:
        return [(f"{limit:g}", hits) for limit, hits in zip(self.limits, self.hits)] + [("+Inf", self.count)]


def _label_value(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _sample(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if not labels:
        return f"{name} {value}"
    rendered = ",".join(f'{key}="{_label_value(labels[key])}"' for key in sorted(labels))
    return f"{name}{{{rendered}}} {value}"


def _header(lines: list[str], name: str, kind: str, help_text: str) -> None:
    lines.append(f"# HELP {name} {help_text}")
    lines.append(f"# TYPE {name} {kind}")


def _histogram_lines(lines: list[str], name: str, histogram: _Histogram, labels: dict[str, object] | None = None) -> None:
    base = dict(labels or {})
    for bucket, hits in histogram.buckets():
        lines.append(_sample(f"{name}_bucket", hits, {**base, "le": bucket}))
    lines.append(_sample(f"{name}_sum", round(histogram.total, 3), base))
    lines.append(_sample(f"{name}_count", histogram.count, base))


class MetricsRegistry:
    """In-process counters for HTTP traffic and tenant routing, rendered as Prometheus text."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._http_total: Dict[tuple[str, str, str], int] = {}
            self._http_duration: Dict[tuple[str, str], _Histogram] = {}
            self._probe_total: Dict[tuple[str, str], int] = {}
            self._probe_duration = _Histogram(TENANT_PROBE_BUCKETS_MS)
            self._connection_total: Dict[str, Dict[str, int]] = {event: {} for event in _CONNECTION_EVENTS}
            self._mapping_writes: Dict[str, int] = {}
            self._syncs: Dict[str, int] = {}

    @staticmethod
    def _bump(counter: dict, key) -> None:
        counter[key] = counter.get(key, 0) + 1

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        with self._lock:
            self._bump(self._http_total, (method, route, str(status_code)))
            histogram = self._http_duration.setdefault((method, route), _Histogram(HTTP_DURATION_BUCKETS_MS))
            histogram.observe(duration_ms)

    def observe_tenant_probe(self, tenant_code: str, outcome: str, duration_ms: float) -> None:
        with self._lock:
            self._bump(self._probe_total, (tenant_code, outcome))
            self._probe_duration.observe(duration_ms)

    def observe_tenant_connection(self, tenant_code: str, event: str) -> None:
        with self._lock:
            counter = self._connection_total.get(event)
            if counter is not None:
                self._bump(counter, tenant_code)

    def observe_mapping_write(self, action: str) -> None:
        with self._lock:
            self._bump(self._mapping_writes, action)

    def observe_sync(self, outcome: str) -> None:
        with self._lock:
            self._bump(self._syncs, outcome)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "requests_total": sum(self._http_total.values()),
                "errors_total": sum(
                    value for (_method, _route, status), value in self._http_total.items() if status.startswith("5")
                ),
                "tenant_probes_total": sum(self._probe_total.values()),
                "tenant_syncs_total": sum(self._syncs.values()),
            }

    def render(self, circuit_state: dict | None = None) -> str:
        lines: list[str] = []
        with self._lock:
            _header(lines, "http_request_total", "counter", "Total HTTP requests by method, route and status.")
            for (method, route, status), value in sorted(self._http_total.items()):
                lines.append(_sample("http_request_total", value, {"method": method, "route": route, "status": status}))

            _header(lines, "http_request_duration_ms", "histogram", "HTTP request latency in milliseconds.")
            for (method, route), histogram in sorted(self._http_duration.items()):
                _histogram_lines(lines, "http_request_duration_ms", histogram, {"method": method, "route": route})

            _header(lines, "tenant_probe_total", "counter", "Identity search probes by tenant and outcome.")
            for (tenant, outcome), value in sorted(self._probe_total.items()):
                lines.append(_sample("tenant_probe_total", value, {"tenant": tenant, "outcome": outcome}))

            _header(lines, "tenant_probe_duration_ms", "histogram", "Identity search probe latency in milliseconds.")
            _histogram_lines(lines, "tenant_probe_duration_ms", self._probe_duration)

            for event, help_text in (
                ("opened", "Tenant connections opened by the pool manager."),
                ("failed", "Tenant connection attempts that failed after retry."),
                ("evicted", "Tenant connections evicted after transport errors."),
            ):
                _counter_lines(lines, f"tenant_connection_{event}_total", help_text, "tenant", self._connection_total[event])
            _counter_lines(lines, "provider_mapping_write_total", "Provider mapping upserts by action.", "action", self._mapping_writes)
            _counter_lines(lines, "tenant_sync_total", "Auto-sync runs by outcome.", "outcome", self._syncs)

        if circuit_state:
            _header(lines, "tenant_circuit_state", "gauge", "Circuit breaker state per tenant.")
            for tenant, state in sorted(circuit_state.items()):
                current = state.get("state")
                for candidate in _CIRCUIT_STATES:
                    lines.append(
                        _sample("tenant_circuit_state", int(current == candidate), {"tenant": tenant, "state": candidate})
                    )
        return "\n".join(lines) + "\n"


def _counter_lines(lines: list[str], name: str, help_text: str, label: str, values: dict) -> None:
    _header(lines, name, "counter", help_text)
    for key, value in sorted(values.items()):
        lines.append(_sample(name, value, {label: key}))


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = (time.perf_counter() - started) * 1000.0 if started else 0.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_tenant_probe(tenant_code: str, outcome: str, duration_ms: float) -> None:
    _METRICS.observe_tenant_probe(tenant_code, outcome, duration_ms)


def observe_tenant_connection(tenant_code: str, event: str) -> None:
    _METRICS.observe_tenant_connection(tenant_code, event)


def observe_mapping_write(action: str) -> None:
    _METRICS.observe_mapping_write(action)


def observe_sync(outcome: str) -> None:
    _METRICS.observe_sync(outcome)


def prometheus_metrics_text(*, circuit_state: dict | None = None) -> str:
    return _METRICS.render(circuit_state)


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)
