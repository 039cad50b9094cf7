from __future__ import annotations

import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict

from flask import g, has_request_context, request


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_ERP_CALL_BUCKETS_MS = (25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0, 30000.0)
_ERP_BACKOFF_BUCKETS_SECONDS = (0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0)

_LOG_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")


def _normalize_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))


def _background_request_id(default: str | None = None) -> str:
    request_id = str(_LOG_REQUEST_ID_CTX.get() or "").strip()
    if request_id:
        return request_id
    return default or "n/a"


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id(default="n/a")
            payload["path"] = request.path
            payload["method"] = request.method
            if request.url_rule is not None:
                payload["route"] = request.url_rule.rule
        else:
            record_request_id = str(getattr(record, "request_id", "") or "").strip()
            payload["request_id"] = record_request_id or _background_request_id(default="n/a")

        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_"):
                continue
            if key in payload:
                continue
            if callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if request_id:
        set_log_request_id(request_id)
        return request_id
    incoming = str(request.headers.get("X-Request-Id") or "").strip()
    request_id = incoming or str(uuid.uuid4())
    g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _background_request_id(default=default)


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._requests_total = 0
        self._errors_total = 0
        self._by_route: Dict[str, Dict[str, float]] = {}
        self._http_request_duration_ms: Dict[tuple[str, str], dict] = {}

        self._order_transitions_total: Dict[tuple[str, str], int] = {}
        self._order_conflicts_total = 0
        self._erp_sync_total: Dict[str, int] = {}
        self._erp_retry_total = 0
        self._erp_call_duration_ms = self._new_histogram_state(_ERP_CALL_BUCKETS_MS)
        self._erp_retry_backoff_seconds = self._new_histogram_state(_ERP_BACKOFF_BUCKETS_SECONDS)
        self._erp_token_refresh_total: Dict[str, int] = {}

    @staticmethod
    def _bucket_label(limit: float) -> str:
        return f"{limit:g}"

    @classmethod
    def _new_histogram_state(cls, limits: tuple[float, ...]) -> dict:
        return {
            "count": 0,
            "sum": 0.0,
            "buckets": {cls._bucket_label(limit): 0 for limit in limits} | {"+Inf": 0},
        }

    @classmethod
    def _observe_histogram(cls, state: dict, value: float, limits: tuple[float, ...]) -> None:
        duration = max(0.0, float(value))
        state["count"] += 1
        state["sum"] += duration
        for limit in limits:
            if duration <= limit:
                key = cls._bucket_label(limit)
                state["buckets"][key] = int(state["buckets"].get(key, 0)) + 1
        state["buckets"]["+Inf"] = int(state["count"])

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = str(route or "unknown").strip() or "unknown"

        key = f"{method_key} {route_key}"
        with self._lock:
            bucket = self._by_route.setdefault(
                key,
                {
                    "requests": 0.0,
                    "errors": 0.0,
                    "latency_sum_ms": 0.0,
                    "latency_max_ms": 0.0,
                },
            )
            bucket["requests"] += 1
            bucket["latency_sum_ms"] += max(0.0, float(duration_ms))
            bucket["latency_max_ms"] = max(bucket["latency_max_ms"], max(0.0, float(duration_ms)))
            self._requests_total += 1
            if int(status_code) >= 400:
                bucket["errors"] += 1
                self._errors_total += 1

            histogram = self._http_request_duration_ms.setdefault(
                (method_key, route_key),
                self._new_histogram_state(_HTTP_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _HTTP_DURATION_BUCKETS_MS)

    def observe_order_transition(self, from_status: str, to_status: str) -> None:
        key = (str(from_status or "unknown"), str(to_status or "unknown"))
        with self._lock:
            self._order_transitions_total[key] = int(self._order_transitions_total.get(key, 0)) + 1

    def observe_order_conflict(self, count: int = 1) -> None:
        increment = max(0, int(count or 0))
        if increment <= 0:
            return
        with self._lock:
            self._order_conflicts_total += increment

    def observe_erp_sync(self, outcome: str, duration_ms: float | None = None) -> None:
        key = str(outcome or "unknown").strip() or "unknown"
        with self._lock:
            self._erp_sync_total[key] = int(self._erp_sync_total.get(key, 0)) + 1
            if duration_ms is not None:
                self._observe_histogram(self._erp_call_duration_ms, duration_ms, _ERP_CALL_BUCKETS_MS)

    def observe_erp_retry(self, backoff_seconds: float) -> None:
        with self._lock:
            self._erp_retry_total += 1
            self._observe_histogram(self._erp_retry_backoff_seconds, float(backoff_seconds), _ERP_BACKOFF_BUCKETS_SECONDS)

    def observe_erp_token_refresh(self, result: str) -> None:
        key = str(result or "unknown").strip() or "unknown"
        with self._lock:
            self._erp_token_refresh_total[key] = int(self._erp_token_refresh_total.get(key, 0)) + 1

    def snapshot(self) -> dict:
        with self._lock:
            route_stats = []
            for route, bucket in self._by_route.items():
                requests_count = int(bucket["requests"])
                avg_ms = 0.0
                if requests_count > 0:
                    avg_ms = float(bucket["latency_sum_ms"]) / requests_count
                route_stats.append(
                    {
                        "route": route,
                        "requests": requests_count,
                        "errors": int(bucket["errors"]),
                        "avg_latency_ms": round(avg_ms, 2),
                        "max_latency_ms": round(float(bucket["latency_max_ms"]), 2),
                    }
                )
            route_stats.sort(key=lambda item: item["requests"], reverse=True)
            return {
                "requests_total": int(self._requests_total),
                "errors_total": int(self._errors_total),
                "by_route": route_stats[:40],
                "orders": {
                    "transitions_total": int(sum(self._order_transitions_total.values())),
                    "transitions": {
                        f"{source}->{target}": int(count)
                        for (source, target), count in sorted(self._order_transitions_total.items())
                    },
                    "conflicts_total": int(self._order_conflicts_total),
                },
                "erp_sync": {
                    "total": int(sum(self._erp_sync_total.values())),
                    "by_outcome": dict(sorted(self._erp_sync_total.items())),
                    "retry_total": int(self._erp_retry_total),
                    "call_count": int(self._erp_call_duration_ms["count"]),
                    "token_refresh": dict(sorted(self._erp_token_refresh_total.items())),
                },
            }

    @staticmethod
    def _copy_histogram(state: dict) -> dict:
        return {
            "count": int(state["count"]),
            "sum": float(state["sum"]),
            "buckets": {label: int(count) for label, count in state["buckets"].items()},
        }

    def prometheus_snapshot(self) -> dict:
        with self._lock:
            return {
                "http_request_duration_ms": [
                    {"method": method, "route": route} | self._copy_histogram(histogram)
                    for (method, route), histogram in sorted(self._http_request_duration_ms.items())
                ],
                "order_transitions_total": dict(sorted(self._order_transitions_total.items())),
                "order_conflicts_total": int(self._order_conflicts_total),
                "erp_sync_total": dict(sorted(self._erp_sync_total.items())),
                "erp_call_duration_ms": self._copy_histogram(self._erp_call_duration_ms),
                "erp_retry_backoff_seconds": self._copy_histogram(self._erp_retry_backoff_seconds),
                "erp_token_refresh_total": dict(sorted(self._erp_token_refresh_total.items())),
            }

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._errors_total = 0
            self._by_route.clear()
            self._http_request_duration_ms.clear()
            self._order_transitions_total.clear()
            self._order_conflicts_total = 0
            self._erp_sync_total.clear()
            self._erp_retry_total = 0
            self._erp_call_duration_ms = self._new_histogram_state(_ERP_CALL_BUCKETS_MS)
            self._erp_retry_backoff_seconds = self._new_histogram_state(_ERP_BACKOFF_BUCKETS_SECONDS)
            self._erp_token_refresh_total.clear()


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = 0.0
    if started > 0.0:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_order_transition(from_status: str, to_status: str) -> None:
    _METRICS.observe_order_transition(from_status, to_status)


def observe_order_conflict(count: int = 1) -> None:
    _METRICS.observe_order_conflict(count)


def observe_erp_sync(outcome: str, duration_ms: float | None = None) -> None:
    _METRICS.observe_erp_sync(outcome, duration_ms)


def observe_erp_retry(backoff_seconds: float) -> None:
    _METRICS.observe_erp_retry(backoff_seconds)


def observe_erp_token_refresh(result: str) -> None:
    _METRICS.observe_erp_token_refresh(result)


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


def _prom_histogram(lines: list[str], name: str, hist: dict, labels: dict[str, object] | None = None) -> None:
    base_labels = dict(labels or {})
    for le_label, bucket_value in hist["buckets"].items():
        lines.append(_prom_line(f"{name}_bucket", int(bucket_value), labels=base_labels | {"le": le_label}))
    lines.append(_prom_line(f"{name}_sum", float(hist["sum"]), labels=base_labels or None))
    lines.append(_prom_line(f"{name}_count", int(hist["count"]), labels=base_labels or None))


def prometheus_metrics_text() -> str:
    snapshot = _METRICS.prometheus_snapshot()
    lines: list[str] = []

    lines.append("# HELP http_request_duration_ms HTTP request duration in milliseconds.")
    lines.append("# TYPE http_request_duration_ms histogram")
    for hist in snapshot["http_request_duration_ms"]:
        _prom_histogram(lines, "http_request_duration_ms", hist, {"method": hist["method"], "route": hist["route"]})

    lines.append("# HELP order_transitions_total Committed order status transitions.")
    lines.append("# TYPE order_transitions_total counter")
    for (source, target), total in snapshot["order_transitions_total"].items():
        lines.append(_prom_line("order_transitions_total", int(total), labels={"from": source, "to": target}))

    lines.append("# HELP order_conflicts_total Transitions lost to a concurrent writer.")
    lines.append("# TYPE order_conflicts_total counter")
    lines.append(_prom_line("order_conflicts_total", int(snapshot["order_conflicts_total"])))

    lines.append("# HELP erp_sync_total ERP status pushes by outcome.")
    lines.append("# TYPE erp_sync_total counter")
    for outcome, total in snapshot["erp_sync_total"].items():
        lines.append(_prom_line("erp_sync_total", int(total), labels={"outcome": outcome}))

    lines.append("# HELP erp_call_duration_ms ERP status push duration in milliseconds, retries included.")
    lines.append("# TYPE erp_call_duration_ms histogram")
    _prom_histogram(lines, "erp_call_duration_ms", snapshot["erp_call_duration_ms"])

    lines.append("# HELP erp_retry_backoff_seconds ERP retry pause in seconds.")
    lines.append("# TYPE erp_retry_backoff_seconds histogram")
    _prom_histogram(lines, "erp_retry_backoff_seconds", snapshot["erp_retry_backoff_seconds"])

    lines.append("# HELP erp_token_refresh_total ERP token refresh attempts by result.")
    lines.append("# TYPE erp_token_refresh_total counter")
    for result, total in snapshot["erp_token_refresh_total"].items():
        lines.append(_prom_line("erp_token_refresh_total", int(total), labels={"result": result}))

    return "\n".join(lines) + "\n"
