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

from race_engine.clock import to_iso, utc_now


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_SWEEP_DURATION_BUCKETS_MS = (1.0, 5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 5000.0)

_LOG_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")


def _normalize_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))


@contextlib.contextmanager
def bind_request_id(request_id: str | None):
    token = _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))
    try:
        yield _LOG_REQUEST_ID_CTX.get()
    finally:
        _LOG_REQUEST_ID_CTX.reset(token)


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

        self._http_request_total: Dict[tuple[str, str, str], int] = {}
        self._http_request_duration_ms: Dict[tuple[str, str], dict] = {}

        self._domain_event_emitted_total: Dict[str, int] = {}
        self._arbitration_outcome_total: Dict[tuple[str, str], int] = {}
        self._race_transition_total: Dict[tuple[str, str], int] = {}
        self._storage_conflict_total: Dict[str, int] = {}
        self._sweeper_action_total: Dict[tuple[str, str], int] = {}
        self._sweeper_run_duration_ms = self._new_histogram_state(_SWEEP_DURATION_BUCKETS_MS)
        self._sweeper_last_run_timestamp = 0.0

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

    @staticmethod
    def _histogram_copy(state: dict) -> dict:
        return {
            "count": int(state["count"]),
            "sum": float(state["sum"]),
            "buckets": {label: int(count) for label, count in state["buckets"].items()},
        }

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = str(route or "unknown").strip() or "unknown"
        status_key = str(int(status_code))

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

            self._http_request_total[(method_key, route_key, status_key)] = (
                int(self._http_request_total.get((method_key, route_key, status_key), 0)) + 1
            )
            hist_key = (method_key, route_key)
            histogram = self._http_request_duration_ms.setdefault(
                hist_key,
                self._new_histogram_state(_HTTP_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _HTTP_DURATION_BUCKETS_MS)

    def observe_domain_event_emitted(self, event_type: str) -> None:
        key = str(event_type or "unknown").strip() or "unknown"
        with self._lock:
            self._domain_event_emitted_total[key] = int(self._domain_event_emitted_total.get(key, 0)) + 1

    def observe_arbitration_outcome(self, rfq_type: str, outcome: str) -> None:
        key = (str(rfq_type or "unknown"), str(outcome or "unknown"))
        with self._lock:
            self._arbitration_outcome_total[key] = int(self._arbitration_outcome_total.get(key, 0)) + 1

    def observe_race_transition(self, fact: str, to_status: str) -> None:
        key = (str(fact or "unknown"), str(to_status or "unknown"))
        with self._lock:
            self._race_transition_total[key] = int(self._race_transition_total.get(key, 0)) + 1

    def observe_storage_conflict(self, operation: str) -> None:
        key = str(operation or "unknown").strip() or "unknown"
        with self._lock:
            self._storage_conflict_total[key] = int(self._storage_conflict_total.get(key, 0)) + 1

    def observe_sweeper_run(self, counts: Dict[str, int], duration_ms: float) -> None:
        with self._lock:
            for action_result, value in counts.items():
                action, _, result = str(action_result).partition(":")
                key = (action, result or "ok")
                self._sweeper_action_total[key] = int(self._sweeper_action_total.get(key, 0)) + int(value or 0)
            self._observe_histogram(self._sweeper_run_duration_ms, duration_ms, _SWEEP_DURATION_BUCKETS_MS)
            self._sweeper_last_run_timestamp = time.time()

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
            outcomes: Dict[str, int] = {}
            for (_rfq_type, outcome), value in self._arbitration_outcome_total.items():
                outcomes[outcome] = outcomes.get(outcome, 0) + int(value)
            return {
                "requests_total": int(self._requests_total),
                "errors_total": int(self._errors_total),
                "by_route": route_stats[:40],
                "domain_events": {
                    "emitted_total": int(sum(self._domain_event_emitted_total.values())),
                    "by_type": dict(sorted(self._domain_event_emitted_total.items())),
                },
                "arbitration": {
                    "total": int(sum(outcomes.values())),
                    "by_outcome": dict(sorted(outcomes.items())),
                },
                "storage_conflicts": dict(sorted(self._storage_conflict_total.items())),
                "sweeper": {
                    "runs": int(self._sweeper_run_duration_ms["count"]),
                    "last_run_timestamp": float(self._sweeper_last_run_timestamp),
                    "actions": {
                        f"{action}:{result}": int(value)
                        for (action, result), value in sorted(self._sweeper_action_total.items())
                    },
                },
            }

    def prometheus_snapshot(self) -> dict:
        with self._lock:
            http_totals = [
                {
                    "method": method,
                    "route": route,
                    "status": status,
                    "value": int(value),
                }
                for (method, route, status), value in sorted(self._http_request_total.items())
            ]
            http_histograms = []
            for (method, route), histogram in sorted(self._http_request_duration_ms.items()):
                http_histograms.append({"method": method, "route": route} | self._histogram_copy(histogram))
            return {
                "http_request_total": http_totals,
                "http_request_duration_ms": http_histograms,
                "domain_event_emitted_total": dict(sorted(self._domain_event_emitted_total.items())),
                "race_arbitration_outcome_total": sorted(self._arbitration_outcome_total.items()),
                "race_transition_total": sorted(self._race_transition_total.items()),
                "race_storage_conflict_total": dict(sorted(self._storage_conflict_total.items())),
                "race_sweeper_action_total": sorted(self._sweeper_action_total.items()),
                "race_sweeper_run_duration_ms": self._histogram_copy(self._sweeper_run_duration_ms),
                "race_sweeper_last_run_timestamp": float(self._sweeper_last_run_timestamp),
            }

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._errors_total = 0
            self._by_route.clear()
            self._http_request_total.clear()
            self._http_request_duration_ms.clear()
            self._domain_event_emitted_total.clear()
            self._arbitration_outcome_total.clear()
            self._race_transition_total.clear()
            self._storage_conflict_total.clear()
            self._sweeper_action_total.clear()
            self._sweeper_run_duration_ms = self._new_histogram_state(_SWEEP_DURATION_BUCKETS_MS)
            self._sweeper_last_run_timestamp = 0.0


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


def observe_domain_event_emitted(event_type: str) -> None:
    _METRICS.observe_domain_event_emitted(event_type)


def observe_arbitration_outcome(rfq_type: str, outcome: str) -> None:
    _METRICS.observe_arbitration_outcome(rfq_type, outcome)


def observe_race_transition(fact: str, to_status: str) -> None:
    _METRICS.observe_race_transition(fact, to_status)


def observe_storage_conflict(operation: str) -> None:
    _METRICS.observe_storage_conflict(operation)


def observe_sweeper_run(counts: Dict[str, int], duration_ms: float) -> None:
    _METRICS.observe_sweeper_run(counts, duration_ms)


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


def prometheus_metrics_text(*, race_state: dict | None = None) -> str:
    snapshot = _METRICS.prometheus_snapshot()
    lines: list[str] = []

    lines.append("# HELP http_request_total Total HTTP requests by method, route and status.")
    lines.append("# TYPE http_request_total counter")
    for sample in snapshot["http_request_total"]:
        lines.append(
            _prom_line(
                "http_request_total",
                int(sample["value"]),
                labels={
                    "method": sample["method"],
                    "route": sample["route"],
                    "status": sample["status"],
                },
            )
        )

    lines.append("# HELP http_request_duration_ms HTTP request duration in milliseconds.")
    lines.append("# TYPE http_request_duration_ms histogram")
    for hist in snapshot["http_request_duration_ms"]:
        _prom_histogram(lines, "http_request_duration_ms", hist, {"method": hist["method"], "route": hist["route"]})

    lines.append("# HELP domain_event_emitted_total Total domain events emitted by type.")
    lines.append("# TYPE domain_event_emitted_total counter")
    for event_type, value in snapshot["domain_event_emitted_total"].items():
        lines.append(_prom_line("domain_event_emitted_total", int(value), labels={"event_type": event_type}))

    lines.append("# HELP race_arbitration_outcome_total Supplier responses arbitrated by RFQ type and outcome.")
    lines.append("# TYPE race_arbitration_outcome_total counter")
    for (rfq_type, outcome), value in snapshot["race_arbitration_outcome_total"]:
        lines.append(
            _prom_line("race_arbitration_outcome_total", int(value), labels={"rfq_type": rfq_type, "outcome": outcome})
        )

    lines.append("# HELP race_transition_total Persisted race transitions by fact and target status.")
    lines.append("# TYPE race_transition_total counter")
    for (fact, to_status), value in snapshot["race_transition_total"]:
        lines.append(_prom_line("race_transition_total", int(value), labels={"fact": fact, "to_status": to_status}))

    lines.append("# HELP race_storage_conflict_total Conditional writes lost against a concurrent writer.")
    lines.append("# TYPE race_storage_conflict_total counter")
    for operation, value in snapshot["race_storage_conflict_total"].items():
        lines.append(_prom_line("race_storage_conflict_total", int(value), labels={"operation": operation}))

    lines.append("# HELP race_sweeper_action_total Sweeper actions by kind and result.")
    lines.append("# TYPE race_sweeper_action_total counter")
    for (action, result), value in snapshot["race_sweeper_action_total"]:
        lines.append(_prom_line("race_sweeper_action_total", int(value), labels={"action": action, "result": result}))

    lines.append("# HELP race_sweeper_run_duration_ms Sweeper pass duration in milliseconds.")
    lines.append("# TYPE race_sweeper_run_duration_ms histogram")
    _prom_histogram(lines, "race_sweeper_run_duration_ms", snapshot["race_sweeper_run_duration_ms"])

    lines.append("# HELP race_sweeper_last_run_timestamp Unix timestamp of the last sweeper pass.")
    lines.append("# TYPE race_sweeper_last_run_timestamp gauge")
    lines.append(_prom_line("race_sweeper_last_run_timestamp", float(snapshot["race_sweeper_last_run_timestamp"])))

    by_status = ((race_state or {}).get("by_status") or {}) if isinstance(race_state, dict) else {}
    lines.append("# HELP race_rfqs RFQs currently stored by status.")
    lines.append("# TYPE race_rfqs gauge")
    for status, value in sorted(by_status.items()):
        lines.append(_prom_line("race_rfqs", int(value or 0), labels={"status": status}))

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)


def race_health(db, *, now=None) -> dict:
    rows = db.execute(
        """
        SELECT status, COUNT(*) AS total
        FROM rfqs
        GROUP BY status
        """
    ).fetchall()
    by_status = {str(row["status"]): int(row["total"] or 0) for row in rows}
    expired_row = db.execute(
        """
        SELECT COUNT(*) AS total
        FROM rfqs
        WHERE status = 'priority_hold' AND priority_hold_expires_at <= ?
        """,
        (to_iso(now or utc_now()),),
    ).fetchone()
    overdue_holds = int((dict(expired_row) if expired_row else {}).get("total") or 0)
    return {
        "status": "degraded" if overdue_holds else "ok",
        "by_status": by_status,
        "overdue_holds": overdue_holds,
    }
