"""
Workflow metrics — in-process counters for the workflow engine.

Counters are dotted names under ``workflow.``:

    workflow.step.{started,claimed,advanced,completed,failed,skipped}.<ACTION_TYPE|total>
    workflow.transition.<ACTION_TYPE>.{total,<FROM>_to_<TO>}
    workflow.handler.<operation>.<ACTION_TYPE>.{count,duration_sum}
    workflow.handler.error.{<ACTION_TYPE>.<operation>,<code>,total}
    workflow.instance.{created,completed}.{template_<id>,total}
    workflow.cycle_time.<ACTION_TYPE>.{<bucket>,count,sum}
    workflow.notification.{sent,failed}.<ACTION_TYPE|total>

All metrics are in-memory and per process (no external dependency);
``GET /api/v1/workflows/metrics`` reports them.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

_counters: defaultdict[str, float] = defaultdict(float)
_lock = threading.Lock()

_CYCLE_BUCKETS = (
    (1_000, "lt_1s"),
    (5_000, "lt_5s"),
    (10_000, "lt_10s"),
    (30_000, "lt_30s"),
    (60_000, "lt_1m"),
    (300_000, "lt_5m"),
    (600_000, "lt_10m"),
    (1_800_000, "lt_30m"),
    (3_600_000, "lt_1h"),
)


def increment(name: str, value: float = 1) -> None:
    with _lock:
        _counters[name] += value


def get_all_metrics() -> dict[str, float]:
    with _lock:
        return dict(_counters)


def reset_metrics() -> None:
    """Clear all counters (for testing)."""
    with _lock:
        _counters.clear()


def _bump(prefix: str, action_type: str) -> None:
    increment(f"{prefix}.{action_type}")
    increment(f"{prefix}.total")


def cycle_time_bucket(duration_ms: float) -> str:
    for limit, label in _CYCLE_BUCKETS:
        if duration_ms < limit:
            return label
    return "gte_1h"


def _elapsed_ms(start: datetime | None, end: datetime | None) -> float | None:
    if start is None or end is None:
        return None
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    return (end - start).total_seconds() * 1000


# ═══════════════════════════════════════════════════════════════════════════
#  Recorders
# ═══════════════════════════════════════════════════════════════════════════


class WorkflowMetrics:
    """Named recorders called from the runtime, resolver and orchestrator."""

    @staticmethod
    def record_transition(action_type: str, from_state: str, to_state: str) -> None:
        increment(f"workflow.transition.{action_type}.total")
        increment(f"workflow.transition.{action_type}.{from_state}_to_{to_state}")
        if to_state == "COMPLETED":
            _bump("workflow.step.completed", action_type)
        elif to_state == "FAILED":
            _bump("workflow.step.failed", action_type)
        elif to_state == "SKIPPED":
            _bump("workflow.step.skipped", action_type)

    @staticmethod
    def record_step_start(action_type: str) -> None:
        _bump("workflow.step.started", action_type)

    @staticmethod
    def record_step_claim(action_type: str) -> None:
        _bump("workflow.step.claimed", action_type)

    @staticmethod
    def record_step_advanced(action_type: str) -> None:
        _bump("workflow.step.advanced", action_type)

    @staticmethod
    def record_cycle_time(action_type: str, started_at, completed_at) -> None:
        duration_ms = _elapsed_ms(started_at, completed_at)
        if duration_ms is None:
            return
        increment(f"workflow.cycle_time.{action_type}.{cycle_time_bucket(duration_ms)}")
        increment(f"workflow.cycle_time.{action_type}.count")
        increment(f"workflow.cycle_time.{action_type}.sum", duration_ms)

    @staticmethod
    def record_handler_duration(action_type: str, operation: str, duration_ms: float) -> None:
        increment(f"workflow.handler.{operation}.{action_type}.count")
        increment(f"workflow.handler.{operation}.{action_type}.duration_sum", duration_ms)

    @staticmethod
    def record_handler_error(action_type: str, operation: str, error_code: str) -> None:
        increment(f"workflow.handler.error.{action_type}.{operation}")
        increment(f"workflow.handler.error.{error_code}")
        increment("workflow.handler.error.total")

    @staticmethod
    def record_instance_created(template_id) -> None:
        increment(f"workflow.instance.created.template_{template_id}")
        increment("workflow.instance.created.total")

    @staticmethod
    def record_instance_completed(template_id, created_at, completed_at) -> None:
        increment(f"workflow.instance.completed.template_{template_id}")
        increment("workflow.instance.completed.total")
        duration_ms = _elapsed_ms(created_at, completed_at)
        if duration_ms is not None:
            increment(f"workflow.instance.duration.template_{template_id}", duration_ms)

    @staticmethod
    def record_notification(action_type: str, success: bool) -> None:
        _bump("workflow.notification.sent" if success else "workflow.notification.failed", action_type)


@contextmanager
def handler_span(action_type: str, operation: str, **attributes):
    """
    Time one handler call.  Errors carrying a ``code`` (handler errors) are
    counted under ``workflow.handler.error``; the exception is re-raised.
    """
    start = time.perf_counter()
    try:
        yield
    except Exception as exc:
        duration_ms = (time.perf_counter() - start) * 1000
        WorkflowMetrics.record_handler_error(action_type, operation, getattr(exc, "code", type(exc).__name__))
        logger.debug("Workflow handler %s.%s failed (%.1fms)", action_type, operation, duration_ms,
                     extra={**attributes, "duration_ms": duration_ms})
        raise
    duration_ms = (time.perf_counter() - start) * 1000
    WorkflowMetrics.record_handler_duration(action_type, operation, duration_ms)
    logger.debug("Workflow handler %s.%s (%.1fms)", action_type, operation, duration_ms,
                 extra={**attributes, "duration_ms": duration_ms})


# ═══════════════════════════════════════════════════════════════════════════
#  Report
# ═══════════════════════════════════════════════════════════════════════════


def summarize() -> dict:
    """Counters grouped by category plus headline totals."""
    raw = {k: v for k, v in get_all_metrics().items() if k.startswith("workflow.")}
    steps: dict[str, dict] = {k: {} for k in ("started", "claimed", "advanced", "completed", "failed", "skipped")}
    transitions: dict[str, float] = {}
    handlers: dict[str, dict] = {"durations": {}, "errors": {}}
    instances: dict[str, dict] = {"created": {}, "completed": {}}
    cycle_time: dict[str, float] = {}
    notifications: dict[str, dict] = {"sent": {}, "failed": {}}

    for key, value in raw.items():
        parts = key.split(".")
        category = parts[1] if len(parts) > 1 else ""
        if category == "step" and len(parts) > 2 and parts[2] in steps:
            steps[parts[2]][parts[3] if len(parts) > 3 else "total"] = value
        elif category == "transition":
            transitions[key] = value
        elif category == "handler":
            handlers["errors" if parts[2] == "error" else "durations"][key] = value
        elif category == "instance" and parts[2] in instances:
            instances[parts[2]][key] = value
        elif category == "cycle_time":
            cycle_time[key] = value
        elif category == "notification" and parts[2] in notifications:
            notifications[parts[2]][key] = value

    completed = steps["completed"].get("total", 0)
    failed = steps["failed"].get("total", 0)
    success_rate = completed / (completed + failed) * 100 if completed else 0

    return {
        "summary": {
            "total_steps_started": steps["started"].get("total", 0),
            "total_steps_completed": completed,
            "total_steps_failed": failed,
            "total_steps_skipped": steps["skipped"].get("total", 0),
            "success_rate": round(success_rate, 2),
            "total_instances_created": instances["created"].get("workflow.instance.created.total", 0),
            "total_notifications_sent": notifications["sent"].get("workflow.notification.sent.total", 0),
            "total_notifications_failed": notifications["failed"].get("workflow.notification.failed.total", 0),
        },
        "metrics": {
            "steps": steps,
            "transitions": transitions,
            "handlers": handlers,
            "instances": instances,
            "cycle_time": cycle_time,
            "notifications": notifications,
            "raw": raw,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
