"""In-process Prometheus metrics for turn orchestration.

Counters and histograms live in module-level dicts guarded by a lock and are
rendered in the Prometheus text exposition format at ``/metrics``.
"""

import threading
from collections import defaultdict

from fastapi import APIRouter, Response

_lock = threading.Lock()

LabelKey = tuple[tuple[str, str], ...]

DURATION_BUCKETS = [0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]

_counters: dict[str, dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
_histogram_sums: dict[str, dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
_histogram_counts: dict[str, dict[LabelKey, int]] = defaultdict(lambda: defaultdict(int))
_histogram_buckets: dict[str, dict[LabelKey, list[int]]] = defaultdict(
    lambda: defaultdict(lambda: [0] * len(DURATION_BUCKETS)),
)


def _label_key(labels: dict[str, str]) -> LabelKey:
    return tuple(sorted(labels.items()))


def inc_counter(name: str, labels: dict[str, str], value: float = 1.0) -> None:
    with _lock:
        _counters[name][_label_key(labels)] += value


def observe_histogram(name: str, labels: dict[str, str], value: float) -> None:
    key = _label_key(labels)
    with _lock:
        _histogram_sums[name][key] += value
        _histogram_counts[name][key] += 1
        buckets = _histogram_buckets[name][key]
        for index, bound in enumerate(DURATION_BUCKETS):
            if value <= bound:
                buckets[index] += 1


def counter_value(name: str, labels: dict[str, str]) -> float:
    with _lock:
        return _counters.get(name, {}).get(_label_key(labels), 0.0)


def reset_metrics() -> None:
    with _lock:
        _counters.clear()
        _histogram_sums.clear()
        _histogram_counts.clear()
        _histogram_buckets.clear()


def _format_labels(label_pairs: LabelKey, **extra: str) -> str:
    pairs = dict(label_pairs)
    pairs.update(extra)
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in sorted(pairs.items())) + "}"


def _render_histogram(name: str, label_pairs: LabelKey) -> list[str]:
    lines: list[str] = []
    buckets = _histogram_buckets[name][label_pairs]
    for index, bound in enumerate(DURATION_BUCKETS):
        lines.append(f"{name}_bucket{_format_labels(label_pairs, le=str(bound))} {buckets[index]}")
    count = _histogram_counts[name][label_pairs]
    lines.append(f"{name}_bucket{_format_labels(label_pairs, le='+Inf')} {count}")
    lines.append(f"{name}_sum{_format_labels(label_pairs)} {_histogram_sums[name][label_pairs]}")
    lines.append(f"{name}_count{_format_labels(label_pairs)} {count}")
    return lines


def render_metrics() -> str:
    lines: list[str] = []
    with _lock:
        for name, label_map in sorted(_counters.items()):
            lines.append(f"# TYPE {name} counter")
            for label_pairs, value in sorted(label_map.items()):
                lines.append(f"{name}{_format_labels(label_pairs)} {value}")
        for name in sorted(_histogram_sums):
            lines.append(f"# TYPE {name} histogram")
            for label_pairs in sorted(_histogram_sums[name]):
                lines.extend(_render_histogram(name, label_pairs))
    lines.append("")
    return "\n".join(lines)


def record_turn(
    model: str,
    org_id: str | None,
    tools_used: bool,
    outcome: str,
    latency_s: float,
    tokens_in: int = 0,
    tokens_out: int = 0,
) -> None:
    """Record all metrics for a finished turn."""
    inc_counter("chatcore_turns_total", {"model": model, "outcome": outcome})
    if outcome != "completed":
        return
    observe_histogram(
        "chatcore_turn_duration_seconds",
        {"model": model, "org": org_id or "none", "tools_used": str(tools_used).lower()},
        latency_s,
    )
    if tokens_in > 0:
        inc_counter(
            "chatcore_tokens_total", {"model": model, "direction": "input"}, float(tokens_in)
        )
    if tokens_out > 0:
        inc_counter(
            "chatcore_tokens_total", {"model": model, "direction": "output"}, float(tokens_out)
        )


def record_tool_execution(tool: str, org_id: str | None, ok: bool, latency_s: float) -> None:
    observe_histogram(
        "chatcore_tool_execution_duration_seconds",
        {"tool": tool, "org": org_id or "none", "ok": str(ok).lower()},
        latency_s,
    )


def record_moderation(source: str, action: str) -> None:
    inc_counter("chatcore_moderation_decisions_total", {"source": source, "action": action})


def record_webhook_delivery(status: str) -> None:
    inc_counter("chatcore_webhook_deliveries_total", {"status": status})


def record_event_emitted(event_type: str, deliveries: int) -> None:
    inc_counter("chatcore_events_emitted_total", {"type": event_type})
    if deliveries > 0:
        inc_counter(
            "chatcore_webhook_deliveries_created_total", {"type": event_type}, float(deliveries)
        )


metrics_router = APIRouter()


@metrics_router.get("/metrics")
def prometheus_metrics() -> Response:
    return Response(content=render_metrics(), media_type="text/plain; charset=utf-8")
