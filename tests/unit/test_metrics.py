from chatcore.metrics import (
    counter_value,
    inc_counter,
    observe_histogram,
    record_turn,
    render_metrics,
)


def test_counters_render_with_sorted_labels() -> None:
    inc_counter("chatcore_test_total", {"b": "2", "a": "1"})
    inc_counter("chatcore_test_total", {"a": "1", "b": "2"}, 2.0)
    assert counter_value("chatcore_test_total", {"a": "1", "b": "2"}) == 3.0

    rendered = render_metrics()
    assert "# TYPE chatcore_test_total counter" in rendered
    assert 'chatcore_test_total{a="1",b="2"} 3.0' in rendered


def test_histogram_buckets_are_cumulative() -> None:
    observe_histogram("chatcore_test_seconds", {"k": "v"}, 0.07)
    observe_histogram("chatcore_test_seconds", {"k": "v"}, 3.0)

    rendered = render_metrics()
    assert 'chatcore_test_seconds_bucket{k="v",le="0.05"} 0' in rendered
    assert 'chatcore_test_seconds_bucket{k="v",le="0.1"} 1' in rendered
    assert 'chatcore_test_seconds_bucket{k="v",le="2.5"} 1' in rendered
    assert 'chatcore_test_seconds_bucket{k="v",le="5.0"} 2' in rendered
    assert 'chatcore_test_seconds_bucket{k="v",le="+Inf"} 2' in rendered
    assert 'chatcore_test_seconds_count{k="v"} 2' in rendered


def test_failed_turns_only_count_outcome() -> None:
    record_turn("stub:echo", "org-1", False, "failed", 0.2, tokens_in=10)
    assert counter_value("chatcore_turns_total", {"model": "stub:echo", "outcome": "failed"}) == 1
    assert "chatcore_turn_duration_seconds" not in render_metrics()
    input_labels = {"model": "stub:echo", "direction": "input"}
    assert counter_value("chatcore_tokens_total", input_labels) == 0


def test_completed_turn_records_tokens() -> None:
    record_turn("stub:echo", None, True, "completed", 0.2, tokens_in=10, tokens_out=4)
    output_labels = {"model": "stub:echo", "direction": "output"}
    assert counter_value("chatcore_tokens_total", output_labels) == 4
    assert (
        'chatcore_turn_duration_seconds_count{model="stub:echo",org="none",tools_used="true"} 1'
        in render_metrics()
    )
