import logging

import pytest

from answer_engine.obs.tracing import (
    CostModel,
    Timer,
    TraceInput,
    TraceOutput,
    TraceStore,
    hash_prompt,
    record_trace_safely,
    start_trace,
)


def test_cost_model_prices_cache_reads_and_writes() -> None:
    model = CostModel()

    plain = model.estimate_cost("claude-sonnet-4-20250514", 1_000_000, 1_000_000)
    cached = model.estimate_cost(
        "claude-sonnet-4-20250514",
        1_000_000,
        0,
        cache_creation_tokens=200_000,
        cache_read_tokens=500_000,
    )

    assert plain == pytest.approx(18.0)
    assert cached == pytest.approx(0.3 * 3.0 + 0.2 * 3.0 * 1.25 + 0.5 * 3.0 * 0.1)


def test_cost_model_rates_by_model_substring() -> None:
    model = CostModel()

    assert model.rates_for("claude-3-opus-20240229") == (15.0, 75.0)
    assert model.rates_for("claude-3-haiku-20240307") == (0.25, 1.25)
    assert model.rates_for("something-else") == (3.0, 15.0)


def test_trace_store_records_and_summarizes() -> None:
    store = TraceStore()
    context = start_trace("batch_1", "rfp_batch")

    record = store.record(
        context,
        TraceInput(model="claude-sonnet-4", system_prompt="sys", skills=[{"id": "sso", "title": "SSO"}]),
        TraceOutput(input_tokens=100, output_tokens=50, response="[]", cache_read_tokens=40),
        12.5,
    )
    store.record(
        start_trace("batch_2", "rfp_batch", parent_trace_id=context.trace_id),
        TraceInput(model="claude-sonnet-4"),
        TraceOutput(input_tokens=0, output_tokens=0),
        30.0,
        status="TIMEOUT",
        error_message="timed out",
    )

    assert store.get(context.trace_id) is record
    assert record.prompt_hash == hash_prompt("sys")
    assert record.cache_read_tokens == 40
    assert record.estimated_cost_usd > 0
    assert len(store.list_recent(limit=1)) == 1

    summary = store.summary()
    assert summary["total_requests"] == 2
    assert summary["error_count"] == 1
    assert summary["total_input_tokens"] == 100
    assert summary["total_cache_read_tokens"] == 40
    assert summary["avg_latency_ms"] == pytest.approx(21.25)


def test_trace_store_missing_and_empty() -> None:
    store = TraceStore()

    assert store.summary()["total_requests"] == 0
    with pytest.raises(KeyError):
        store.get("missing")


def test_record_trace_safely_swallows_sink_errors(caplog: pytest.LogCaptureFixture) -> None:
    class _BrokenSink:
        def record(self, *args: object, **kwargs: object) -> None:
            raise RuntimeError("database unavailable")

    context = start_trace("batch_1", "rfp_batch")
    with caplog.at_level(logging.ERROR):
        record_trace_safely(
            _BrokenSink(),
            context,
            TraceInput(model="m"),
            TraceOutput(input_tokens=1, output_tokens=1),
            1.0,
        )

    assert context.trace_id in caplog.text


def test_hash_prompt_is_stable_and_short() -> None:
    assert hash_prompt("abc") == hash_prompt("abc")
    assert hash_prompt("abc") != hash_prompt("abd")
    assert len(hash_prompt("abc")) == 16


def test_timer_measures_elapsed_time() -> None:
    with Timer() as timer:
        sum(range(1000))

    assert timer.elapsed_ms >= 0.0
