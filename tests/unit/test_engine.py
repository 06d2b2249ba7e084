import asyncio
import json

import pytest

from answer_engine.config import BatchConfig, EngineConfig, ModelConfig
from answer_engine.errors import (
    CircuitOpenError,
    ContextOverflow,
    EmptyResponse,
    LLMTimeout,
    MalformedLLMResponse,
    ProviderFailure,
)
from answer_engine.execution.engine import BatchExecutionEngine
from answer_engine.obs.tracing import TraceStore
from answer_engine.prompts.composition import AssembledPrompt
from answer_engine.resilience.circuit_breaker import CircuitBreaker, CircuitState
from answer_engine.types import Batch, Completion, KnowledgeItem, Question, UsageInfo


class _FakeClient:
    def __init__(self, *replies: object, delay: float = 0.0) -> None:
        self.replies = list(replies)
        self.delay = delay
        self.calls: list[dict[str, object]] = []

    async def complete(self, *, model, system, user_message, max_output_tokens) -> Completion:
        self.calls.append(
            {
                "model": model,
                "system": system,
                "user_message": user_message,
                "max_output_tokens": max_output_tokens,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return Completion(
            text=str(reply),
            usage=UsageInfo(input_tokens=100, output_tokens=50, model=model),
        )


def _batch(*indices: int) -> Batch:
    return Batch(
        number=1,
        questions=tuple(Question(index=i, text=f"Question {i}?") for i in indices),
    )


def _skills() -> list[KnowledgeItem]:
    return [KnowledgeItem(id="sec", title="Security", content="MFA is enforced.")]


def _engine(client: _FakeClient, config: EngineConfig | None = None, **kwargs) -> BatchExecutionEngine:
    return BatchExecutionEngine(
        client,
        CircuitBreaker(failure_threshold=3),
        config=config,
        **kwargs,
    )


def test_fenced_json_answer_yields_one_record() -> None:
    client = _FakeClient('```json\n[{"questionIndex":1,"response":"A"}]\n```')
    engine = _engine(client)

    result = asyncio.run(engine.execute_batch(_batch(1), "You answer questions.", _skills()))

    assert len(result.records) == 1
    record = result.records[0]
    assert record.question_index == 1
    assert record.response == "A"
    assert record.confidence == "Medium"
    assert record.tokens_used == 150
    assert record.transparency.system_prompt == "You answer questions."
    assert result.missing_indices == []


def test_context_overflow_is_raised_before_calling_the_llm() -> None:
    client = _FakeClient("[]")
    config = EngineConfig(
        model=ModelConfig(
            input_context_tokens={"quality": 1000, "fast": 1000},
            reserved_buffer_tokens=100,
        )
    )
    big_skill = KnowledgeItem(id="big", title="Big", content="x" * 5000)

    with pytest.raises(ContextOverflow) as excinfo:
        asyncio.run(_engine(client, config).execute_batch(_batch(1), "sys", [big_skill]))

    assert client.calls == []
    assert excinfo.value.limit == 900
    assert excinfo.value.total_tokens == excinfo.value.system_tokens + excinfo.value.user_tokens
    assert excinfo.value.total_tokens > 900


def test_answers_are_joined_by_index_not_position() -> None:
    reply = json.dumps(
        [
            {"questionIndex": 12, "response": "twelve", "confidence": "High"},
            {"questionIndex": 99, "response": "stray"},
            {"questionIndex": 10, "response": "ten"},
            {"questionIndex": 10, "response": "ten again"},
        ]
    )
    engine = _engine(_FakeClient(reply))

    result = asyncio.run(engine.execute_batch(_batch(10, 11, 12), "sys", _skills()))

    by_index = {record.question_index: record for record in result.records}
    assert set(by_index) == {10, 12}
    assert by_index[12].response == "twelve"
    assert by_index[10].response == "ten"
    assert result.missing_indices == [11]
    assert all(record.tokens_used == 50 for record in result.records)


def test_records_share_the_batch_transparency() -> None:
    reply = json.dumps(
        [{"questionIndex": 1, "response": "a"}, {"questionIndex": 2, "response": "b"}]
    )
    assembled = AssembledPrompt(
        prompt="## Role\n\nAnswer.",
        composition_id="rfp_batch",
        block_ids=["role"],
        runtime_block_ids=[],
    )

    result = asyncio.run(_engine(_FakeClient(reply)).execute_batch(_batch(1, 2), assembled, []))

    first, second = result.records
    assert first.transparency is second.transparency
    assert first.transparency.composition_id == "rfp_batch"
    assert first.transparency.block_ids == ("role",)


def test_user_message_lists_questions_and_system_holds_context() -> None:
    client = _FakeClient('[{"questionIndex": 4, "response": "ok"}]')
    batch = Batch(number=2, questions=(Question(index=4, text="Is MFA on?", context="Security"),))

    asyncio.run(
        _engine(client).execute_batch(
            batch, "sys", _skills(), model_speed="fast", file_context="Full questionnaire"
        )
    )

    call = client.calls[0]
    assert call["model"] == "claude-3-5-haiku-20241022"
    assert call["max_output_tokens"] == 16000
    assert "4. Context: Security\n\nQuestion: Is MFA on?" in str(call["user_message"])
    system = str(call["system"])
    assert system.startswith("sys")
    assert "# FILE CONTEXT" in system
    assert "### Skill 1: Security" in system


def test_large_context_is_sent_with_cache_segment() -> None:
    client = _FakeClient('[{"questionIndex": 1, "response": "ok"}]')
    skills = [KnowledgeItem(id="long", title="Long", content="k" * 4 * 3000)]

    result = asyncio.run(_engine(client).execute_batch(_batch(1), "sys", skills))

    system = client.calls[0]["system"]
    assert isinstance(system, list)
    assert system[0].cacheable
    assert result.cached


def test_timeout_raises_and_counts_as_breaker_failure() -> None:
    client = _FakeClient("[]", delay=1.0)
    config = EngineConfig(batch=BatchConfig(timeout_seconds=0.01))
    engine = _engine(client, config)

    with pytest.raises(LLMTimeout) as excinfo:
        asyncio.run(engine.execute_batch(_batch(1), "sys", []))

    assert excinfo.value.retryable
    assert engine.breaker.failures == 1


def test_empty_response_is_distinct_from_transport_failure() -> None:
    with pytest.raises(EmptyResponse):
        asyncio.run(_engine(_FakeClient("   ")).execute_batch(_batch(1), "sys", []))

    with pytest.raises(ProviderFailure) as excinfo:
        asyncio.run(
            _engine(_FakeClient(ConnectionError("reset"))).execute_batch(_batch(1), "sys", [])
        )
    assert not isinstance(excinfo.value, EmptyResponse)
    assert isinstance(excinfo.value.__cause__, ConnectionError)


def test_open_breaker_rejects_without_calling_client() -> None:
    client = _FakeClient(*(RuntimeError("down") for _ in range(3)))
    engine = _engine(client)

    for _ in range(3):
        with pytest.raises(ProviderFailure):
            asyncio.run(engine.execute_batch(_batch(1), "sys", []))
    assert engine.breaker.state == CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        asyncio.run(engine.execute_batch(_batch(1), "sys", []))
    assert len(client.calls) == 3


def test_malformed_response_propagates() -> None:
    engine = _engine(_FakeClient("Sorry, I can't produce JSON today."))

    with pytest.raises(MalformedLLMResponse):
        asyncio.run(engine.execute_batch(_batch(1), "sys", []))


def test_lenient_policy_accepts_missing_response() -> None:
    config = EngineConfig(answers={"strict": False})
    engine = _engine(_FakeClient('[{"questionIndex": 1}]'), config)

    result = asyncio.run(engine.execute_batch(_batch(1), "sys", []))

    assert result.records[0].response == ""


def test_traces_success_and_tolerates_broken_sink() -> None:
    store = TraceStore()
    reply = '[{"questionIndex": 1, "response": "ok"}]'
    engine = _engine(_FakeClient(reply), trace_sink=store)

    asyncio.run(engine.execute_batch(_batch(1), "sys", _skills()))

    (trace,) = store.list_recent()
    assert trace.status == "SUCCESS"
    assert trace.input_tokens == 100
    assert trace.skills == [{"id": "sec", "title": "Security"}]

    class _BrokenSink:
        def record(self, *args: object, **kwargs: object) -> None:
            raise RuntimeError("sink down")

    engine = _engine(_FakeClient(reply), trace_sink=_BrokenSink())
    result = asyncio.run(engine.execute_batch(_batch(1), "sys", []))
    assert result.records[0].response == "ok"


def test_failed_call_is_traced_with_status() -> None:
    store = TraceStore()
    config = EngineConfig(batch=BatchConfig(timeout_seconds=0.01))
    engine = _engine(_FakeClient("[]", delay=1.0), config, trace_sink=store)

    with pytest.raises(LLMTimeout):
        asyncio.run(engine.execute_batch(_batch(1), "sys", []))

    (trace,) = store.list_recent()
    assert trace.status == "TIMEOUT"
    assert "timed out" in (trace.error_message or "")
