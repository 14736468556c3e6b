"""Tests for ingestion batch reconciliation."""

import asyncio

import pytest

from traceval.ingestion import (
    IngestionAggregator,
    IngestionError,
    calculate_latency_ms,
    extract_tokens,
)
from traceval.models import IngestionEvent, ObservationType
from traceval.store import InMemoryStore, StoreError


def _events(raw):
    return IngestionAggregator.parse_batch({"batch": raw})


def trace_event(trace_id="trace-1", **body):
    return {"id": trace_id, "type": "trace-create", "timestamp": "2025-01-01T10:00:00Z", "body": body}


def generation_event(event_id, trace_id="trace-1", **body):
    body.setdefault("traceId", trace_id)
    return {"id": event_id, "type": "generation-create", "timestamp": "2025-01-01T10:00:01Z", "body": body}


def span_event(event_id, trace_id="trace-1", **body):
    body.setdefault("traceId", trace_id)
    return {"id": event_id, "type": "span-create", "timestamp": "2025-01-01T10:00:01Z", "body": body}


FULL_BATCH = [
    trace_event(name="chat", input="hi", output="hello", tags=["prod"]),
    generation_event(
        "gen-1",
        model="gpt-4o-mini",
        usage={"promptTokens": 12, "completionTokens": 30},
        startTime="2025-01-01T10:00:01Z",
        endTime="2025-01-01T10:00:02.5Z",
    ),
    span_event("span-1", startTime="2025-01-01T10:00:00Z", endTime="2025-01-01T10:00:00.5Z"),
]


@pytest.mark.asyncio
async def test_batch_creates_trace_with_observations(store):
    aggregator = IngestionAggregator(store)

    response = await aggregator.ingest(_events(FULL_BATCH), "default")

    assert [(a.id, a.status) for a in response.successes] == [("trace-1", 201), ("gen-1", 201), ("span-1", 201)]
    trace = await store.get_trace("trace-1")
    assert trace.name == "chat"
    assert trace.input == "hi"
    assert trace.output == "hello"
    assert trace.tags == ["langfuse", "prod"]
    assert [o.id for o in trace.observations] == ["gen-1", "span-1"]
    assert trace.observations[0].type == ObservationType.LLM
    assert trace.observations[1].type == ObservationType.SPAN
    assert trace.total_tokens == 42
    assert trace.latency_ms == 2000
    assert trace.timestamp.isoformat() == "2025-01-01T10:00:00+00:00"


@pytest.mark.asyncio
async def test_replaying_a_batch_is_idempotent(store):
    aggregator = IngestionAggregator(store)
    await aggregator.ingest(_events(FULL_BATCH), "default")
    first = await store.get_trace("trace-1")

    await aggregator.ingest(_events(FULL_BATCH), "default")
    second = await store.get_trace("trace-1")

    assert [o.id for o in second.observations] == [o.id for o in first.observations]
    assert second.total_tokens == first.total_tokens
    assert second.latency_ms == first.latency_ms
    assert second.tags == first.tags


@pytest.mark.asyncio
async def test_later_batches_union_observations(store):
    aggregator = IngestionAggregator(store)
    await aggregator.ingest(_events([generation_event("gen-1", usage={"totalTokens": 10})]), "default")
    await aggregator.ingest(_events([generation_event("gen-2", usage={"totalTokens": 5}),
                                     generation_event("gen-1", usage={"totalTokens": 10})]), "default")

    trace = await store.get_trace("trace-1")
    assert [o.id for o in trace.observations] == ["gen-1", "gen-2"]
    assert trace.total_tokens == 15


@pytest.mark.asyncio
async def test_concurrent_deliveries_for_one_trace_do_not_lose_observations(store):
    aggregator = IngestionAggregator(store)
    batches = [_events([generation_event(f"gen-{i}")]) for i in range(10)]

    await asyncio.gather(*(aggregator.ingest(batch, "default") for batch in batches))

    trace = await store.get_trace("trace-1")
    assert sorted(o.id for o in trace.observations) == sorted(f"gen-{i}" for i in range(10))


@pytest.mark.asyncio
async def test_duplicate_observation_in_one_batch_kept_once(store):
    aggregator = IngestionAggregator(store)
    await aggregator.ingest(_events([generation_event("gen-1", name="first"),
                                     generation_event("gen-1", name="second")]), "default")

    trace = await store.get_trace("trace-1")
    assert len(trace.observations) == 1
    assert trace.observations[0].name == "first"


@pytest.mark.asyncio
async def test_input_output_fall_back_to_observations(store):
    aggregator = IngestionAggregator(store)
    await aggregator.ingest(_events([
        span_event("span-1", input={"query": "hi"}, output="retrieved"),
        generation_event("gen-1", input="prompt", output={"text": "final answer"}),
    ]), "default")

    trace = await store.get_trace("trace-1")
    assert trace.input == '{"query": "hi"}'
    assert trace.output == '{"text": "final answer"}'
    assert trace.name == "Trace"
    assert trace.tags == ["langfuse"]


@pytest.mark.asyncio
async def test_trace_update_only_changes_supplied_fields(store):
    aggregator = IngestionAggregator(store)
    await aggregator.ingest(_events(FULL_BATCH), "default")
    await aggregator.ingest(_events([
        {"id": "trace-1", "type": "trace-update", "body": {"output": "goodbye", "tags": ["prod", "v2"]}}
    ]), "default")

    trace = await store.get_trace("trace-1")
    assert trace.name == "chat"
    assert trace.input == "hi"
    assert trace.output == "goodbye"
    assert trace.tags == ["langfuse", "prod", "v2"]
    assert len(trace.observations) == 2


@pytest.mark.asyncio
async def test_orphan_event_uses_its_own_id_by_default(store):
    aggregator = IngestionAggregator(store, reject_orphans=False)
    orphan = {"id": "gen-orphan", "type": "generation-create", "body": {"model": "m"}}

    response = await aggregator.ingest(_events([orphan]), "default")

    assert response.successes[0].status == 201
    assert await store.get_trace("gen-orphan") is not None


@pytest.mark.asyncio
async def test_orphan_event_rejected_when_configured(store):
    aggregator = IngestionAggregator(store, reject_orphans=True)
    orphan = {"id": "gen-orphan", "type": "generation-create", "body": {"model": "m"}}

    response = await aggregator.ingest(_events([orphan, trace_event()]), "default")

    assert [(a.id, a.status) for a in response.successes] == [("gen-orphan", 400), ("trace-1", 201)]
    assert await store.get_trace("gen-orphan") is None
    assert await store.get_trace("trace-1") is not None


@pytest.mark.parametrize("payload", [
    None,
    [],
    {"events": []},
    {"batch": "nope"},
    {"batch": [{"type": "trace-create"}]},
    {"batch": [{"id": "x"}]},
])
def test_malformed_payloads_are_rejected(payload):
    with pytest.raises(IngestionError):
        IngestionAggregator.parse_batch(payload)


def test_null_body_becomes_empty():
    event = IngestionEvent.model_validate({"id": "e1", "type": "span-create", "body": None})
    assert event.body == {}


@pytest.mark.parametrize("usage,expected", [
    ({"promptTokens": 12, "completionTokens": 30}, (12, 30, 42)),
    ({"input": 5, "output": 7, "total": 20}, (5, 7, 20)),
    ({"totalTokens": 9}, (0, 0, 9)),
])
def test_extract_tokens(usage, expected):
    tokens = extract_tokens(usage)
    assert (tokens.prompt, tokens.completion, tokens.total) == expected


@pytest.mark.parametrize("usage", [None, {}, {"promptTokens": 0}, "lots"])
def test_extract_tokens_absent(usage):
    assert extract_tokens(usage) is None


def test_latency_requires_ordered_valid_timestamps():
    assert calculate_latency_ms("2025-01-01T10:00:00Z", "2025-01-01T10:00:01.25Z") == 1250
    assert calculate_latency_ms("2025-01-01T10:00:01Z", "2025-01-01T10:00:00Z") is None
    assert calculate_latency_ms(None, "2025-01-01T10:00:00Z") is None
    assert calculate_latency_ms("garbage", "2025-01-01T10:00:00Z") is None


@pytest.mark.asyncio
async def test_bare_string_tag_is_one_tag(store):
    aggregator = IngestionAggregator(store)
    await aggregator.ingest(_events([trace_event(tags="prod")]), "default")
    assert (await store.get_trace("trace-1")).tags == ["langfuse", "prod"]

    await aggregator.ingest(_events([
        {"id": "trace-1", "type": "trace-update", "body": {"tags": "beta"}}
    ]), "default")
    assert (await store.get_trace("trace-1")).tags == ["langfuse", "prod", "beta"]


@pytest.mark.asyncio
async def test_non_list_tags_are_ignored(store):
    aggregator = IngestionAggregator(store)
    await aggregator.ingest(_events([trace_event(tags={"env": "prod"})]), "default")
    assert (await store.get_trace("trace-1")).tags == ["langfuse"]


class _FailingStore(InMemoryStore):
    """Store that refuses to create one particular trace."""

    def __init__(self, failing_id):
        super().__init__()
        self.failing_id = failing_id

    async def create_trace(self, trace):
        if trace.id == self.failing_id:
            raise StoreError(f"cannot write {trace.id}")
        return await super().create_trace(trace)


@pytest.mark.asyncio
async def test_failed_trace_does_not_stop_the_batch():
    store = _FailingStore("trace-bad")
    aggregator = IngestionAggregator(store)

    response = await aggregator.ingest(_events([
        trace_event("trace-bad", name="bad"),
        generation_event("gen-bad", trace_id="trace-bad"),
        trace_event("trace-good", name="good"),
        generation_event("gen-good", trace_id="trace-good"),
    ]), "default")

    assert [(a.id, a.status) for a in response.successes] == [
        ("trace-bad", 201), ("gen-bad", 201), ("trace-good", 201), ("gen-good", 201),
    ]
    assert await store.get_trace("trace-bad") is None
    good = await store.get_trace("trace-good")
    assert good.name == "good"
    assert [o.id for o in good.observations] == ["gen-good"]


@pytest.mark.asyncio
async def test_epoch_event_timestamp_sets_trace_time(store):
    aggregator = IngestionAggregator(store)
    event = {"id": "trace-1", "type": "trace-create", "timestamp": 1735725600, "body": {"name": "chat"}}

    await aggregator.ingest(_events([event]), "default")

    trace = await store.get_trace("trace-1")
    assert trace.timestamp.isoformat() == "2025-01-01T10:00:00+00:00"


def test_event_timestamp_keeps_numeric_type():
    event = IngestionEvent.model_validate({"id": "e1", "type": "span-create", "timestamp": 1735725600.5})
    assert event.timestamp == 1735725600.5
