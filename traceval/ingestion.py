"""
Langfuse-style ingestion: reconcile event batches into canonical traces.

An ingestion batch is an unordered list of ``trace-*``, ``generation-*`` and
``span-*`` events that may be delivered more than once. The aggregator groups
events by trace id, converts observation events into ``Observation`` records
and performs one create-or-merge per trace id under that trace's store lock.
Merging is a union by observation id, so replaying a batch changes nothing.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from pydantic import ValidationError

from traceval.models import (
    EventAck,
    IngestionEvent,
    IngestionResponse,
    Observation,
    ObservationType,
    TokenUsage,
    Trace,
)
from traceval.store import InMemoryStore
from traceval.utils import Timer, get_config, get_utc_datetime, parse_timestamp


class IngestionError(Exception):
    """Raised when an ingestion payload is malformed."""
    pass


TRACE_EVENT_TYPES = ("trace-create", "trace-update")
DEFAULT_TAGS = ["langfuse"]


@dataclass
class TraceGroup:
    """Events of one batch that belong to the same trace."""
    trace_event: Optional[IngestionEvent] = None
    observations: List[IngestionEvent] = field(default_factory=list)


def _has_value(value: Any) -> bool:
    return value is not None and value != ""


def _to_text(value: Any) -> Optional[str]:
    """Strings pass through; anything else is JSON-encoded."""
    if not _has_value(value):
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def extract_tokens(usage: Optional[Dict[str, Any]]) -> Optional[TokenUsage]:
    """
    Read token counts from a usage block in either of its spellings.

    Returns:
        TokenUsage, or None when absent or totalling zero
    """
    if not isinstance(usage, dict):
        return None

    def count(*keys: str) -> int:
        for key in keys:
            value = usage.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value:
                return max(0, int(value))
        return 0

    prompt = count("promptTokens", "input")
    completion = count("completionTokens", "output")
    total = count("totalTokens", "total") or prompt + completion
    if total == 0:
        return None
    return TokenUsage(prompt=prompt, completion=completion, total=total)


def calculate_latency_ms(start_time: Any, end_time: Any) -> Optional[float]:
    """Milliseconds between two timestamps, None if either is missing or invalid."""
    start = parse_timestamp(start_time)
    end = parse_timestamp(end_time)
    if start is None or end is None:
        return None
    latency = (end - start).total_seconds() * 1000
    return latency if latency >= 0 else None


def event_to_observation(event: IngestionEvent) -> Observation:
    """Convert a generation or span event into an observation."""
    body = event.body
    model = body.get("model") or None

    if event.type.startswith("generation"):
        obs_type = ObservationType.LLM if model else ObservationType.GENERATION
    else:
        obs_type = ObservationType.SPAN

    return Observation(
        id=event.id,
        type=obs_type,
        name=body.get("name") or model or event.type,
        model=model,
        start_time=parse_timestamp(body.get("startTime")),
        end_time=parse_timestamp(body.get("endTime")),
        latency_ms=calculate_latency_ms(body.get("startTime"), body.get("endTime")),
        tokens=extract_tokens(body.get("usage")),
        input=body.get("input"),
        output=body.get("output"),
        status="error" if body.get("level") == "ERROR" else "success",
        parent_observation_id=body.get("parentObservationId"),
    )


def compute_totals(observations: List[Observation]) -> Tuple[int, float]:
    """Sum token totals and latencies over observations."""
    total_tokens = sum(obs.tokens.total for obs in observations if obs.tokens)
    total_latency = sum(obs.latency_ms for obs in observations if obs.latency_ms)
    return total_tokens, total_latency


def _normalize_tags(tags: Any) -> List[str]:
    """A bare string is one tag; other non-list values carry no tags."""
    if isinstance(tags, str):
        tags = [tags]
    if not isinstance(tags, list):
        return []
    return [str(t) for t in tags if _has_value(t)]


def _stringify_metadata(metadata: Any) -> Dict[str, str]:
    if not isinstance(metadata, dict):
        return {}
    return {
        str(key): value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)
        for key, value in metadata.items()
    }


class IngestionAggregator:
    """Groups ingestion events by trace and merges them into the store."""

    def __init__(self, store: InMemoryStore, reject_orphans: Optional[bool] = None):
        self.store = store
        if reject_orphans is None:
            reject_orphans = get_config()["INGESTION_REJECT_ORPHANS"]
        self.reject_orphans = reject_orphans

    @staticmethod
    def parse_batch(payload: Any) -> List[IngestionEvent]:
        """
        Validate a raw ingestion payload.

        Args:
            payload: Decoded JSON request body

        Returns:
            List[IngestionEvent]: Events in delivery order

        Raises:
            IngestionError: If the payload has no ``batch`` array or an event
                lacks its id or type
        """
        if not isinstance(payload, dict) or not isinstance(payload.get("batch"), list):
            raise IngestionError("Invalid batch format")

        events = []
        for index, raw in enumerate(payload["batch"]):
            try:
                events.append(IngestionEvent.model_validate(raw))
            except ValidationError as e:
                raise IngestionError(f"Invalid event at index {index}: {e.errors()[0]['msg']}")
        return events

    def group_events(self, events: List[IngestionEvent]) -> Tuple[Dict[str, TraceGroup], List[EventAck]]:
        """
        Bucket events by trace id in first-seen order.

        Returns:
            Tuple of the groups keyed by trace id and one ack per event
        """
        groups: Dict[str, TraceGroup] = {}
        acks: List[EventAck] = []

        for event in events:
            is_trace_event = event.type in TRACE_EVENT_TYPES
            if is_trace_event:
                trace_id = event.id
            else:
                trace_id = event.body.get("traceId")
                if not trace_id:
                    if self.reject_orphans:
                        logger.warning("Rejected event without trace id", event_id=event.id, event_type=event.type)
                        acks.append(EventAck(id=event.id, status=400, error="Event has no traceId"))
                        continue
                    logger.warning("Event without trace id, using its own id", event_id=event.id, event_type=event.type)
                    trace_id = event.id
                trace_id = str(trace_id)

            group = groups.setdefault(trace_id, TraceGroup())
            if is_trace_event:
                group.trace_event = event
            elif "generation" in event.type or "span" in event.type:
                group.observations.append(event)

            acks.append(EventAck(id=event.id, status=201))

        return groups, acks

    async def ingest(self, events: List[IngestionEvent], project_id: str) -> IngestionResponse:
        """
        Merge a batch of events into the store.

        A failure merging one trace is logged and does not affect the others
        or the per-event acknowledgements.

        Args:
            events: Validated events
            project_id: Project new traces are created in

        Returns:
            IngestionResponse: One ack per event
        """
        groups, acks = self.group_events(events)

        logger.info("Ingestion batch received",
                    project_id=project_id,
                    event_count=len(events),
                    trace_count=len(groups))

        with Timer("ingestion_batch"):
            for trace_id, group in groups.items():
                try:
                    await self._merge_group(trace_id, group, project_id)
                except Exception as e:
                    logger.error("Failed to merge trace", trace_id=trace_id, error=str(e))

        return IngestionResponse(successes=acks)

    async def _merge_group(self, trace_id: str, group: TraceGroup, project_id: str) -> Trace:
        observations: List[Observation] = []
        seen = set()
        for event in group.observations:
            if event.id in seen:
                continue
            seen.add(event.id)
            observations.append(event_to_observation(event))

        trace_body = group.trace_event.body if group.trace_event else {}

        input_text = _to_text(trace_body.get("input"))
        if input_text is None:
            input_text = next((_to_text(o.input) for o in observations if _has_value(o.input)), None)

        output_text = _to_text(trace_body.get("output"))
        if output_text is None:
            output_text = next((_to_text(o.output) for o in reversed(observations) if _has_value(o.output)), None)

        metadata = _stringify_metadata(trace_body.get("metadata"))
        body_tags = _normalize_tags(trace_body.get("tags"))

        async with self.store.trace_lock(trace_id):
            existing = await self.store.get_trace(trace_id)

            if existing is None:
                total_tokens, total_latency = compute_totals(observations)
                timestamp = None
                if group.trace_event is not None:
                    timestamp = parse_timestamp(group.trace_event.timestamp)
                if timestamp is None and group.observations:
                    timestamp = parse_timestamp(group.observations[0].timestamp)

                trace = Trace(
                    id=trace_id,
                    project_id=project_id,
                    name=trace_body.get("name") or "Trace",
                    timestamp=timestamp or get_utc_datetime(),
                    input=input_text,
                    output=output_text,
                    tags=DEFAULT_TAGS + body_tags,
                    total_tokens=total_tokens or None,
                    latency_ms=total_latency or None,
                    status="success",
                    observations=observations,
                    metadata=metadata,
                )
                await self.store.create_trace(trace)
                logger.info("Trace created", trace_id=trace_id, observation_count=len(observations))
                return trace

            known_ids = existing.observation_ids()
            added = [obs for obs in observations if obs.id not in known_ids]
            existing.observations.extend(added)

            total_tokens, total_latency = compute_totals(existing.observations)
            existing.total_tokens = total_tokens or existing.total_tokens
            existing.latency_ms = total_latency or existing.latency_ms
            if input_text is not None:
                existing.input = input_text
            if output_text is not None:
                existing.output = output_text
            if trace_body.get("name"):
                existing.name = trace_body["name"]
            if metadata:
                existing.metadata.update(metadata)
            if body_tags:
                existing.tags = list(dict.fromkeys(existing.tags + body_tags))

            await self.store.update_trace(existing)
            logger.info("Trace merged",
                        trace_id=trace_id,
                        added_observations=len(added),
                        observation_count=len(existing.observations))
            return existing

    async def upsert_trace(self, trace: Trace) -> Trace:
        """
        Create a fully built trace, or merge it into the stored one.

        Used for traces that arrive already assembled, such as workflow
        webhooks.
        """
        async with self.store.trace_lock(trace.id):
            existing = await self.store.get_trace(trace.id)
            if existing is None:
                await self.store.create_trace(trace)
                logger.info("Trace created", trace_id=trace.id, observation_count=len(trace.observations))
                return trace

            known_ids = existing.observation_ids()
            existing.observations.extend(o for o in trace.observations if o.id not in known_ids)
            for name in ("input", "output", "workflow_name", "dify_connection_id"):
                value = getattr(trace, name)
                if _has_value(value):
                    setattr(existing, name, value)
            if trace.total_tokens:
                existing.total_tokens = trace.total_tokens
            if trace.latency_ms:
                existing.latency_ms = trace.latency_ms
            existing.name = trace.name or existing.name
            existing.status = trace.status or existing.status
            existing.metadata.update(trace.metadata)
            existing.tags = list(dict.fromkeys(existing.tags + trace.tags))

            await self.store.update_trace(existing)
            logger.info("Trace merged", trace_id=trace.id, observation_count=len(existing.observations))
            return existing


# Export key classes and functions
__all__ = [
    'IngestionError',
    'IngestionAggregator',
    'TraceGroup',
    'extract_tokens',
    'calculate_latency_ms',
    'event_to_observation',
    'compute_totals',
]
