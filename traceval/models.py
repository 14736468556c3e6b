"""
Pydantic data models for the trace evaluation service.

This module defines all data structures used throughout the application:
traces and their observations, evaluator templates, LLM backend bindings,
evaluation jobs and scores, plus the request/response envelopes of the HTTP API.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# UTC datetime factory function
def utc_now():
    """Factory function to get current UTC datetime."""
    return datetime.now(timezone.utc)


# Enums for controlled vocabulary
class ObservationType(str, Enum):
    """Kind of sub-operation recorded inside a trace."""
    LLM = "llm"
    GENERATION = "generation"
    SPAN = "span"
    RETRIEVAL = "retrieval"


class ScoreType(str, Enum):
    """Value type produced by an evaluator."""
    NUMERIC = "numeric"
    CATEGORICAL = "categorical"
    BOOLEAN = "boolean"


class ProviderKind(str, Enum):
    """LLM backend flavours a config can bind to."""
    OPENAI = "openai"
    AZURE = "azure"
    DASHSCOPE = "dashscope"
    OLLAMA = "ollama"
    CUSTOM = "custom"


class EvalJobStatus(str, Enum):
    """Lifecycle states of an evaluation job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EvalJobStatus.COMPLETED, EvalJobStatus.FAILED)


class SourceType(str, Enum):
    """Where an evaluation job takes its traces from."""
    TRACE = "trace"
    TRACES = "traces"
    DATASET = "dataset"


class ParseTier(str, Enum):
    """How confidently a judge response was parsed."""
    EXACT = "exact"              # Structured JSON object parsed
    APPROXIMATE = "approximate"  # Score recovered by pattern matching
    DEFAULTED = "defaulted"      # Nothing found, neutral score substituted


class TimeRange(str, Enum):
    """Lookback windows of the statistics dashboard."""
    DAY = "1d"
    WEEK = "7d"
    MONTH = "30d"
    QUARTER = "90d"

    @property
    def days(self) -> int:
        return int(self.value[:-1])


# Trace models
class TokenUsage(BaseModel):
    """Token breakdown of a single observation."""
    prompt: int = Field(default=0, ge=0)
    completion: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)


class Observation(BaseModel):
    """One sub-operation inside a trace (LLM call, retrieval step, span)."""
    id: str = Field(..., description="Observation identifier, unique within its trace")
    type: ObservationType = Field(default=ObservationType.SPAN, description="Observation kind")
    name: str = Field(..., description="Display name")
    model: Optional[str] = Field(None, description="Model name for LLM calls")
    start_time: Optional[datetime] = Field(None, description="Start of the operation")
    end_time: Optional[datetime] = Field(None, description="End of the operation")
    latency_ms: Optional[float] = Field(None, description="end_time - start_time in ms, None when unknown")
    tokens: Optional[TokenUsage] = Field(None, description="Token usage, None when not reported")
    input: Any = Field(None, description="Operation input payload")
    output: Any = Field(None, description="Operation output payload")
    status: str = Field(default="success", description="success or error")
    parent_observation_id: Optional[str] = Field(None, description="Enclosing observation, if any")


class Trace(BaseModel):
    """One captured end-to-end interaction with an LLM application."""
    id: str = Field(..., min_length=1, description="Externally supplied id, the merge key")
    project_id: str = Field(..., description="Owning project")
    name: str = Field(default="Trace", description="Trace name")
    workflow_name: Optional[str] = Field(None, description="Upstream workflow name")
    dify_connection_id: Optional[str] = Field(None, description="Webhook connection that delivered the trace")
    timestamp: datetime = Field(default_factory=utc_now, description="When the interaction happened")
    input: Optional[str] = Field(None, description="Canonical input, often JSON-encoded")
    output: Optional[str] = Field(None, description="Canonical output, often JSON-encoded")
    tags: List[str] = Field(default_factory=list, description="Unique tags")
    total_tokens: Optional[int] = Field(None, ge=0, description="Sum of observation token totals")
    latency_ms: Optional[float] = Field(None, ge=0.0, description="Sum of observation latencies")
    status: str = Field(default="success", description="success, error or upstream status")
    observations: List[Observation] = Field(default_factory=list, description="Ordered sub-operations")
    metadata: Dict[str, str] = Field(default_factory=dict, description="Free-form string metadata")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator('tags')
    @classmethod
    def dedupe_tags(cls, v):
        return list(dict.fromkeys(v))

    def observation_ids(self) -> set:
        return {obs.id for obs in self.observations}


# Evaluation configuration models
class EvaluatorTemplate(BaseModel):
    """A scoring rubric rendered into a judge prompt."""
    id: str = Field(..., description="Evaluator identifier")
    project_id: Optional[str] = Field(None, description="Owning project, None for presets")
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    prompt_template: str = Field(..., min_length=10, description="Template with {{input}}/{{output}} placeholders")
    score_type: ScoreType = Field(default=ScoreType.NUMERIC)
    min_score: float = Field(default=0.0, ge=0.0)
    max_score: float = Field(default=10.0, le=100.0)
    categories: List[str] = Field(default_factory=list)
    is_preset: bool = Field(default=False, description="Presets cannot be edited or deleted")
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class LlmConfig(BaseModel):
    """A named binding to one LLM backend."""
    id: str
    project_id: str
    name: str
    provider: str = Field(..., description="Provider discriminator, see ProviderKind")
    model_name: str
    api_endpoint: Optional[str] = Field(None, description="Base URL override")
    api_key_encrypted: Optional[str] = Field(None, description="Encoded credential")
    config: Dict[str, Any] = Field(default_factory=dict, description="Free-form provider options")
    is_default: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class DatasetItem(BaseModel):
    """A curated input/output pair that can be evaluated like a trace."""
    id: str
    dataset_id: str
    trace_id: Optional[str] = None
    input: Any = None
    output: Any = None


# Evaluation run models
class EvalJob(BaseModel):
    """One execution of a set of evaluators against a set of traces."""
    id: str
    project_id: str
    name: str
    source_type: SourceType
    source_id: Optional[str] = None
    llm_config_id: str
    status: EvalJobStatus = EvalJobStatus.PENDING
    total_count: int = Field(default=0, ge=0)
    completed_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def progress(self) -> int:
        """Percentage of tasks that produced a score."""
        if self.total_count <= 0:
            return 0
        return round(self.completed_count / self.total_count * 100)


class Score(BaseModel):
    """One evaluator's judgement of one trace. Write-once."""
    id: str
    trace_id: str
    project_id: str
    evaluator_id: str
    evaluator_name: str
    eval_job_id: Optional[str] = None
    score: float
    reason: Optional[str] = None
    parse_tier: ParseTier = ParseTier.EXACT
    source: str = Field(default="llm", description="llm for judge scores, api for public API scores")
    created_at: datetime = Field(default_factory=utc_now)


# Ingestion wire models
class IngestionEvent(BaseModel):
    """One event of a Langfuse-style ingestion batch."""
    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    timestamp: Union[str, int, float, None] = None
    body: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('body', mode='before')
    @classmethod
    def default_body(cls, v):
        return v if v is not None else {}


class IngestionBatch(BaseModel):
    """Batch envelope accepted by the ingestion endpoint."""
    batch: List[IngestionEvent]

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "batch": [
                    {
                        "id": "trace-1",
                        "type": "trace-create",
                        "timestamp": "2025-01-01T10:00:00Z",
                        "body": {"name": "chat", "input": "hi", "output": "hello"}
                    },
                    {
                        "id": "gen-1",
                        "type": "generation-create",
                        "timestamp": "2025-01-01T10:00:01Z",
                        "body": {
                            "traceId": "trace-1",
                            "model": "gpt-4o-mini",
                            "usage": {"promptTokens": 12, "completionTokens": 30},
                            "startTime": "2025-01-01T10:00:01Z",
                            "endTime": "2025-01-01T10:00:02.5Z"
                        }
                    }
                ]
            }
        }
    )


class EventAck(BaseModel):
    """Per-event acceptance status."""
    id: str
    status: int
    error: Optional[str] = None


class IngestionResponse(BaseModel):
    """Response of the ingestion endpoint."""
    successes: List[EventAck] = Field(default_factory=list)


# Evaluation API models
class EvalJobCreateRequest(BaseModel):
    """Request to evaluate a set of traces with a set of evaluators."""
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(..., min_length=1, alias="projectId")
    name: Optional[str] = None
    source_type: SourceType = Field(..., alias="sourceType")
    trace_ids: Optional[List[str]] = Field(None, alias="traceIds")
    dataset_id: Optional[str] = Field(None, alias="datasetId")
    evaluator_ids: List[str] = Field(..., min_length=1, alias="evaluatorIds")
    llm_config_id: str = Field(..., min_length=1, alias="llmConfigId")


class EvalJobCreateResponse(BaseModel):
    """Outcome of a finished evaluation job."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    total_count: int = Field(..., alias="totalCount")
    completed_count: int = Field(..., alias="completedCount")
    failed_count: int = Field(..., alias="failedCount")
    status: EvalJobStatus
    error_message: Optional[str] = Field(None, alias="errorMessage")


class ScoreCreateRequest(BaseModel):
    """Manual score submitted through the public API."""
    model_config = ConfigDict(populate_by_name=True)

    trace_id: str = Field(..., min_length=1, alias="traceId")
    name: str = Field(..., min_length=1)
    value: float
    comment: Optional[str] = None


class ErrorResponse(BaseModel):
    """Consistent error envelope for all endpoints."""
    error: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str
    timestamp: str
    version: str
    checks: Dict[str, Any] = Field(default_factory=dict)
