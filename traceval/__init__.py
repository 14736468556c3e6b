"""
Trace Evaluation Service
Trace ingestion and LLM-as-judge scoring for LLM application traffic
"""

__version__ = "0.1.0"

# Trace ingestion
from .ingestion import (
    IngestionAggregator,
    IngestionError
)

# Evaluation engine
from .evaluator import (
    EvaluationExecutor,
    EvalTask,
    TaskResult,
    BatchResult
)
from .jobs import (
    EvalJobService,
    JobCreationError
)
from .parser import parse_evaluation_response
from .prompts import render_evaluation_prompt, preset_evaluators

# LLM providers
from .providers import (
    create_provider_from_config,
    ProviderError,
    ChatOptions,
    ChatResult
)

# Storage
from .store import (
    InMemoryStore,
    StoreError,
    PresetEvaluatorError,
    JobStateError
)

__all__ = [
    "__version__",
    "IngestionAggregator",
    "IngestionError",
    "EvaluationExecutor",
    "EvalTask",
    "TaskResult",
    "BatchResult",
    "EvalJobService",
    "JobCreationError",
    "parse_evaluation_response",
    "render_evaluation_prompt",
    "preset_evaluators",
    "create_provider_from_config",
    "ProviderError",
    "ChatOptions",
    "ChatResult",
    "InMemoryStore",
    "StoreError",
    "PresetEvaluatorError",
    "JobStateError",
]
