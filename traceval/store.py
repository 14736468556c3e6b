"""
In-memory storage for traces, evaluation configuration, jobs and scores.

This module provides the persistence contract consumed by the ingestion
aggregator and the evaluation engine, plus an asyncio-safe in-memory
implementation of it:
- Traces keyed by their externally supplied id, with per-trace-id locks so
  concurrent deliveries for the same trace merge serially
- Evaluator templates (presets are read-only) and LLM configs
- Evaluation jobs with one-way status transitions and job-scoped counter locks
- Append-only score rows queryable by job id and by trace id
- Dataset items used as an alternative evaluation source

Every component receives the store through its constructor; the only shared
instance is the one held in the FastAPI application state.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

import psutil
from loguru import logger

from traceval.models import (
    DatasetItem,
    EvalJob,
    EvalJobStatus,
    EvaluatorTemplate,
    LlmConfig,
    Score,
    Trace,
)
from traceval.utils import get_utc_datetime


class StoreError(Exception):
    """Raised when a store operation cannot be applied."""
    pass


class PresetEvaluatorError(StoreError):
    """Raised when trying to modify or delete a preset evaluator."""
    pass


class JobStateError(StoreError):
    """Raised on an invalid evaluation job state transition."""
    pass


@dataclass
class StoreMetrics:
    """Counters tracked by the store."""
    total_traces: int = 0
    traces_created: int = 0
    traces_merged: int = 0
    total_scores: int = 0
    total_jobs: int = 0
    running_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    memory_usage_mb: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class InMemoryStore:
    """Asyncio-safe in-memory implementation of the trace and score store."""

    def __init__(self):
        self._traces: Dict[str, Trace] = {}
        self._evaluators: Dict[str, EvaluatorTemplate] = {}
        self._llm_configs: Dict[str, LlmConfig] = {}
        self._jobs: Dict[str, EvalJob] = {}
        self._scores: List[Score] = []
        self._scores_by_job: Dict[str, List[Score]] = defaultdict(list)
        self._scores_by_trace: Dict[str, List[Score]] = defaultdict(list)
        self._dataset_items: Dict[str, List[DatasetItem]] = defaultdict(list)
        self._metrics = StoreMetrics()

        self._lock = asyncio.Lock()
        self._trace_locks: Dict[str, asyncio.Lock] = {}
        self._job_locks: Dict[str, asyncio.Lock] = {}

    # ==================== LOCKS ====================

    @asynccontextmanager
    async def trace_lock(self, trace_id: str) -> AsyncIterator[None]:
        """Serialize read-merge-write cycles for one trace id."""
        async with self._lock:
            lock = self._trace_locks.setdefault(trace_id, asyncio.Lock())
        async with lock:
            yield

    async def _job_lock(self, job_id: str) -> asyncio.Lock:
        async with self._lock:
            return self._job_locks.setdefault(job_id, asyncio.Lock())

    # ==================== TRACES ====================

    async def get_trace(self, trace_id: str) -> Optional[Trace]:
        """Get a copy of a trace, or None if it does not exist."""
        async with self._lock:
            trace = self._traces.get(trace_id)
            return trace.model_copy(deep=True) if trace else None

    async def create_trace(self, trace: Trace) -> Trace:
        """Insert a new trace.

        Raises:
            StoreError: If a trace with the same id already exists
        """
        async with self._lock:
            if trace.id in self._traces:
                raise StoreError(f"Trace {trace.id} already exists")
            self._traces[trace.id] = trace.model_copy(deep=True)
            self._metrics.total_traces = len(self._traces)
            self._metrics.traces_created += 1
            return trace

    async def update_trace(self, trace: Trace) -> Trace:
        """Replace a stored trace with a merged version.

        Raises:
            StoreError: If the trace does not exist
        """
        async with self._lock:
            if trace.id not in self._traces:
                raise StoreError(f"Trace {trace.id} not found")
            trace.updated_at = get_utc_datetime()
            self._traces[trace.id] = trace.model_copy(deep=True)
            self._metrics.traces_merged += 1
            return trace

    async def list_traces(self, project_id: Optional[str] = None, limit: int = 20,
                          offset: int = 0) -> List[Trace]:
        """List traces, newest first."""
        async with self._lock:
            traces = list(self._traces.values())
            if project_id:
                traces = [t for t in traces if t.project_id == project_id]
            traces.sort(key=lambda t: t.timestamp, reverse=True)
            return [t.model_copy(deep=True) for t in traces[offset:offset + limit]]

    async def traces_since(self, project_id: str, since: datetime) -> List[Trace]:
        """A project's traces with a timestamp at or after ``since``."""
        async with self._lock:
            return [
                t.model_copy(deep=True) for t in self._traces.values()
                if t.project_id == project_id and t.timestamp >= since
            ]

    async def count_traces(self, project_id: Optional[str] = None) -> int:
        async with self._lock:
            return sum(1 for t in self._traces.values() if not project_id or t.project_id == project_id)

    # ==================== EVALUATORS ====================

    async def add_evaluator(self, evaluator: EvaluatorTemplate) -> EvaluatorTemplate:
        async with self._lock:
            self._evaluators[evaluator.id] = evaluator.model_copy(deep=True)
            return evaluator

    async def update_evaluator(self, evaluator: EvaluatorTemplate) -> EvaluatorTemplate:
        """Replace a custom evaluator.

        Raises:
            StoreError: If the evaluator does not exist
            PresetEvaluatorError: If the evaluator is a preset
        """
        async with self._lock:
            existing = self._evaluators.get(evaluator.id)
            if existing is None:
                raise StoreError(f"Evaluator {evaluator.id} not found")
            if existing.is_preset:
                raise PresetEvaluatorError(f"Preset evaluator {evaluator.id} cannot be modified")
            evaluator.updated_at = get_utc_datetime()
            self._evaluators[evaluator.id] = evaluator.model_copy(deep=True)
            return evaluator

    async def delete_evaluator(self, evaluator_id: str) -> bool:
        """Delete a custom evaluator.

        Returns:
            True if deleted, False if not found

        Raises:
            PresetEvaluatorError: If the evaluator is a preset
        """
        async with self._lock:
            existing = self._evaluators.get(evaluator_id)
            if existing is None:
                return False
            if existing.is_preset:
                raise PresetEvaluatorError(f"Preset evaluator {evaluator_id} cannot be deleted")
            del self._evaluators[evaluator_id]
            return True

    async def get_evaluators(self, evaluator_ids: List[str], active_only: bool = True) -> List[EvaluatorTemplate]:
        """Get evaluators by id, in the requested order, skipping unknown ids."""
        async with self._lock:
            found = []
            for evaluator_id in dict.fromkeys(evaluator_ids):
                evaluator = self._evaluators.get(evaluator_id)
                if evaluator is None or (active_only and not evaluator.is_active):
                    continue
                found.append(evaluator.model_copy(deep=True))
            return found

    async def list_evaluators(self, project_id: Optional[str] = None) -> List[EvaluatorTemplate]:
        """List presets plus the evaluators of a project."""
        async with self._lock:
            return [
                e.model_copy(deep=True) for e in self._evaluators.values()
                if e.is_preset or project_id is None or e.project_id == project_id
            ]

    async def seed_presets(self, presets: List[EvaluatorTemplate]) -> int:
        """Replace all preset evaluators with the given set.

        Returns:
            Number of presets installed
        """
        async with self._lock:
            stale = [eid for eid, e in self._evaluators.items() if e.is_preset]
            for evaluator_id in stale:
                del self._evaluators[evaluator_id]
            for preset in presets:
                self._evaluators[preset.id] = preset.model_copy(update={"is_preset": True}, deep=True)
            return len(presets)

    # ==================== LLM CONFIGS ====================

    async def add_llm_config(self, llm_config: LlmConfig) -> LlmConfig:
        async with self._lock:
            self._llm_configs[llm_config.id] = llm_config.model_copy(deep=True)
            if llm_config.is_default:
                self._clear_other_defaults(llm_config)
            return llm_config

    async def get_llm_config(self, config_id: str) -> Optional[LlmConfig]:
        async with self._lock:
            llm_config = self._llm_configs.get(config_id)
            return llm_config.model_copy(deep=True) if llm_config else None

    async def set_default_llm_config(self, config_id: str) -> LlmConfig:
        """Mark a config as its project's default, clearing the flag elsewhere.

        Raises:
            StoreError: If the config does not exist
        """
        async with self._lock:
            llm_config = self._llm_configs.get(config_id)
            if llm_config is None:
                raise StoreError(f"LLM config {config_id} not found")
            llm_config.is_default = True
            self._clear_other_defaults(llm_config)
            return llm_config.model_copy(deep=True)

    async def get_default_llm_config(self, project_id: str) -> Optional[LlmConfig]:
        async with self._lock:
            for llm_config in self._llm_configs.values():
                if llm_config.project_id == project_id and llm_config.is_default:
                    return llm_config.model_copy(deep=True)
            return None

    def _clear_other_defaults(self, llm_config: LlmConfig) -> None:
        for other in self._llm_configs.values():
            if other.id != llm_config.id and other.project_id == llm_config.project_id:
                other.is_default = False

    # ==================== DATASETS ====================

    async def add_dataset_item(self, item: DatasetItem) -> DatasetItem:
        async with self._lock:
            self._dataset_items[item.dataset_id].append(item.model_copy(deep=True))
            return item

    async def dataset_items(self, dataset_id: str) -> List[DatasetItem]:
        async with self._lock:
            return [i.model_copy(deep=True) for i in self._dataset_items.get(dataset_id, [])]

    # ==================== JOBS ====================

    async def create_job(self, job: EvalJob) -> EvalJob:
        async with self._lock:
            if job.id in self._jobs:
                raise StoreError(f"Evaluation job {job.id} already exists")
            self._jobs[job.id] = job.model_copy(deep=True)
            self._metrics.total_jobs += 1
            if job.status == EvalJobStatus.RUNNING:
                self._metrics.running_jobs += 1
            return job

    async def get_job(self, job_id: str) -> Optional[EvalJob]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def list_jobs(self, project_id: str, status: Optional[EvalJobStatus] = None,
                        limit: int = 20, offset: int = 0) -> List[EvalJob]:
        """List a project's jobs, newest first."""
        async with self._lock:
            jobs = [j for j in self._jobs.values() if j.project_id == project_id]
            if status is not None:
                jobs = [j for j in jobs if j.status == status]
            jobs.sort(key=lambda j: j.created_at, reverse=True)
            return [j.model_copy(deep=True) for j in jobs[offset:offset + limit]]

    async def count_jobs(self, project_id: str, status: Optional[EvalJobStatus] = None) -> int:
        async with self._lock:
            return sum(
                1 for j in self._jobs.values()
                if j.project_id == project_id and (status is None or j.status == status)
            )

    async def increment_job_counts(self, job_id: str, completed: int = 0, failed: int = 0) -> EvalJob:
        """Atomically bump a running job's progress counters.

        Raises:
            StoreError: If the job does not exist
            JobStateError: If the job already reached a terminal state
        """
        lock = await self._job_lock(job_id)
        async with lock:
            async with self._lock:
                job = self._jobs.get(job_id)
                if job is None:
                    raise StoreError(f"Evaluation job {job_id} not found")
                if job.status.is_terminal:
                    raise JobStateError(f"Evaluation job {job_id} is already {job.status.value}")
                job.completed_count += completed
                job.failed_count += failed
                return job.model_copy(deep=True)

    async def finish_job(self, job_id: str, status: EvalJobStatus, completed_count: int,
                         failed_count: int, error_message: Optional[str] = None) -> EvalJob:
        """Write a job's terminal state exactly once.

        Raises:
            StoreError: If the job does not exist
            JobStateError: If the status is not terminal or the job already finished
        """
        if not status.is_terminal:
            raise JobStateError(f"{status.value} is not a terminal job status")
        lock = await self._job_lock(job_id)
        async with lock:
            async with self._lock:
                job = self._jobs.get(job_id)
                if job is None:
                    raise StoreError(f"Evaluation job {job_id} not found")
                if job.status.is_terminal:
                    raise JobStateError(f"Evaluation job {job_id} is already {job.status.value}")
                was_running = job.status == EvalJobStatus.RUNNING
                job.status = status
                job.completed_count = completed_count
                job.failed_count = failed_count
                job.error_message = error_message
                job.completed_at = get_utc_datetime()

                if was_running:
                    self._metrics.running_jobs -= 1
                if status == EvalJobStatus.COMPLETED:
                    self._metrics.completed_jobs += 1
                else:
                    self._metrics.failed_jobs += 1
                # Terminal jobs take no further counter updates
                self._job_locks.pop(job_id, None)
                return job.model_copy(deep=True)

    # ==================== SCORES ====================

    async def add_score(self, score: Score) -> Score:
        """Append a score row. Rows are never updated."""
        async with self._lock:
            stored = score.model_copy(deep=True)
            self._scores.append(stored)
            if stored.eval_job_id:
                self._scores_by_job[stored.eval_job_id].append(stored)
            self._scores_by_trace[stored.trace_id].append(stored)
            self._metrics.total_scores += 1
            return score

    async def scores_for_job(self, job_id: str) -> List[Score]:
        async with self._lock:
            return [s.model_copy() for s in self._scores_by_job.get(job_id, [])]

    async def scores_for_trace(self, trace_id: str) -> List[Score]:
        async with self._lock:
            return [s.model_copy() for s in self._scores_by_trace.get(trace_id, [])]

    async def list_scores(self, project_id: Optional[str] = None, trace_id: Optional[str] = None,
                          limit: int = 20, offset: int = 0) -> List[Score]:
        """List scores, newest first."""
        async with self._lock:
            scores = self._scores_by_trace.get(trace_id, []) if trace_id else self._scores
            if project_id:
                scores = [s for s in scores if s.project_id == project_id]
            ordered = sorted(scores, key=lambda s: s.created_at, reverse=True)
            return [s.model_copy() for s in ordered[offset:offset + limit]]

    async def scores_since(self, project_id: str, since: datetime) -> List[Score]:
        """A project's scores created at or after ``since``."""
        async with self._lock:
            return [s.model_copy() for s in self._scores if s.project_id == project_id and s.created_at >= since]

    async def count_scores(self, project_id: Optional[str] = None, trace_id: Optional[str] = None) -> int:
        async with self._lock:
            scores = self._scores_by_trace.get(trace_id, []) if trace_id else self._scores
            return sum(1 for s in scores if not project_id or s.project_id == project_id)

    # ==================== HOUSEKEEPING ====================

    async def get_metrics(self) -> StoreMetrics:
        """Get a snapshot of the store metrics, including process memory."""
        async with self._lock:
            self._update_memory_metrics()
            return StoreMetrics(**self._metrics.to_dict())

    def _update_memory_metrics(self) -> None:
        try:
            self._metrics.memory_usage_mb = psutil.Process().memory_info().rss / 1024 / 1024
        except psutil.Error as e:
            logger.debug("Memory usage unavailable, keeping previous value", error=str(e))

    async def cleanup_stale_locks(self, max_age: timedelta = timedelta(hours=24)) -> int:
        """Drop per-trace locks of traces untouched for ``max_age``.

        Idle job locks of finished or unknown jobs are dropped as well.

        Returns:
            Number of locks removed
        """
        cutoff = get_utc_datetime() - max_age
        removed = 0
        async with self._lock:
            for trace_id in list(self._trace_locks):
                lock = self._trace_locks[trace_id]
                trace = self._traces.get(trace_id)
                if lock.locked():
                    continue
                if trace is None or trace.updated_at < cutoff:
                    del self._trace_locks[trace_id]
                    removed += 1
            for job_id in list(self._job_locks):
                job = self._jobs.get(job_id)
                if self._job_locks[job_id].locked():
                    continue
                if job is None or job.status.is_terminal:
                    del self._job_locks[job_id]
                    removed += 1
        if removed:
            logger.info("Stale trace locks removed", removed=removed)
        return removed


# Export key classes
__all__ = [
    'InMemoryStore',
    'StoreMetrics',
    'StoreError',
    'PresetEvaluatorError',
    'JobStateError',
]
