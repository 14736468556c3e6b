"""
Evaluation job lifecycle.

``EvalJobService.create_job`` validates a request, resolves the traces to
judge, records the job as running, fans out one task per (trace, evaluator)
pair through the executor and writes the terminal state exactly once.
Progress counters are bumped as individual tasks finish so that a job can
be polled while it runs.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from traceval.evaluator import EvalTask, EvaluationExecutor, TaskResult
from traceval.models import (
    EvalJob,
    EvalJobCreateRequest,
    EvalJobCreateResponse,
    EvalJobStatus,
    EvaluatorTemplate,
    SourceType,
)
from traceval.store import InMemoryStore
from traceval.utils import Timer, generate_id, get_utc_datetime


class JobCreationError(Exception):
    """Raised when a job request is rejected before any job is created."""
    pass


# (trace id, input, output)
TraceSource = Tuple[str, str, str]


def _encode(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


class EvalJobService:
    """Creates, runs and reports on evaluation jobs."""

    def __init__(self, store: InMemoryStore, executor: EvaluationExecutor):
        self.store = store
        self.executor = executor

    async def _resolve_traces(self, request: EvalJobCreateRequest) -> List[TraceSource]:
        trace_ids = request.trace_ids or []

        if request.source_type == SourceType.TRACE:
            if len(trace_ids) != 1:
                raise JobCreationError("Source type 'trace' requires exactly one trace id")
            ids = trace_ids
        elif request.source_type == SourceType.TRACES:
            if not trace_ids:
                raise JobCreationError("Source type 'traces' requires trace ids")
            ids = trace_ids
        else:
            if not request.dataset_id:
                raise JobCreationError("Source type 'dataset' requires a dataset id")
            items = await self.store.dataset_items(request.dataset_id)
            return [
                (item.trace_id or item.id, _encode(item.input), _encode(item.output or {}))
                for item in items
            ]

        traces: List[TraceSource] = []
        for trace_id in dict.fromkeys(ids):
            trace = await self.store.get_trace(trace_id)
            if trace is None:
                logger.warning("Trace not found for evaluation, skipping", trace_id=trace_id)
                continue
            traces.append((trace.id, trace.input or "", trace.output or ""))
        return traces

    @staticmethod
    def _build_tasks(traces: List[TraceSource], evaluators: List[EvaluatorTemplate],
                     project_id: str, job_id: str) -> List[EvalTask]:
        """Build tasks in trace-major order."""
        return [
            EvalTask(
                trace_id=trace_id,
                trace_input=trace_input,
                trace_output=trace_output,
                evaluator_id=evaluator.id,
                evaluator_name=evaluator.name,
                prompt_template=evaluator.prompt_template,
                project_id=project_id,
                eval_job_id=job_id,
            )
            for trace_id, trace_input, trace_output in traces
            for evaluator in evaluators
        ]

    async def create_job(self, request: EvalJobCreateRequest) -> EvalJobCreateResponse:
        """
        Create and run an evaluation job.

        Args:
            request: Job request

        Returns:
            EvalJobCreateResponse: Terminal counts and status of the job

        Raises:
            JobCreationError: If no active evaluator, no LLM config or no trace
                could be resolved. No job is created in that case.
        """
        evaluators = await self.store.get_evaluators(request.evaluator_ids, active_only=True)
        if not evaluators:
            raise JobCreationError("No active evaluators found")

        if await self.store.get_llm_config(request.llm_config_id) is None:
            raise JobCreationError(f"LLM config not found: {request.llm_config_id}")

        traces = await self._resolve_traces(request)
        if not traces:
            raise JobCreationError("No traces found to evaluate")

        total_count = len(traces) * len(evaluators)
        now = get_utc_datetime()
        job = EvalJob(
            id=generate_id("job"),
            project_id=request.project_id,
            name=request.name or f"Evaluation job {now:%Y-%m-%d %H:%M:%S}",
            source_type=request.source_type,
            source_id=request.dataset_id or ",".join(request.trace_ids or []),
            llm_config_id=request.llm_config_id,
            status=EvalJobStatus.RUNNING,
            total_count=total_count,
            started_at=now,
        )
        await self.store.create_job(job)

        logger.info("Evaluation job started",
                    job_id=job.id,
                    project_id=job.project_id,
                    trace_count=len(traces),
                    evaluator_count=len(evaluators),
                    total_count=total_count)

        tasks = self._build_tasks(traces, evaluators, request.project_id, job.id)

        async def on_progress(result: TaskResult) -> None:
            await self.store.increment_job_counts(
                job.id,
                completed=1 if result.success else 0,
                failed=0 if result.success else 1
            )

        try:
            with Timer(f"eval_job_{job.id}"):
                batch = await self.executor.execute_batch(tasks, request.llm_config_id, on_progress=on_progress)
        except Exception as e:
            logger.error("Evaluation job failed", job_id=job.id, error=str(e))
            finished = await self.store.finish_job(
                job.id,
                EvalJobStatus.FAILED,
                completed_count=0,
                failed_count=total_count,
                error_message=str(e) or type(e).__name__
            )
            return self._response(finished)

        status = EvalJobStatus.COMPLETED if batch.success_count > 0 else EvalJobStatus.FAILED
        finished = await self.store.finish_job(
            job.id,
            status,
            completed_count=batch.success_count,
            failed_count=batch.failed_count
        )

        logger.info("Evaluation job finished",
                    job_id=job.id,
                    status=status.value,
                    completed_count=batch.success_count,
                    failed_count=batch.failed_count)
        return self._response(finished)

    @staticmethod
    def _response(job: EvalJob) -> EvalJobCreateResponse:
        return EvalJobCreateResponse(
            id=job.id,
            total_count=job.total_count,
            completed_count=job.completed_count,
            failed_count=job.failed_count,
            status=job.status,
            error_message=job.error_message,
        )

    async def get_job(self, job_id: str) -> Optional[EvalJob]:
        return await self.store.get_job(job_id)

    async def list_jobs(self, project_id: str, status: Optional[EvalJobStatus] = None,
                        limit: int = 20, offset: int = 0) -> Dict[str, Any]:
        """
        List a project's jobs with their progress percentage.

        Returns:
            Dict with ``jobs`` (each including ``progress``) and ``total``
        """
        jobs = await self.store.list_jobs(project_id, status=status, limit=limit, offset=offset)
        total = await self.store.count_jobs(project_id, status=status)
        return {
            "jobs": [job_summary(job) for job in jobs],
            "total": total,
        }


def job_summary(job: EvalJob) -> Dict[str, Any]:
    """Serialize a job for the API, including its derived progress."""
    data = job.model_dump(mode="json")
    data["progress"] = job.progress
    return data


# Export key classes
__all__ = [
    'JobCreationError',
    'EvalJobService',
    'job_summary',
]
