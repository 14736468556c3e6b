"""
LLM-as-judge evaluation executor.

This module provides:
- Execution of single (trace, evaluator) judgement tasks: resolve the LLM
  config, build the provider client, render the prompt, call the model,
  parse the answer and persist a Score
- Batch execution on a bounded asyncio pool with one semaphore per provider
- A per-call timeout so a hung backend only fails its own task
- Failure isolation: any error inside a task is reported as that task's
  failure and never aborts the rest of the batch
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field

from traceval.models import LlmConfig, ParseTier, Score
from traceval.parser import parse_evaluation_response
from traceval.prompts import build_judge_messages
from traceval.providers import BaseProvider, ChatOptions, create_provider_from_config
from traceval.store import InMemoryStore
from traceval.utils import Timer, generate_id, get_config, sanitize_for_logging


class EvaluationError(Exception):
    """Raised when a judgement task cannot be carried out."""
    pass


class EvalTask(BaseModel):
    """One evaluator applied to one trace."""
    trace_id: str
    trace_input: str = ""
    trace_output: str = ""
    evaluator_id: str
    evaluator_name: str
    prompt_template: str
    project_id: str
    eval_job_id: Optional[str] = None


class TaskResult(BaseModel):
    """Outcome of one judgement task."""
    trace_id: str
    evaluator_id: str
    success: bool
    score: Optional[float] = None
    reason: Optional[str] = None
    tier: Optional[ParseTier] = None
    score_id: Optional[str] = None
    error: Optional[str] = None


class BatchResult(BaseModel):
    """Outcome of a batch, with results in task order."""
    results: List[TaskResult] = Field(default_factory=list)
    success_count: int = 0
    failed_count: int = 0


ProviderFactory = Callable[[LlmConfig], BaseProvider]
ProgressCallback = Callable[[TaskResult], Awaitable[None]]


class EvaluationExecutor:
    """Runs judgement tasks against the configured LLM backends."""

    def __init__(
        self,
        store: InMemoryStore,
        provider_factory: Optional[ProviderFactory] = None,
        timeout: Optional[float] = None,
        concurrency: Optional[int] = None,
        provider_concurrency: Optional[Dict[str, int]] = None
    ):
        config = get_config()
        self.store = store
        self.timeout = timeout if timeout is not None else config["PROVIDER_TIMEOUT_SECONDS"]
        self.concurrency = concurrency or config["EVAL_CONCURRENCY"]
        self.provider_concurrency = dict(
            provider_concurrency if provider_concurrency is not None else config["PROVIDER_CONCURRENCY"]
        )
        self.chat_options = ChatOptions(
            temperature=config["EVAL_TEMPERATURE"],
            max_tokens=config["EVAL_MAX_TOKENS"]
        )
        self.provider_factory = provider_factory or self._default_provider_factory
        self._semaphores: Dict[str, asyncio.Semaphore] = {}

        logger.info("Evaluation executor initialized",
                    timeout_seconds=self.timeout,
                    concurrency=self.concurrency,
                    provider_concurrency=self.provider_concurrency)

    def _default_provider_factory(self, llm_config: LlmConfig) -> BaseProvider:
        return create_provider_from_config(llm_config, timeout=self.timeout)

    def _semaphore_for(self, provider: str) -> asyncio.Semaphore:
        key = str(provider).lower()
        if key not in self._semaphores:
            limit = self.provider_concurrency.get(key, self.concurrency)
            self._semaphores[key] = asyncio.Semaphore(limit)
        return self._semaphores[key]

    async def execute_task(self, task: EvalTask, llm_config_id: str) -> TaskResult:
        """
        Execute one judgement task.

        Args:
            task: Trace and evaluator to combine
            llm_config_id: LLM config used as the judge

        Returns:
            TaskResult: Success with score details, or failure with the error
        """
        try:
            llm_config = await self.store.get_llm_config(llm_config_id)
            if llm_config is None:
                raise EvaluationError(f"LLM config not found: {llm_config_id}")

            messages = build_judge_messages(task.prompt_template, task.trace_input, task.trace_output)

            async with self._semaphore_for(llm_config.provider):
                with Timer("judge_call"):
                    async with self.provider_factory(llm_config) as provider:
                        chat_result = await asyncio.wait_for(
                            provider.chat(messages, self.chat_options),
                            timeout=self.timeout
                        )

            parsed = parse_evaluation_response(chat_result.content)
            if parsed.tier != ParseTier.EXACT:
                logger.warning("Judge response parsed with fallback",
                               tier=parsed.tier.value,
                               trace_id=task.trace_id,
                               evaluator_id=task.evaluator_id,
                               raw_response=sanitize_for_logging(chat_result.content))

            score = Score(
                id=generate_id("score"),
                trace_id=task.trace_id,
                project_id=task.project_id,
                evaluator_id=task.evaluator_id,
                evaluator_name=task.evaluator_name,
                eval_job_id=task.eval_job_id,
                score=parsed.score,
                reason=parsed.reason,
                parse_tier=parsed.tier,
            )
            await self.store.add_score(score)

            return TaskResult(
                trace_id=task.trace_id,
                evaluator_id=task.evaluator_id,
                success=True,
                score=parsed.score,
                reason=parsed.reason,
                tier=parsed.tier,
                score_id=score.id,
            )

        except asyncio.TimeoutError:
            error = f"Judge call timed out after {self.timeout}s"
            logger.error("Evaluation task timed out",
                         trace_id=task.trace_id,
                         evaluator_id=task.evaluator_id,
                         timeout_seconds=self.timeout)
            return TaskResult(trace_id=task.trace_id, evaluator_id=task.evaluator_id,
                              success=False, error=error)
        except Exception as e:
            logger.error("Evaluation task failed",
                         trace_id=task.trace_id,
                         evaluator_id=task.evaluator_id,
                         error=str(e))
            return TaskResult(trace_id=task.trace_id, evaluator_id=task.evaluator_id,
                              success=False, error=str(e))

    async def execute_batch(
        self,
        tasks: List[EvalTask],
        llm_config_id: str,
        on_progress: Optional[ProgressCallback] = None
    ) -> BatchResult:
        """
        Execute a batch of judgement tasks concurrently.

        Args:
            tasks: Tasks to run
            llm_config_id: LLM config used as the judge for every task
            on_progress: Optional coroutine awaited with each task's result

        Returns:
            BatchResult: Per-task results in task order plus counts
        """

        async def run(task: EvalTask) -> TaskResult:
            result = await self.execute_task(task, llm_config_id)
            if on_progress is not None:
                try:
                    await on_progress(result)
                except Exception as e:
                    logger.warning("Progress callback failed",
                                   trace_id=result.trace_id,
                                   evaluator_id=result.evaluator_id,
                                   error=str(e))
            return result

        with Timer("evaluation_batch"):
            results = await asyncio.gather(*(run(task) for task in tasks))

        success_count = sum(1 for r in results if r.success)
        batch = BatchResult(
            results=list(results),
            success_count=success_count,
            failed_count=len(results) - success_count
        )

        logger.info("Evaluation batch finished",
                    task_count=len(tasks),
                    success_count=batch.success_count,
                    failed_count=batch.failed_count)
        return batch


# Export key classes
__all__ = [
    'EvaluationError',
    'EvalTask',
    'TaskResult',
    'BatchResult',
    'EvaluationExecutor',
]
