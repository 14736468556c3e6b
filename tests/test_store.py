"""Tests for the in-memory store."""

import asyncio
from datetime import timedelta

import pytest

from conftest import create_test_evaluator, create_test_llm_config, create_test_trace
from traceval.models import EvalJob, EvalJobStatus, Score, SourceType
from traceval.prompts import preset_evaluators
from traceval.store import JobStateError, PresetEvaluatorError, StoreError
from traceval.utils import get_utc_datetime


def _running_job(job_id: str = "job-1", total: int = 4) -> EvalJob:
    return EvalJob(
        id=job_id,
        project_id="default",
        name="test job",
        source_type=SourceType.TRACES,
        llm_config_id="llm-1",
        status=EvalJobStatus.RUNNING,
        total_count=total,
    )


@pytest.mark.asyncio
async def test_returned_traces_are_copies(store):
    await store.create_trace(create_test_trace("t1"))
    trace = await store.get_trace("t1")
    trace.input = "mutated"
    assert (await store.get_trace("t1")).input == "What is 2+2?"


@pytest.mark.asyncio
async def test_create_existing_trace_fails(store):
    await store.create_trace(create_test_trace("t1"))
    with pytest.raises(StoreError):
        await store.create_trace(create_test_trace("t1"))


@pytest.mark.asyncio
async def test_presets_cannot_be_modified_or_deleted(store):
    await store.seed_presets(preset_evaluators())
    preset = (await store.get_evaluators(["preset-relevance"]))[0]

    preset.name = "Changed"
    with pytest.raises(PresetEvaluatorError):
        await store.update_evaluator(preset)
    with pytest.raises(PresetEvaluatorError):
        await store.delete_evaluator("preset-relevance")

    assert (await store.get_evaluators(["preset-relevance"]))[0].name == "Relevance"


@pytest.mark.asyncio
async def test_custom_evaluators_can_be_updated_and_deleted(store):
    await store.add_evaluator(create_test_evaluator("custom"))
    evaluator = (await store.get_evaluators(["custom"]))[0]
    evaluator.description = "updated"
    await store.update_evaluator(evaluator)
    assert (await store.get_evaluators(["custom"]))[0].description == "updated"
    assert await store.delete_evaluator("custom") is True
    assert await store.delete_evaluator("custom") is False


@pytest.mark.asyncio
async def test_get_evaluators_filters_inactive_and_unknown(store):
    await store.add_evaluator(create_test_evaluator("on"))
    await store.add_evaluator(create_test_evaluator("off", is_active=False))

    active = await store.get_evaluators(["off", "on", "missing"])
    assert [e.id for e in active] == ["on"]
    everything = await store.get_evaluators(["off", "on"], active_only=False)
    assert [e.id for e in everything] == ["off", "on"]


@pytest.mark.asyncio
async def test_seeding_presets_is_repeatable(store):
    await store.seed_presets(preset_evaluators())
    await store.seed_presets(preset_evaluators())
    evaluators = await store.list_evaluators()
    assert len([e for e in evaluators if e.is_preset]) == 8


@pytest.mark.asyncio
async def test_default_llm_config_is_unique_per_project(store):
    await store.add_llm_config(create_test_llm_config("a"))
    await store.add_llm_config(create_test_llm_config("b"))

    await store.set_default_llm_config("a")
    await store.set_default_llm_config("b")

    assert (await store.get_llm_config("a")).is_default is False
    assert (await store.get_default_llm_config("default")).id == "b"


@pytest.mark.asyncio
async def test_job_counts_increment_while_running(store):
    await store.create_job(_running_job())
    await asyncio.gather(*(store.increment_job_counts("job-1", completed=1) for _ in range(3)))
    job = await store.increment_job_counts("job-1", failed=1)
    assert job.completed_count == 3
    assert job.failed_count == 1
    assert job.progress == 75


@pytest.mark.asyncio
async def test_terminal_job_cannot_transition_again(store):
    await store.create_job(_running_job())
    finished = await store.finish_job("job-1", EvalJobStatus.COMPLETED, completed_count=4, failed_count=0)
    assert finished.completed_at is not None

    with pytest.raises(JobStateError):
        await store.finish_job("job-1", EvalJobStatus.FAILED, completed_count=0, failed_count=4)
    with pytest.raises(JobStateError):
        await store.increment_job_counts("job-1", completed=1)
    assert (await store.get_job("job-1")).status == EvalJobStatus.COMPLETED


@pytest.mark.asyncio
async def test_finish_job_requires_terminal_status(store):
    await store.create_job(_running_job())
    with pytest.raises(JobStateError):
        await store.finish_job("job-1", EvalJobStatus.RUNNING, completed_count=0, failed_count=0)


@pytest.mark.asyncio
async def test_scores_are_indexed_by_job_and_trace(store):
    for i, (trace_id, job_id) in enumerate([("t1", "job-1"), ("t1", None), ("t2", "job-1")]):
        await store.add_score(Score(
            id=f"s{i}", trace_id=trace_id, project_id="default", evaluator_id="e",
            evaluator_name="E", eval_job_id=job_id, score=5,
        ))

    assert {s.id for s in await store.scores_for_job("job-1")} == {"s0", "s2"}
    assert {s.id for s in await store.scores_for_trace("t1")} == {"s0", "s1"}
    assert await store.count_scores("default") == 3
    assert len(await store.list_scores("default", trace_id="t2")) == 1


@pytest.mark.asyncio
async def test_trace_lock_serializes_same_trace(store):
    order = []

    async def worker(name):
        async with store.trace_lock("t1"):
            order.append(f"{name}-start")
            await asyncio.sleep(0.01)
            order.append(f"{name}-end")

    await asyncio.gather(worker("a"), worker("b"))
    assert order in (
        ["a-start", "a-end", "b-start", "b-end"],
        ["b-start", "b-end", "a-start", "a-end"],
    )


@pytest.mark.asyncio
async def test_metrics_report_memory_usage(store):
    await store.create_trace(create_test_trace("t1"))
    metrics = await store.get_metrics()
    assert metrics.total_traces == 1
    assert metrics.memory_usage_mb > 0


@pytest.mark.asyncio
async def test_cleanup_drops_locks_of_idle_traces(store):
    await store.create_trace(create_test_trace("fresh"))
    async with store.trace_lock("fresh"):
        pass
    async with store.trace_lock("never-created"):
        pass

    assert await store.cleanup_stale_locks() == 1
    assert await store.cleanup_stale_locks(max_age=timedelta(0)) == 1


@pytest.mark.asyncio
async def test_finished_job_releases_its_lock(store):
    await store.create_job(_running_job())
    await store.increment_job_counts("job-1", completed=1)
    assert "job-1" in store._job_locks

    await store.finish_job("job-1", EvalJobStatus.COMPLETED, completed_count=4, failed_count=0)

    assert "job-1" not in store._job_locks


@pytest.mark.asyncio
async def test_cleanup_drops_job_locks_of_finished_jobs(store):
    await store.create_job(_running_job("running"))
    await store.increment_job_counts("running", completed=1)
    with pytest.raises(StoreError):
        await store.increment_job_counts("missing", completed=1)

    assert await store.cleanup_stale_locks() == 1
    assert list(store._job_locks) == ["running"]


@pytest.mark.asyncio
async def test_statistics_window_queries(store):
    old = create_test_trace("old").model_copy(update={"timestamp": get_utc_datetime() - timedelta(days=10)})
    await store.create_trace(old)
    await store.create_trace(create_test_trace("new"))
    await store.add_score(Score(id="s1", trace_id="new", project_id="default", evaluator_id="e",
                                evaluator_name="E", score=5))
    await store.add_score(Score(id="s2", trace_id="new", project_id="other", evaluator_id="e",
                                evaluator_name="E", score=5))

    since = get_utc_datetime() - timedelta(days=7)
    assert [t.id for t in await store.traces_since("default", since)] == ["new"]
    assert [s.id for s in await store.scores_since("default", since)] == ["s1"]
