"""Tests for project dashboard statistics."""

from datetime import timedelta

import pytest

from conftest import create_test_trace
from traceval.models import Score, TimeRange
from traceval.results import ResultsAggregator
from traceval.utils import get_utc_datetime


def _trace(trace_id, latency_ms=None, total_tokens=None, age=timedelta(0), project_id="default"):
    return create_test_trace(trace_id).model_copy(update={
        "latency_ms": latency_ms,
        "total_tokens": total_tokens,
        "timestamp": get_utc_datetime() - age,
        "project_id": project_id,
    })


def _score(score_id, value, evaluator_name="Relevance", age=timedelta(0), project_id="default"):
    return Score(
        id=score_id,
        trace_id="t1",
        project_id=project_id,
        evaluator_id=evaluator_name.lower(),
        evaluator_name=evaluator_name,
        score=value,
        created_at=get_utc_datetime() - age,
    )


@pytest.mark.asyncio
async def test_overview_and_latency_statistics(store):
    for trace in [
        _trace("t1", latency_ms=50, total_tokens=100),
        _trace("t2", latency_ms=200, total_tokens=20),
        _trace("t3", latency_ms=1500),
        _trace("t4"),
        _trace("stale", latency_ms=700, total_tokens=999, age=timedelta(days=8)),
        _trace("elsewhere", latency_ms=700, project_id="other"),
    ]:
        await store.create_trace(trace)

    stats = await ResultsAggregator(store).project_statistics("default", TimeRange.WEEK)

    assert stats["timeRange"] == "7d"
    assert stats["overview"] == {
        "totalTraces": 4,
        "totalEvaluations": 0,
        "totalTokens": 120,
        "avgLatencyMs": 437.5,
    }
    # Latencies 0, 50, 200 and 1500, linearly interpolated and rounded
    assert stats["latencyPercentiles"] == {"p50": 125, "p90": 1110, "p99": 1461}
    assert stats["latencyDistribution"] == [
        {"range": "0-100", "count": 2},
        {"range": "100-500", "count": 1},
        {"range": "1000+", "count": 1},
    ]
    assert stats["scoreStats"] is None
    assert stats["scoreTrend"] is None
    assert stats["dimensionScores"] is None


@pytest.mark.asyncio
async def test_score_statistics(store):
    for score in [
        _score("s1", 9, "Relevance"),
        _score("s2", 7, "Relevance"),
        _score("s3", 4, "Tone", age=timedelta(days=1)),
        _score("s4", 10, "Tone", age=timedelta(days=40)),
        _score("s5", 1, "Tone", project_id="other"),
    ]:
        await store.add_score(score)

    stats = await ResultsAggregator(store).project_statistics("default", TimeRange.WEEK)

    assert stats["overview"]["totalEvaluations"] == 3
    assert stats["scoreStats"] == {"avgScore": 20 / 3, "minScore": 4, "maxScore": 9}
    assert stats["dimensionScores"] == [
        {"name": "Relevance", "avgScore": 8},
        {"name": "Tone", "avgScore": 4},
    ]
    today = get_utc_datetime().date()
    assert stats["scoreTrend"] == [
        {"date": (today - timedelta(days=1)).isoformat(), "avgScore": 4},
        {"date": today.isoformat(), "avgScore": 8},
    ]

    quarter = await ResultsAggregator(store).project_statistics("default", TimeRange.QUARTER)
    assert quarter["overview"]["totalEvaluations"] == 4
    assert quarter["scoreStats"]["maxScore"] == 10


@pytest.mark.asyncio
async def test_empty_project_statistics(store):
    stats = await ResultsAggregator(store).project_statistics("default")

    assert stats["overview"] == {"totalTraces": 0, "totalEvaluations": 0, "totalTokens": 0, "avgLatencyMs": 0}
    assert stats["latencyPercentiles"] == {"p50": 0, "p90": 0, "p99": 0}
    assert stats["latencyDistribution"] == []


@pytest.mark.parametrize("time_range,days", [("1d", 1), ("7d", 7), ("30d", 30), ("90d", 90)])
def test_time_range_days(time_range, days):
    assert TimeRange(time_range).days == days
