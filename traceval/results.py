"""
Score aggregation for dashboards.

Read-only views over stored scores: per-evaluator summaries of a job,
scores of a single trace, a job's scores grouped by trace and project-wide
statistics over a lookback window.
"""

from collections import OrderedDict
from datetime import timedelta
from typing import Any, Dict, List

import numpy as np
from loguru import logger

from traceval.models import Score, TimeRange
from traceval.store import InMemoryStore
from traceval.utils import get_utc_datetime


# Upper bounds (exclusive) of the latency histogram, in ms
LATENCY_BUCKETS = [(100, "0-100"), (500, "100-500"), (1000, "500-1000")]
OPEN_LATENCY_BUCKET = "1000+"


def _average(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _latency_percentiles(latencies: List[float]) -> Dict[str, int]:
    if not latencies:
        return {"p50": 0, "p90": 0, "p99": 0}
    p50, p90, p99 = np.percentile(latencies, [50, 90, 99])
    return {"p50": round(p50), "p90": round(p90), "p99": round(p99)}


def _latency_distribution(latencies: List[float]) -> List[Dict[str, Any]]:
    """Count latencies per bucket, omitting empty buckets."""
    counts: Dict[str, int] = {}
    for latency in latencies:
        bucket = next((label for bound, label in LATENCY_BUCKETS if latency < bound), OPEN_LATENCY_BUCKET)
        counts[bucket] = counts.get(bucket, 0) + 1

    order = [label for _, label in LATENCY_BUCKETS] + [OPEN_LATENCY_BUCKET]
    return [{"range": label, "count": counts[label]} for label in order if label in counts]


def _score_row(score: Score) -> Dict[str, Any]:
    return {
        "id": score.id,
        "traceId": score.trace_id,
        "evaluatorId": score.evaluator_id,
        "evaluatorName": score.evaluator_name,
        "score": score.score,
        "reason": score.reason,
        "parseTier": score.parse_tier.value,
        "source": score.source,
        "createdAt": score.created_at.isoformat(),
    }


class ResultsAggregator:
    """Builds score summaries from the store."""

    def __init__(self, store: InMemoryStore):
        self.store = store

    async def job_summary(self, job_id: str) -> Dict[str, Any]:
        """
        Summarize a job's scores per evaluator.

        Returns:
            Dict with ``jobId``, ``totalCount`` and one ``evaluators`` entry per
            evaluator holding its average score, score count and the number of
            distinct traces it judged
        """
        scores = await self.store.scores_for_job(job_id)

        grouped: "OrderedDict[str, List[Score]]" = OrderedDict()
        for score in scores:
            grouped.setdefault(score.evaluator_id, []).append(score)

        evaluators = [
            {
                "evaluatorId": evaluator_id,
                "name": rows[0].evaluator_name,
                "avgScore": _average([r.score for r in rows]),
                "count": len(rows),
                "traceCount": len({r.trace_id for r in rows}),
            }
            for evaluator_id, rows in grouped.items()
        ]
        evaluators.sort(key=lambda row: row["name"])

        return {
            "jobId": job_id,
            "evaluators": evaluators,
            "totalCount": len(scores),
        }

    async def trace_scores(self, trace_id: str) -> Dict[str, Any]:
        """All scores of one trace, ordered by evaluator name, with their average."""
        scores = await self.store.scores_for_trace(trace_id)
        scores.sort(key=lambda s: (s.evaluator_name, s.created_at))
        return {
            "traceId": trace_id,
            "results": [_score_row(s) for s in scores],
            "avgScore": _average([s.score for s in scores]),
        }

    async def job_results_by_trace(self, job_id: str) -> List[Dict[str, Any]]:
        """A job's scores grouped by trace, in first-scored order."""
        scores = await self.store.scores_for_job(job_id)

        grouped: "OrderedDict[str, List[Score]]" = OrderedDict()
        for score in scores:
            grouped.setdefault(score.trace_id, []).append(score)

        return [
            {
                "traceId": trace_id,
                "scores": [_score_row(s) for s in rows],
                "avgScore": _average([s.score for s in rows]),
            }
            for trace_id, rows in grouped.items()
        ]

    async def project_statistics(self, project_id: str, time_range: TimeRange = TimeRange.WEEK) -> Dict[str, Any]:
        """
        Dashboard statistics of one project over a lookback window.

        Traces are selected by their timestamp and scores by their creation
        time. A missing trace latency counts as 0 ms. The score sections are
        None when the window holds no scores.

        Args:
            project_id: Project to report on
            time_range: Lookback window

        Returns:
            Dict with ``overview``, ``scoreStats``, ``latencyPercentiles``,
            ``scoreTrend``, ``dimensionScores`` and ``latencyDistribution``
        """
        since = get_utc_datetime() - timedelta(days=time_range.days)
        traces = await self.store.traces_since(project_id, since)
        scores = await self.store.scores_since(project_id, since)

        latencies = [t.latency_ms or 0.0 for t in traces]
        values = [s.score for s in scores]

        statistics: Dict[str, Any] = {
            "projectId": project_id,
            "timeRange": time_range.value,
            "overview": {
                "totalTraces": len(traces),
                "totalEvaluations": len(scores),
                "totalTokens": sum(t.total_tokens or 0 for t in traces),
                "avgLatencyMs": _average(latencies),
            },
            "scoreStats": None,
            "latencyPercentiles": _latency_percentiles(latencies),
            "scoreTrend": None,
            "dimensionScores": None,
            "latencyDistribution": _latency_distribution(latencies),
        }

        if scores:
            statistics["scoreStats"] = {
                "avgScore": _average(values),
                "minScore": min(values),
                "maxScore": max(values),
            }

            by_date: Dict[str, List[float]] = {}
            by_evaluator: Dict[str, List[float]] = {}
            for score in scores:
                by_date.setdefault(score.created_at.date().isoformat(), []).append(score.score)
                by_evaluator.setdefault(score.evaluator_name, []).append(score.score)

            statistics["scoreTrend"] = [
                {"date": date, "avgScore": _average(rows)} for date, rows in sorted(by_date.items())
            ]
            dimensions = [{"name": name, "avgScore": _average(rows)} for name, rows in by_evaluator.items()]
            dimensions.sort(key=lambda row: row["avgScore"], reverse=True)
            statistics["dimensionScores"] = dimensions

        logger.debug("Project statistics computed",
                     project_id=project_id,
                     time_range=time_range.value,
                     trace_count=len(traces),
                     score_count=len(scores))
        return statistics


__all__ = ['ResultsAggregator', 'LATENCY_BUCKETS']
