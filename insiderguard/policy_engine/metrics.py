# -*- coding: utf-8 -*-
"""
Prometheus Metrics - Policy Resolution & Execution Engine

Metrics:
    1.  ig_policy_engine_evaluations_total (Counter)
    2.  ig_policy_engine_evaluation_duration_seconds (Histogram)
    3.  ig_policy_engine_policy_matches_total (Counter)
    4.  ig_policy_engine_resolution_degraded_total (Counter)
    5.  ig_policy_engine_cache_hits_total (Counter)
    6.  ig_policy_engine_cache_misses_total (Counter)
    7.  ig_policy_engine_cache_invalidations_total (Counter)
    8.  ig_policy_engine_condition_errors_total (Counter)
    9.  ig_policy_engine_policy_mutations_total (Counter)
    10. ig_policy_engine_executions_scheduled_total (Counter)
    11. ig_policy_engine_executions_completed_total (Counter)
    12. ig_policy_engine_execution_duration_seconds (Histogram)
    13. ig_policy_engine_policies_total (Gauge)
    14. ig_policy_engine_ledger_entries_total (Gauge)
"""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Metric definitions
# ---------------------------------------------------------------------------

# 1. Evaluations by outcome
policy_engine_evaluations_total = Counter(
    "ig_policy_engine_evaluations_total",
    "Total events evaluated against resolved policies",
    labelnames=["result"],
)

# 2. Evaluation duration
policy_engine_evaluation_duration_seconds = Histogram(
    "ig_policy_engine_evaluation_duration_seconds",
    "End-to-end event evaluation duration in seconds",
    buckets=(0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)

# 3. Matched policies by scope level
policy_engine_policy_matches_total = Counter(
    "ig_policy_engine_policy_matches_total",
    "Total policies whose conditions matched an event",
    labelnames=["policy_level"],
)

# 4. Fail-closed resolutions
policy_engine_resolution_degraded_total = Counter(
    "ig_policy_engine_resolution_degraded_total",
    "Resolutions degraded to global policies after directory failure",
)

# 5. Cache hits
policy_engine_cache_hits_total = Counter(
    "ig_policy_engine_cache_hits_total",
    "Total resolved-policy cache hits",
)

# 6. Cache misses
policy_engine_cache_misses_total = Counter(
    "ig_policy_engine_cache_misses_total",
    "Total resolved-policy cache misses",
)

# 7. Invalidations by scope level
policy_engine_cache_invalidations_total = Counter(
    "ig_policy_engine_cache_invalidations_total",
    "Total cache invalidations by scope level",
    labelnames=["scope_level"],
)

# 8. Condition evaluation errors
policy_engine_condition_errors_total = Counter(
    "ig_policy_engine_condition_errors_total",
    "Conditions evaluated false due to operator/type mismatch",
    labelnames=["condition_type"],
)

# 9. Store mutations
policy_engine_policy_mutations_total = Counter(
    "ig_policy_engine_policy_mutations_total",
    "Total policy store mutations",
    labelnames=["entity_type", "event_type"],
)

# 10. Scheduled executions
policy_engine_executions_scheduled_total = Counter(
    "ig_policy_engine_executions_scheduled_total",
    "Total execution records created",
    labelnames=["action_type"],
)

# 11. Completed executions by terminal status
policy_engine_executions_completed_total = Counter(
    "ig_policy_engine_executions_completed_total",
    "Total execution records reaching a terminal status",
    labelnames=["action_type", "status"],
)

# 12. Handler duration
policy_engine_execution_duration_seconds = Histogram(
    "ig_policy_engine_execution_duration_seconds",
    "Action handler duration in seconds",
    labelnames=["action_type"],
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 120.0, 300.0),
)

# 13. Policies gauge
policy_engine_policies_total = Gauge(
    "ig_policy_engine_policies_total",
    "Current number of stored policies",
)

# 14. Ledger gauge
policy_engine_ledger_entries_total = Gauge(
    "ig_policy_engine_ledger_entries_total",
    "Current number of ledger entries",
)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def record_evaluation(matched: bool, duration_seconds: float) -> None:
    """Record one event evaluation.

    Args:
        matched: Whether at least one policy matched.
        duration_seconds: Evaluation duration in seconds.
    """
    result = "matched" if matched else "unmatched"
    policy_engine_evaluations_total.labels(result=result).inc()
    policy_engine_evaluation_duration_seconds.observe(duration_seconds)


def record_policy_match(policy_level: str) -> None:
    """Record a matched policy by its scope level."""
    policy_engine_policy_matches_total.labels(policy_level=policy_level).inc()


def record_resolution_degraded() -> None:
    """Record a fail-closed resolution."""
    policy_engine_resolution_degraded_total.inc()


def record_cache_hit() -> None:
    """Record a resolved-policy cache hit."""
    policy_engine_cache_hits_total.inc()


def record_cache_miss() -> None:
    """Record a resolved-policy cache miss."""
    policy_engine_cache_misses_total.inc()


def record_cache_invalidation(scope_level: str, count: int = 1) -> None:
    """Record dropped cache entries.

    Args:
        scope_level: Scope level of the mutation (global/group/user/subject).
        count: Number of entries dropped.
    """
    if count <= 0:
        return
    policy_engine_cache_invalidations_total.labels(scope_level=scope_level).inc(count)


def record_condition_error(condition_type: str) -> None:
    """Record a condition that failed to evaluate."""
    policy_engine_condition_errors_total.labels(condition_type=condition_type).inc()


def record_mutation(entity_type: str, event_type: str) -> None:
    """Record a policy store mutation."""
    policy_engine_policy_mutations_total.labels(
        entity_type=entity_type, event_type=event_type,
    ).inc()


def record_execution_scheduled(action_type: str) -> None:
    """Record a created execution record."""
    policy_engine_executions_scheduled_total.labels(action_type=action_type).inc()


def record_execution_completed(
    action_type: str,
    status: str,
    duration_seconds: float = 0.0,
) -> None:
    """Record a terminal execution status.

    Args:
        action_type: Action type of the record.
        status: Terminal status (success/failed/skipped).
        duration_seconds: Handler duration; zero when no handler ran.
    """
    policy_engine_executions_completed_total.labels(
        action_type=action_type, status=status,
    ).inc()
    if duration_seconds > 0:
        policy_engine_execution_duration_seconds.labels(
            action_type=action_type,
        ).observe(duration_seconds)


def update_policies_count(count: int) -> None:
    """Set the policies gauge."""
    policy_engine_policies_total.set(count)


def update_ledger_entries_count(count: int) -> None:
    """Set the ledger entries gauge."""
    policy_engine_ledger_entries_total.set(count)


__all__ = [
    # Metric objects
    "policy_engine_evaluations_total",
    "policy_engine_evaluation_duration_seconds",
    "policy_engine_policy_matches_total",
    "policy_engine_resolution_degraded_total",
    "policy_engine_cache_hits_total",
    "policy_engine_cache_misses_total",
    "policy_engine_cache_invalidations_total",
    "policy_engine_condition_errors_total",
    "policy_engine_policy_mutations_total",
    "policy_engine_executions_scheduled_total",
    "policy_engine_executions_completed_total",
    "policy_engine_execution_duration_seconds",
    "policy_engine_policies_total",
    "policy_engine_ledger_entries_total",
    # Helper functions
    "record_evaluation",
    "record_policy_match",
    "record_resolution_degraded",
    "record_cache_hit",
    "record_cache_miss",
    "record_cache_invalidation",
    "record_condition_error",
    "record_mutation",
    "record_execution_scheduled",
    "record_execution_completed",
    "update_policies_count",
    "update_ledger_entries_count",
]
