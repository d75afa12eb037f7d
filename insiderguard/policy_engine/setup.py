# -*- coding: utf-8 -*-
"""
Policy Engine Service Setup

Provides ``configure_policy_engine(app)`` which wires up the policy
resolution and execution engine (store, ledger, cache, resolver,
condition evaluator, scheduler, executor) and mounts the REST API.

Also exposes ``get_policy_engine(app)`` for programmatic access and the
``PolicyEngineService`` facade class.

The ``evaluate()`` method orchestrates the event pipeline:
    1. Resolve the subject's effective policies (cache-backed, fail-closed)
    2. Filter them by their trigger conditions
    3. Schedule one execution record per enabled action
    4. Record metrics

Usage:
    >>> from fastapi import FastAPI
    >>> from insiderguard.policy_engine.setup import configure_policy_engine
    >>> app = FastAPI()
    >>> configure_policy_engine(app)
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from insiderguard.db import Database
from insiderguard.exceptions import ValidationError
from insiderguard.policy_engine.cache import CacheInvalidator, ResolvedPolicyCache
from insiderguard.policy_engine.condition_evaluator import ConditionEvaluator
from insiderguard.policy_engine.config import PolicyEngineConfig, get_config
from insiderguard.policy_engine.directory import DirectoryLookup, InMemoryDirectory
from insiderguard.policy_engine.executor import ActionExecutor
from insiderguard.policy_engine.handlers import HandlerRegistry, register_logging_handlers
from insiderguard.policy_engine.ledger import AuditLedger
from insiderguard.policy_engine.metrics import (
    record_evaluation,
    record_policy_match,
    update_ledger_entries_count,
    update_policies_count,
)
from insiderguard.policy_engine.models import (
    EvaluationResult,
    ExecutionRecord,
    Policy,
    SecurityEvent,
    _utcnow,
)
from insiderguard.policy_engine.policy_store import PolicyStore
from insiderguard.policy_engine.resolver import PolicyResolver
from insiderguard.policy_engine.scheduler import ActionScheduler

logger = logging.getLogger(__name__)


# ===================================================================
# PolicyEngineService facade
# ===================================================================

_singleton_lock = threading.Lock()
_singleton_instance: Optional["PolicyEngineService"] = None


class PolicyEngineService:
    """Unified facade over the policy resolution and execution engine.

    Attributes:
        database: Database holding policies, execution records and ledger.
        ledger: AuditLedger instance.
        cache: ResolvedPolicyCache instance.
        invalidator: CacheInvalidator instance.
        store: PolicyStore instance.
        directory: DirectoryLookup used by the resolver.
        resolver: PolicyResolver instance.
        evaluator: ConditionEvaluator instance.
        registry: HandlerRegistry instance.
        scheduler: ActionScheduler instance.
        executor: ActionExecutor instance.
        config: PolicyEngineConfig instance.

    Example:
        >>> service = PolicyEngineService()
        >>> service.registry.register("email_alert", send_email)
        >>> result = service.evaluate("emp-42", event)
        >>> print(result.matched_policy_ids)
    """

    def __init__(
        self,
        config: Optional[PolicyEngineConfig] = None,
        directory: Optional[DirectoryLookup] = None,
        registry: Optional[HandlerRegistry] = None,
        database: Optional[Database] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize the policy engine facade.

        Args:
            config: Optional config. Uses global config if None.
            directory: Directory lookup. An empty InMemoryDirectory if None.
            registry: Handler registry. A new one if None.
            database: Optional database. Built from config if None.
            clock: Optional clock returning naive UTC datetimes.
        """
        self.config = config or get_config()
        self._clock = clock or _utcnow

        if database is None:
            database = Database(self.config.resolved_database_url())
            database.init_db()
        self.database = database

        self.ledger = AuditLedger(self.database, clock=self._clock)
        self.cache = ResolvedPolicyCache(
            ttl_seconds=self.config.cache_ttl_seconds,
            enabled=self.config.cache_enabled,
        )
        self.invalidator = CacheInvalidator(self.cache)
        self.store = PolicyStore(
            self.database, self.ledger, self.invalidator,
            config=self.config, clock=self._clock,
        )

        self.directory = directory if directory is not None else InMemoryDirectory()
        if isinstance(self.directory, InMemoryDirectory):
            self.directory.add_listener(self.invalidator.invalidate_subject)

        self.resolver = PolicyResolver(
            self.store, self.directory, self.cache, self.invalidator,
            clock=self._clock,
        )
        self.evaluator = ConditionEvaluator(self.config)

        self.registry = registry if registry is not None else HandlerRegistry()
        if self.config.log_only_handlers:
            register_logging_handlers(self.registry)

        self.scheduler = ActionScheduler(
            self.database, self.ledger, self.store, clock=self._clock,
        )
        self.executor = ActionExecutor(
            self.database, self.ledger, self.registry,
            config=self.config, clock=self._clock,
        )

        # Internal metrics
        self._total_evaluations = 0
        self._matched_evaluations = 0
        self._degraded_evaluations = 0
        self._scheduled_records = 0
        self._counter_lock = threading.Lock()

        self._started = False
        logger.info("PolicyEngineService facade created")

    # ------------------------------------------------------------------
    # Event evaluation
    # ------------------------------------------------------------------

    def evaluate(
        self,
        subject_id: str,
        event: Union[SecurityEvent, Dict[str, Any]],
    ) -> EvaluationResult:
        """Evaluate one event for one subject and schedule triggered actions.

        Args:
            subject_id: Subject the event concerns.
            event: SecurityEvent (or its dict form; ``subject_id`` may be
                omitted from the dict).

        Returns:
            EvaluationResult with matched policies and created records.

        Raises:
            ValidationError: If the event is malformed or names another
                subject.
        """
        start = time.perf_counter()
        event = self._coerce_event(subject_id, event)

        resolution = self.resolver.resolve_detailed(subject_id)
        matched = self.evaluator.filter_matching(resolution.policies, event)
        record_ids = self.scheduler.schedule(
            matched, event_id=event.event_id, subject_id=subject_id,
        )

        elapsed = time.perf_counter() - start
        for policy in matched:
            record_policy_match(policy.level.value)
        record_evaluation(bool(matched), elapsed)
        with self._counter_lock:
            self._total_evaluations += 1
            self._scheduled_records += len(record_ids)
            if matched:
                self._matched_evaluations += 1
            if resolution.degraded:
                self._degraded_evaluations += 1

        logger.info(
            "Event %s for %s: %d resolved, %d matched, %d scheduled%s",
            event.event_id, subject_id, len(resolution.policies), len(matched),
            len(record_ids), " (degraded)" if resolution.degraded else "",
        )
        return EvaluationResult(
            event_id=event.event_id,
            subject_id=subject_id,
            matched_policy_ids=[p.id for p in matched],
            created_execution_record_ids=record_ids,
            resolution_degraded=resolution.degraded,
            evaluated_at=self._clock(),
            evaluation_time_ms=round(elapsed * 1000, 3),
        )

    def get_effective_policies(self, subject_id: str) -> List[Policy]:
        """Resolved, priority-ordered policies applicable to a subject."""
        return self.resolver.resolve(subject_id)

    # ------------------------------------------------------------------
    # Execution control
    # ------------------------------------------------------------------

    def trigger_policy(
        self,
        policy_id: int,
        subject_id: str,
        actor: str,
        event_id: Optional[str] = None,
    ) -> List[int]:
        """Manually schedule a policy's actions for a subject."""
        return self.scheduler.trigger_policy(
            policy_id, subject_id, actor=actor, event_id=event_id,
        )

    def retry_execution(self, record_id: int, actor: str) -> ExecutionRecord:
        """Schedule a new attempt of a failed or skipped record."""
        return self.scheduler.retry(record_id, actor=actor)

    def run_pending(self, now: Optional[datetime] = None) -> List[ExecutionRecord]:
        """Run one synchronous executor tick."""
        return self.executor.run_once(now)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def startup(self, start_executor: bool = True) -> None:
        """Start the policy engine service.

        Recovers records left claimed by a previous process and, unless
        disabled, starts the background executor. Safe to call multiple
        times.
        """
        if self._started:
            logger.debug("PolicyEngineService already started; skipping")
            return

        logger.info("PolicyEngineService starting up...")
        self.executor.recover_stale()
        if start_executor:
            self.executor.start()
        update_policies_count(self.store.count)
        update_ledger_entries_count(self.ledger.count)
        self._started = True
        logger.info("PolicyEngineService startup complete")

    def shutdown(self) -> None:
        """Shutdown the service: stop the executor and drop the cache."""
        if not self._started:
            return

        self.executor.stop()
        self.cache.clear()
        self._started = False
        logger.info("PolicyEngineService shut down")

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        """Get policy engine service metrics summary.

        Returns:
            Dictionary with service metric summaries.
        """
        ledger_entries = self.ledger.count
        policies = self.store.count
        update_ledger_entries_count(ledger_entries)
        update_policies_count(policies)
        total = self._total_evaluations
        return {
            "started": self._started,
            "executor_running": self.executor.running,
            "total_evaluations": total,
            "matched_evaluations": self._matched_evaluations,
            "degraded_evaluations": self._degraded_evaluations,
            "match_rate": (
                self._matched_evaluations / total * 100 if total > 0 else 0
            ),
            "scheduled_records": self._scheduled_records,
            "executions_by_status": self.scheduler.status_counts(),
            "policies_stored": policies,
            "ledger_entries": ledger_entries,
            "cache_size": len(self.cache),
            "cache_enabled": self.config.cache_enabled,
            "registered_handlers": self.registry.action_types(),
        }

    def clear_cache(self) -> None:
        """Clear the resolved-policy cache."""
        self.invalidator.clear()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce_event(
        subject_id: str,
        event: Union[SecurityEvent, Dict[str, Any]],
    ) -> SecurityEvent:
        if isinstance(event, dict):
            payload = dict(event)
            payload.setdefault("subject_id", subject_id)
            try:
                event = SecurityEvent.model_validate(payload)
            except PydanticValidationError as exc:
                raise ValidationError(
                    f"Invalid security event: {exc}",
                    context={"subject_id": subject_id},
                ) from exc
        if event.subject_id != subject_id:
            raise ValidationError(
                f"Event {event.event_id} concerns subject {event.subject_id}, "
                f"not {subject_id}",
                invalid_fields={"subject_id": "does not match the evaluated subject"},
            )
        return event


# ===================================================================
# Thread-safe singleton access
# ===================================================================


def _get_singleton() -> PolicyEngineService:
    """Get or create the singleton PolicyEngineService instance."""
    global _singleton_instance
    if _singleton_instance is None:
        with _singleton_lock:
            if _singleton_instance is None:
                _singleton_instance = PolicyEngineService()
    return _singleton_instance


def reset_policy_engine() -> None:
    """Shut down and drop the singleton (useful for testing)."""
    global _singleton_instance
    with _singleton_lock:
        service, _singleton_instance = _singleton_instance, None
    if service is not None:
        service.shutdown()


# ===================================================================
# FastAPI integration
# ===================================================================


def configure_policy_engine(
    app: Any,
    config: Optional[PolicyEngineConfig] = None,
    start_executor: bool = True,
    **service_kwargs: Any,
) -> PolicyEngineService:
    """Configure the policy engine on a FastAPI application.

    Creates the PolicyEngineService, stores it in app.state, mounts the
    policy engine API router, and starts the service.

    Args:
        app: FastAPI application instance.
        config: Optional policy engine config.
        start_executor: Start the background executor loop.
        **service_kwargs: Forwarded to PolicyEngineService (directory,
            registry, database, clock).

    Returns:
        PolicyEngineService instance.
    """
    global _singleton_instance

    service = PolicyEngineService(config=config, **service_kwargs)

    with _singleton_lock:
        _singleton_instance = service

    app.state.policy_engine_service = service
    app.include_router(get_router())
    logger.info("Policy engine API router mounted")

    service.startup(start_executor=start_executor)

    logger.info("Policy engine service configured on app")
    return service


def get_policy_engine(app: Any = None) -> PolicyEngineService:
    """Get the PolicyEngineService from app state (or the singleton).

    Args:
        app: FastAPI application instance; None returns the singleton.

    Raises:
        RuntimeError: If the app has no policy engine configured.
    """
    if app is None:
        return _get_singleton()
    service = getattr(app.state, "policy_engine_service", None)
    if service is None:
        raise RuntimeError(
            "Policy engine service not configured. "
            "Call configure_policy_engine(app) first."
        )
    return service


def get_router() -> Any:
    """Get the policy engine API router."""
    from insiderguard.policy_engine.api.router import router
    return router


__all__ = [
    "PolicyEngineService",
    "configure_policy_engine",
    "get_policy_engine",
    "reset_policy_engine",
    "get_router",
]
