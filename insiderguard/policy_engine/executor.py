# -*- coding: utf-8 -*-
"""
Action Executor

Runs due execution records through their action handlers.

Processing model:
    - Due records (pending, unclaimed, ``scheduled_at <= now``) are
      pulled in batches and grouped by (policy id, event id).
    - Each group is a sequential queue processed on a thread pool in
      ascending execution order. A record is not dispatched while a
      lower-order sibling of its group is still pending.
    - A record is claimed by compare-and-set on ``started_at`` so that
      two executors never run it twice.
    - Deleted or disabled actions and policies yield ``skipped``; a
      missing handler, a handler error or a timeout yields ``failed``.
    - Each handler call runs on its own daemon thread and the execution
      horizon is timed from the moment it starts. A hung handler keeps
      its thread but never holds up other records.
    - Terminal statuses are only written over ``pending``.

Example:
    >>> executor = ActionExecutor(database, ledger, registry)
    >>> executor.start()      # background polling loop
    >>> executor.run_once()   # or drive ticks synchronously
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from insiderguard.db import ActionRow, Database, ExecutionRow, PolicyRow
from insiderguard.exceptions import ExecutionError
from insiderguard.policy_engine.config import PolicyEngineConfig, get_config
from insiderguard.policy_engine.handlers import HandlerRegistry
from insiderguard.policy_engine.ledger import AuditLedger
from insiderguard.policy_engine.metrics import record_execution_completed
from insiderguard.policy_engine.models import (
    ActionDispatch,
    ExecutionRecord,
    ExecutionStatus,
    LedgerEntityType,
    STATUS_LEDGER_EVENTS,
    _utcnow,
)
from insiderguard.policy_engine.scheduler import record_from_row

logger = logging.getLogger(__name__)

QueueKey = Tuple[int, str]


def _jsonable(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Round-trip handler output through JSON so it can be stored."""
    return json.loads(json.dumps(details or {}, default=str))


class ActionExecutor:
    """Background worker pool executing scheduled actions.

    Attributes:
        _queue_pool: Runs one (policy, event) queue per task.
        _inflight: Queue keys currently being processed.
    """

    def __init__(
        self,
        database: Database,
        ledger: AuditLedger,
        registry: HandlerRegistry,
        config: Optional[PolicyEngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._db = database
        self._ledger = ledger
        self._registry = registry
        self._config = config or get_config()
        self._clock = clock or _utcnow

        self._lock = threading.Lock()
        self._inflight: Set[QueueKey] = set()
        self._active_records: Set[int] = set()
        self._queue_pool: Optional[ThreadPoolExecutor] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        logger.info(
            "ActionExecutor initialized: workers=%d, poll=%.1fs, horizon=%.0fs",
            self._config.executor_max_workers,
            self._config.executor_poll_interval_seconds,
            self._config.execution_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background polling loop (idempotent)."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name="ig-policy-executor", daemon=True,
        )
        self._thread.start()
        logger.info("ActionExecutor started")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the loop and release the queue pool.

        Records already dispatched finish; nothing new is dispatched.
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        with self._lock:
            queue_pool, self._queue_pool = self._queue_pool, None
        if queue_pool is not None:
            queue_pool.shutdown(wait=True)
        logger.info("ActionExecutor stopped")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.recover_stale()
                self.run_once()
            except Exception:
                logger.exception("Executor tick failed")
            self._stop_event.wait(self._config.executor_poll_interval_seconds)

    def _pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._queue_pool is None:
                self._queue_pool = ThreadPoolExecutor(
                    max_workers=self._config.executor_max_workers,
                    thread_name_prefix="ig-exec-queue",
                )
            return self._queue_pool

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def run_once(self, now: Optional[datetime] = None) -> List[ExecutionRecord]:
        """Process every currently due record and wait for completion.

        Args:
            now: Due-time cutoff (defaults to the executor clock).

        Returns:
            Records that reached a terminal status during this tick.
        """
        now = now or self._clock()
        due = self._due_records(now)
        if not due:
            return []

        groups: Dict[QueueKey, List[ExecutionRecord]] = defaultdict(list)
        for record in due:
            groups[record.queue_key].append(record)

        queue_pool = self._pool()
        futures = []
        with self._lock:
            for key, records in groups.items():
                if key in self._inflight:
                    continue
                self._inflight.add(key)
                futures.append(queue_pool.submit(self._run_group, key, records))

        finished: List[ExecutionRecord] = []
        for future in futures:
            finished.extend(future.result())
        logger.debug(
            "Executor tick: %d due, %d group(s), %d finished",
            len(due), len(futures), len(finished),
        )
        return finished

    def recover_stale(self, now: Optional[datetime] = None) -> List[int]:
        """Fail records claimed longer than the execution horizon ago.

        Covers executors that crashed between claim and completion.
        Records still being processed by this executor are left alone.

        Returns:
            Ids of the records marked failed.
        """
        now = now or self._clock()
        cutoff = now - timedelta(seconds=self._config.execution_timeout_seconds)
        with self._db.session() as session:
            stale_ids = [
                row_id for (row_id,) in session.query(ExecutionRow.id)
                .filter(
                    ExecutionRow.status == ExecutionStatus.PENDING.value,
                    ExecutionRow.started_at.isnot(None),
                    ExecutionRow.started_at <= cutoff,
                )
                .all()
            ]
        with self._lock:
            stale_ids = [i for i in stale_ids if i not in self._active_records]

        recovered = []
        for record_id in stale_ids:
            record = self._finish(
                record_id,
                ExecutionStatus.FAILED,
                error_detail="Execution not completed within the execution horizon",
                details={"recovered": True},
            )
            if record is not None:
                recovered.append(record_id)
        if recovered:
            logger.warning("Recovered %d stale execution record(s)", len(recovered))
        return recovered

    # ------------------------------------------------------------------
    # Queue processing
    # ------------------------------------------------------------------

    def _run_group(
        self,
        key: QueueKey,
        records: List[ExecutionRecord],
    ) -> List[ExecutionRecord]:
        finished: List[ExecutionRecord] = []
        try:
            for record in sorted(records, key=lambda r: (r.execution_order, r.id)):
                if self._has_pending_predecessor(record):
                    logger.debug(
                        "Record %d waits for lower-order siblings of %s",
                        record.id, key,
                    )
                    break
                outcome = self._process(record)
                if outcome is not None:
                    finished.append(outcome)
        finally:
            with self._lock:
                self._inflight.discard(key)
        return finished

    def _process(self, record: ExecutionRecord) -> Optional[ExecutionRecord]:
        if not self._claim(record.id):
            return None
        with self._lock:
            self._active_records.add(record.id)
        try:
            dispatch, skip_reason = self._build_dispatch(record)
            if dispatch is None:
                return self._finish(
                    record.id, ExecutionStatus.SKIPPED, error_detail=skip_reason,
                )

            handler = self._registry.get(dispatch.action_type)
            if handler is None:
                return self._finish(
                    record.id,
                    ExecutionStatus.FAILED,
                    error_detail=f"No handler registered for action type '{dispatch.action_type}'",
                )

            started = time.monotonic()
            try:
                result = self._invoke(handler, dispatch)
            except ExecutionError as exc:
                logger.warning(
                    "Action %s failed for record %d: %s",
                    dispatch.action_type, record.id, exc.message,
                )
                return self._finish(
                    record.id,
                    ExecutionStatus.FAILED,
                    error_detail=exc.message,
                    details=exc.context,
                    duration=time.monotonic() - started,
                )
            return self._finish(
                record.id,
                ExecutionStatus.SUCCESS,
                details=result,
                duration=time.monotonic() - started,
            )
        finally:
            with self._lock:
                self._active_records.discard(record.id)

    def _invoke(self, handler, dispatch: ActionDispatch) -> Dict[str, Any]:
        """Run a handler bounded by the execution horizon.

        The handler gets a dedicated daemon thread, so the horizon starts
        when the handler does. A handler that outlives it is abandoned.

        Raises:
            ExecutionError: On handler error or timeout.
        """
        timeout = self._config.execution_timeout_seconds
        outcome: Dict[str, Any] = {}

        def run() -> None:
            try:
                outcome["result"] = handler(dispatch)
            except Exception as exc:
                outcome["error"] = exc

        worker = threading.Thread(
            target=run,
            name=f"ig-exec-handler-{dispatch.execution_record_id}",
            daemon=True,
        )
        worker.start()
        worker.join(timeout)

        if worker.is_alive():
            logger.error(
                "Handler for record %d still running after %gs, abandoning thread %s",
                dispatch.execution_record_id, timeout, worker.name,
            )
            raise ExecutionError(
                f"Handler timed out after {timeout:g} seconds",
                execution_record_id=dispatch.execution_record_id,
                context={"timeout_seconds": timeout},
            )
        if "error" in outcome:
            exc = outcome["error"]
            raise ExecutionError(
                f"Handler raised {type(exc).__name__}: {exc}",
                execution_record_id=dispatch.execution_record_id,
                cause=exc,
            ) from exc

        result = outcome.get("result")
        if result is None:
            return {}
        if isinstance(result, dict):
            return result
        return {"result": str(result)}

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _due_records(self, now: datetime) -> List[ExecutionRecord]:
        with self._db.session() as session:
            rows = (
                session.query(ExecutionRow)
                .filter(
                    ExecutionRow.status == ExecutionStatus.PENDING.value,
                    ExecutionRow.started_at.is_(None),
                    ExecutionRow.scheduled_at <= now,
                )
                .order_by(ExecutionRow.scheduled_at.asc(), ExecutionRow.id.asc())
                .limit(self._config.executor_batch_size)
                .all()
            )
            return [record_from_row(r) for r in rows]

    def _has_pending_predecessor(self, record: ExecutionRecord) -> bool:
        with self._db.session() as session:
            return (
                session.query(ExecutionRow.id)
                .filter(
                    ExecutionRow.policy_id == record.policy_id,
                    ExecutionRow.event_id == record.event_id,
                    ExecutionRow.status == ExecutionStatus.PENDING.value,
                    ExecutionRow.execution_order < record.execution_order,
                    ExecutionRow.id != record.id,
                )
                .first()
            ) is not None

    def _claim(self, record_id: int) -> bool:
        with self._db.write_session() as session:
            claimed = (
                session.query(ExecutionRow)
                .filter(
                    ExecutionRow.id == record_id,
                    ExecutionRow.status == ExecutionStatus.PENDING.value,
                    ExecutionRow.started_at.is_(None),
                )
                .update({"started_at": self._clock()}, synchronize_session=False)
            )
        return claimed == 1

    def _build_dispatch(
        self,
        record: ExecutionRecord,
    ) -> Tuple[Optional[ActionDispatch], Optional[str]]:
        """Dispatch for a claimed record, or the reason to skip it."""
        with self._db.session() as session:
            policy = session.get(PolicyRow, record.policy_id)
            if policy is None:
                return None, "Policy was deleted before dispatch"
            if not policy.is_active:
                return None, "Policy was deactivated before dispatch"
            action = session.get(ActionRow, record.action_id)
            if action is None or action.policy_id != record.policy_id:
                return None, "Action was deleted before dispatch"
            if not action.is_enabled:
                return None, "Action was disabled before dispatch"
            return ActionDispatch(
                execution_record_id=record.id,
                policy_id=record.policy_id,
                policy_name=policy.name,
                action_id=record.action_id,
                action_type=action.action_type,
                config=dict(action.action_config or {}),
                subject_id=record.subject_id,
                event_id=record.event_id,
                attempt=record.attempt,
            ), None

    def _finish(
        self,
        record_id: int,
        status: ExecutionStatus,
        error_detail: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        duration: float = 0.0,
    ) -> Optional[ExecutionRecord]:
        """Write a terminal status over ``pending``.

        Returns:
            The updated record, or None if it was already terminal.
        """
        with self._db.write_session() as session:
            before_row = session.get(ExecutionRow, record_id)
            if before_row is None:
                return None
            before = record_from_row(before_row)
            updated = (
                session.query(ExecutionRow)
                .filter(
                    ExecutionRow.id == record_id,
                    ExecutionRow.status == ExecutionStatus.PENDING.value,
                )
                .update(
                    {
                        "status": status.value,
                        "completed_at": self._clock(),
                        "error_detail": error_detail,
                        "result_details": _jsonable(details),
                    },
                    synchronize_session=False,
                )
            )
            if updated != 1:
                logger.warning(
                    "Record %d already terminal, %s not applied", record_id, status.value,
                )
                return None
            session.expire(before_row)
            record = record_from_row(session.get(ExecutionRow, record_id))
            self._ledger.append(
                session, LedgerEntityType.EXECUTION_RECORD, record_id,
                STATUS_LEDGER_EVENTS[status], actor="executor",
                before=before.model_dump(mode="json"),
                after=record.model_dump(mode="json"),
                details={"error_detail": error_detail} if error_detail else None,
            )

        record_execution_completed(record.action_type, status.value, duration)
        logger.info(
            "Record %d (%s, policy %d, event %s) -> %s",
            record.id, record.action_type, record.policy_id,
            record.event_id, status.value,
        )
        return record


__all__ = [
    "ActionExecutor",
]
