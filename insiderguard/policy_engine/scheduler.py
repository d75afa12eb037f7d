# -*- coding: utf-8 -*-
"""
Action Scheduler

Turns matched policies into durable execution records: one ``pending``
record per enabled action, due at ``now + delay``. Records are committed
before their ids are returned, so a crash after scheduling never loses
work. Re-scheduling the same (policy, action, event) is a no-op.

Also provides manual triggering of a policy (no condition evaluation),
retries of failed/skipped records, and execution record queries.

Example:
    >>> scheduler = ActionScheduler(database, ledger, store)
    >>> ids = scheduler.schedule(matched, event_id="evt-1", subject_id="emp-42")
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Union

from sqlalchemy import func

from insiderguard.db import Database, ExecutionRow
from insiderguard.exceptions import PolicyNotFoundError, ValidationError
from insiderguard.policy_engine.ledger import AuditLedger
from insiderguard.policy_engine.metrics import record_execution_scheduled
from insiderguard.policy_engine.models import (
    ExecutionRecord,
    ExecutionStatus,
    LedgerEntityType,
    LedgerEventType,
    Policy,
    _utcnow,
)
from insiderguard.policy_engine.policy_store import PolicyStore

logger = logging.getLogger(__name__)


def record_from_row(row: ExecutionRow) -> ExecutionRecord:
    """Build an ExecutionRecord from its database row."""
    return ExecutionRecord(
        id=row.id,
        policy_id=row.policy_id,
        action_id=row.action_id,
        action_type=row.action_type,
        execution_order=row.execution_order,
        event_id=row.event_id,
        subject_id=row.subject_id,
        status=ExecutionStatus(row.status),
        attempt=row.attempt,
        retry_of=row.retry_of,
        scheduled_at=row.scheduled_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        error_detail=row.error_detail,
        result_details=row.result_details or {},
        created_at=row.created_at,
    )


class ActionScheduler:
    """Creates and queries execution records."""

    def __init__(
        self,
        database: Database,
        ledger: AuditLedger,
        store: PolicyStore,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._db = database
        self._ledger = ledger
        self._store = store
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(
        self,
        policies: List[Policy],
        event_id: str,
        subject_id: str,
        actor: str = "system",
    ) -> List[int]:
        """Create one pending record per enabled action of each policy.

        Args:
            policies: Matched policies in resolution order.
            event_id: Triggering event.
            subject_id: Subject the actions target.
            actor: Recorded on the ledger entries.

        Returns:
            Ids of the newly created records (already committed).
        """
        now = self._clock()
        created: List[ExecutionRow] = []

        with self._db.write_session() as session:
            for policy in policies:
                for action in policy.enabled_actions():
                    exists = (
                        session.query(ExecutionRow.id)
                        .filter(
                            ExecutionRow.policy_id == policy.id,
                            ExecutionRow.action_id == action.id,
                            ExecutionRow.event_id == event_id,
                        )
                        .first()
                    )
                    if exists is not None:
                        logger.debug(
                            "Action %d of policy %d already scheduled for event %s",
                            action.id, policy.id, event_id,
                        )
                        continue

                    row = ExecutionRow(
                        policy_id=policy.id,
                        action_id=action.id,
                        action_type=action.action_type,
                        execution_order=action.execution_order,
                        event_id=event_id,
                        subject_id=subject_id,
                        status=ExecutionStatus.PENDING.value,
                        attempt=1,
                        scheduled_at=now + action.delay,
                        created_at=now,
                    )
                    session.add(row)
                    session.flush()
                    self._ledger.append(
                        session, LedgerEntityType.EXECUTION_RECORD, row.id,
                        LedgerEventType.SCHEDULED, actor=actor,
                        after=record_from_row(row).model_dump(mode="json"),
                        details={"policy_id": policy.id, "action_id": action.id},
                    )
                    created.append(row)

        for row in created:
            record_execution_scheduled(row.action_type)
        if created:
            logger.info(
                "Scheduled %d action(s) for event %s (subject %s)",
                len(created), event_id, subject_id,
            )
        return [row.id for row in created]

    def trigger_policy(
        self,
        policy_id: int,
        subject_id: str,
        actor: str,
        event_id: Optional[str] = None,
    ) -> List[int]:
        """Schedule a policy's actions without evaluating its conditions.

        Args:
            policy_id: Policy to trigger.
            subject_id: Subject the actions target.
            actor: Who triggered the policy.
            event_id: Optional event id; ``manual-<uuid>`` by default.

        Raises:
            PolicyNotFoundError: If the policy does not exist.
            ValidationError: If the policy is inactive.
        """
        policy = self._store.get_policy(policy_id)
        if not policy.is_active:
            raise ValidationError(
                f"Policy {policy_id} is inactive and cannot be triggered",
                context={"policy_id": policy_id},
            )
        event_id = event_id or f"manual-{uuid.uuid4()}"
        logger.info(
            "Manual trigger of policy %d for %s by %s (event %s)",
            policy_id, subject_id, actor, event_id,
        )
        return self.schedule([policy], event_id, subject_id, actor=actor)

    def retry(self, record_id: int, actor: str) -> ExecutionRecord:
        """Schedule a fresh attempt of a failed or skipped record.

        The original record is left untouched; the new one references it
        through ``retry_of`` and carries the next attempt number.

        Raises:
            PolicyNotFoundError: If the record does not exist.
            ValidationError: If the record is pending or succeeded.
        """
        now = self._clock()
        with self._db.write_session() as session:
            original = self._load(session, record_id)
            if original.status not in (
                ExecutionStatus.FAILED.value, ExecutionStatus.SKIPPED.value,
            ):
                raise ValidationError(
                    f"Only failed or skipped records can be retried "
                    f"(record {record_id} is {original.status})",
                    context={"execution_record_id": record_id},
                )
            last_attempt = (
                session.query(func.max(ExecutionRow.attempt))
                .filter(
                    ExecutionRow.policy_id == original.policy_id,
                    ExecutionRow.action_id == original.action_id,
                    ExecutionRow.event_id == original.event_id,
                )
                .scalar()
            ) or original.attempt

            row = ExecutionRow(
                policy_id=original.policy_id,
                action_id=original.action_id,
                action_type=original.action_type,
                execution_order=original.execution_order,
                event_id=original.event_id,
                subject_id=original.subject_id,
                status=ExecutionStatus.PENDING.value,
                attempt=last_attempt + 1,
                retry_of=original.id,
                scheduled_at=now,
                created_at=now,
            )
            session.add(row)
            session.flush()
            record = record_from_row(row)
            self._ledger.append(
                session, LedgerEntityType.EXECUTION_RECORD, row.id,
                LedgerEventType.SCHEDULED, actor=actor,
                after=record.model_dump(mode="json"),
                details={"retry_of": original.id, "attempt": row.attempt},
            )

        record_execution_scheduled(record.action_type)
        logger.info(
            "Retry of record %d scheduled as record %d (attempt %d) by %s",
            record_id, record.id, record.attempt, actor,
        )
        return record

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_record(self, record_id: int) -> ExecutionRecord:
        with self._db.session() as session:
            return record_from_row(self._load(session, record_id))

    def list_records(
        self,
        policy_id: Optional[int] = None,
        subject_id: Optional[str] = None,
        event_id: Optional[str] = None,
        status: Optional[Union[ExecutionStatus, str]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ExecutionRecord]:
        """List execution records with optional filtering (newest first)."""
        with self._db.session() as session:
            query = session.query(ExecutionRow)
            if policy_id is not None:
                query = query.filter(ExecutionRow.policy_id == policy_id)
            if subject_id:
                query = query.filter(ExecutionRow.subject_id == subject_id)
            if event_id:
                query = query.filter(ExecutionRow.event_id == event_id)
            if status is not None:
                query = query.filter(ExecutionRow.status == ExecutionStatus(status).value)
            rows = (
                query.order_by(ExecutionRow.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [record_from_row(r) for r in rows]

    def status_counts(self) -> Dict[str, int]:
        """Number of records per status."""
        with self._db.session() as session:
            rows = (
                session.query(ExecutionRow.status, func.count(ExecutionRow.id))
                .group_by(ExecutionRow.status)
                .all()
            )
        counts = {s.value: 0 for s in ExecutionStatus}
        counts.update({status: n for status, n in rows})
        return counts

    @staticmethod
    def _load(session, record_id: int) -> ExecutionRow:
        row = session.get(ExecutionRow, record_id)
        if row is None:
            raise PolicyNotFoundError(
                f"Execution record not found: {record_id}",
                entity_type=LedgerEntityType.EXECUTION_RECORD.value,
                entity_id=record_id,
            )
        return row


__all__ = [
    "ActionScheduler",
    "record_from_row",
]
