# -*- coding: utf-8 -*-
"""
Audit & Execution Ledger

Append-only, hash-chained record of every policy mutation and every
execution status transition. Entries are persisted in the same database
as the policies so that a mutation and its ledger entry commit in a
single transaction.

Tamper Evidence:
    - Each entry stores the SHA-256 hash of its predecessor
    - Each entry hash covers its content and the previous hash
    - ``verify_chain()`` recomputes the whole chain

Example:
    >>> from insiderguard.policy_engine.ledger import AuditLedger
    >>> ledger = AuditLedger(database)
    >>> with database.write_session() as session:
    ...     ledger.append(session, "policy", 1, "created", actor="alice")
    >>> history = ledger.get_entity_history("policy", 1)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from insiderguard.db import Database, LedgerRow
from insiderguard.policy_engine.models import (
    LedgerEntityType,
    LedgerEntry,
    LedgerEventType,
    _utcnow,
    to_naive_utc,
)

logger = logging.getLogger(__name__)


def _row_to_entry(row: LedgerRow) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        entry_id=row.entry_id,
        entity_type=LedgerEntityType(row.entity_type),
        entity_id=row.entity_id,
        event_type=LedgerEventType(row.event_type),
        actor=row.actor,
        before=row.before,
        after=row.after,
        details=row.details or {},
        timestamp=row.timestamp,
        prev_hash=row.prev_hash or "",
        entry_hash=row.entry_hash,
    )


class AuditLedger:
    """Persistent, hash-chained audit ledger.

    Writers call :meth:`append` with the session of their own write
    transaction (obtained from ``Database.write_session()``); the write
    lock held by that session keeps the chain linear.

    Attributes:
        _db: Database holding the ``policy_ledger`` table.
        _clock: Callable returning the current naive UTC time.
    """

    def __init__(
        self,
        database: Database,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._db = database
        self._clock = clock or _utcnow
        logger.info("AuditLedger initialized")

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def append(
        self,
        session: Session,
        entity_type: Union[LedgerEntityType, str],
        entity_id: Any,
        event_type: Union[LedgerEventType, str],
        actor: str = "system",
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        """Append an entry inside the caller's write transaction.

        Args:
            session: Session of an open ``write_session()``.
            entity_type: Kind of entity the entry is about.
            entity_id: Identifier of the entity.
            event_type: Mutation or status transition.
            actor: Who performed the change.
            before: Snapshot before the change (None on create).
            after: Snapshot after the change (None on delete).
            details: Additional free-form details.

        Returns:
            The appended LedgerEntry.
        """
        last = (
            session.query(LedgerRow.entry_hash)
            .order_by(LedgerRow.id.desc())
            .first()
        )
        entry = LedgerEntry(
            entity_type=LedgerEntityType(entity_type),
            entity_id=str(entity_id),
            event_type=LedgerEventType(event_type),
            actor=actor or "system",
            before=before,
            after=after,
            details=details or {},
            timestamp=self._clock(),
            prev_hash=last[0] if last else "",
        )
        entry.entry_hash = entry.compute_hash()

        row = LedgerRow(
            entry_id=entry.entry_id,
            entity_type=entry.entity_type.value,
            entity_id=entry.entity_id,
            event_type=entry.event_type.value,
            actor=entry.actor,
            before=entry.before,
            after=entry.after,
            details=entry.details,
            timestamp=entry.timestamp,
            prev_hash=entry.prev_hash,
            entry_hash=entry.entry_hash,
        )
        session.add(row)
        session.flush()
        entry.id = row.id

        logger.debug(
            "Ledger entry appended: %s %s:%s by %s",
            entry.event_type.value, entry.entity_type.value,
            entry.entity_id, entry.actor,
        )
        return entry

    # ------------------------------------------------------------------
    # Querying
    # ------------------------------------------------------------------

    def get_entries(
        self,
        entity_type: Optional[Union[LedgerEntityType, str]] = None,
        entity_id: Optional[Any] = None,
        actor: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_type: Optional[Union[LedgerEventType, str]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[LedgerEntry]:
        """Get ledger entries with optional filtering.

        Args:
            entity_type: Optional entity kind filter.
            entity_id: Optional entity identifier filter.
            actor: Optional actor filter.
            start: Optional inclusive lower time bound.
            end: Optional inclusive upper time bound.
            event_type: Optional event kind filter.
            limit: Maximum entries to return.
            offset: Number of entries to skip.

        Returns:
            List of matching entries (newest first).
        """
        with self._db.session() as session:
            query = session.query(LedgerRow)
            if entity_type is not None:
                query = query.filter(
                    LedgerRow.entity_type == LedgerEntityType(entity_type).value,
                )
            if entity_id is not None:
                query = query.filter(LedgerRow.entity_id == str(entity_id))
            if actor:
                query = query.filter(LedgerRow.actor == actor)
            if event_type is not None:
                query = query.filter(
                    LedgerRow.event_type == LedgerEventType(event_type).value,
                )
            if start is not None:
                query = query.filter(LedgerRow.timestamp >= to_naive_utc(start))
            if end is not None:
                query = query.filter(LedgerRow.timestamp <= to_naive_utc(end))

            rows = (
                query.order_by(LedgerRow.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [_row_to_entry(r) for r in rows]

    def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        """Get a single ledger entry by its entry id."""
        with self._db.session() as session:
            row = (
                session.query(LedgerRow)
                .filter(LedgerRow.entry_id == entry_id)
                .first()
            )
            return _row_to_entry(row) if row else None

    def get_entity_history(
        self,
        entity_type: Union[LedgerEntityType, str],
        entity_id: Any,
    ) -> List[LedgerEntry]:
        """Full history of one entity in chronological order."""
        with self._db.session() as session:
            rows = (
                session.query(LedgerRow)
                .filter(
                    LedgerRow.entity_type == LedgerEntityType(entity_type).value,
                    LedgerRow.entity_id == str(entity_id),
                )
                .order_by(LedgerRow.id.asc())
                .all()
            )
            return [_row_to_entry(r) for r in rows]

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def verify_chain(self) -> bool:
        """Recompute every entry hash and check the links between entries.

        Returns:
            True if the chain is intact, False at the first broken link.
        """
        prev_hash = ""
        with self._db.session() as session:
            rows = session.query(LedgerRow).order_by(LedgerRow.id.asc()).all()
            for row in rows:
                entry = _row_to_entry(row)
                if entry.prev_hash != prev_hash:
                    logger.warning(
                        "Ledger chain broken at entry %s: prev_hash mismatch",
                        entry.entry_id,
                    )
                    return False
                if entry.compute_hash() != entry.entry_hash:
                    logger.warning(
                        "Ledger chain broken at entry %s: content hash mismatch",
                        entry.entry_id,
                    )
                    return False
                prev_hash = entry.entry_hash
        return True

    @property
    def count(self) -> int:
        """Return the number of stored ledger entries."""
        with self._db.session() as session:
            return session.query(func.count(LedgerRow.id)).scalar() or 0


__all__ = [
    "AuditLedger",
]
