# -*- coding: utf-8 -*-
"""
Resolved-Policy Cache and Cache Invalidator

Per-subject cache of resolved policy id lists. The cache is never
authoritative: entries only shortcut the store query and are dropped
whenever a mutation could change a subject's resolution.

Invalidation by scope:
    - Global: every cached subject
    - Group: subjects whose recorded department / role equals the target
    - User: only the subject whose identifier equals the target

Example:
    >>> cache = ResolvedPolicyCache(ttl_seconds=300)
    >>> invalidator = CacheInvalidator(cache)
    >>> invalidator.invalidate_scope(GroupScope(kind="department", value="R&D"))
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Union

from insiderguard.policy_engine.metrics import (
    record_cache_hit,
    record_cache_invalidation,
    record_cache_miss,
)
from insiderguard.policy_engine.models import (
    CacheEntry,
    GlobalScope,
    GroupScope,
    UserScope,
    scope_matches,
)

logger = logging.getLogger(__name__)


class ResolvedPolicyCache:
    """Thread-safe map of subject id to :class:`CacheEntry`.

    Entries are immutable; ``put`` replaces, ``pop`` removes.

    Attributes:
        ttl_seconds: Age after which an entry is treated as a miss.
        enabled: When False every lookup misses and nothing is stored.
    """

    def __init__(self, ttl_seconds: float = 300, enabled: bool = True) -> None:
        self.ttl_seconds = ttl_seconds
        self.enabled = enabled
        self._entries: Dict[str, CacheEntry] = {}
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def generation(self) -> int:
        """Counter bumped by every removal.

        A resolver captures it before reading the store and passes it to
        ``put``; an entry computed across an invalidation is discarded.
        """
        return self._generation

    def get(self, subject_id: str, now: datetime) -> Optional[CacheEntry]:
        """Return the fresh entry for ``subject_id`` or None."""
        if not self.enabled:
            return None
        entry = self._entries.get(subject_id)
        if entry is None or not entry.is_fresh(now, self.ttl_seconds):
            record_cache_miss()
            return None
        record_cache_hit()
        return entry

    def put(self, entry: CacheEntry, generation: Optional[int] = None) -> bool:
        """Store ``entry``, replacing any previous one.

        Returns:
            False if caching is disabled or ``generation`` is stale.
        """
        if not self.enabled:
            return False
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            self._entries[entry.subject_id] = entry
        return True

    def pop(self, subject_id: str) -> Optional[CacheEntry]:
        with self._lock:
            self._generation += 1
            return self._entries.pop(subject_id, None)

    def entries(self) -> List[CacheEntry]:
        """Snapshot of the current entries."""
        with self._lock:
            return list(self._entries.values())

    def remove_where(self, predicate: Callable[[CacheEntry], bool]) -> int:
        """Drop every entry for which ``predicate(entry)`` is true.

        Returns:
            Number of entries dropped.
        """
        with self._lock:
            self._generation += 1
            doomed = [
                subject_id for subject_id, entry in self._entries.items()
                if predicate(entry)
            ]
            for subject_id in doomed:
                del self._entries[subject_id]
        return len(doomed)

    def clear(self) -> int:
        with self._lock:
            self._generation += 1
            removed = len(self._entries)
            self._entries.clear()
        return removed

    def __contains__(self, subject_id: str) -> bool:
        return subject_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class CacheInvalidator:
    """Drops cache entries affected by a policy store mutation."""

    def __init__(self, cache: ResolvedPolicyCache) -> None:
        self._cache = cache

    def invalidate_scope(
        self,
        scope: Union[GlobalScope, GroupScope, UserScope],
    ) -> int:
        """Drop every cached subject the given scope applies to.

        Args:
            scope: Scope of the mutated policy.

        Returns:
            Number of entries dropped.
        """
        if isinstance(scope, GlobalScope):
            removed = self._cache.clear()
        elif isinstance(scope, UserScope):
            removed = self._cache.remove_where(
                lambda e: e.subject_id == scope.user_id
                or (e.attributes is not None and scope_matches(scope, e.attributes)),
            )
        else:
            removed = self._cache.remove_where(
                lambda e: e.attributes is not None and scope_matches(scope, e.attributes),
            )

        record_cache_invalidation(scope.level, removed)
        logger.debug(
            "Invalidated %d cache entries for %s scope", removed, scope.level,
        )
        return removed

    def invalidate_subject(self, subject_id: str) -> bool:
        """Drop the entry of a single subject (e.g. after a directory change)."""
        removed = self._cache.pop(subject_id) is not None
        if removed:
            record_cache_invalidation("subject")
        return removed

    def clear(self) -> int:
        """Drop every entry."""
        removed = self._cache.clear()
        record_cache_invalidation("all", removed)
        logger.info("Resolved-policy cache cleared (%d entries)", removed)
        return removed


__all__ = [
    "ResolvedPolicyCache",
    "CacheInvalidator",
]
