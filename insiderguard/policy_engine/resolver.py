# -*- coding: utf-8 -*-
"""
Policy Resolver

Computes the effective policies of a subject: every active global policy,
every active group policy targeting the subject's department or role, and
every active user policy targeting the subject's identifier, ordered by
descending priority, then descending creation time, then descending id.

Resolution is fail-closed: when the directory cannot be reached only
global policies apply, the degradation is logged and counted, and the
degraded result is never cached.

Example:
    >>> resolver = PolicyResolver(store, directory, cache, invalidator)
    >>> [p.priority for p in resolver.resolve("emp-42")]
    [95, 80, 50]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from insiderguard.exceptions import CacheInconsistencyError, ResolutionError
from insiderguard.policy_engine.cache import CacheInvalidator, ResolvedPolicyCache
from insiderguard.policy_engine.directory import DirectoryLookup
from insiderguard.policy_engine.metrics import record_resolution_degraded
from insiderguard.policy_engine.models import (
    CacheEntry,
    Policy,
    SubjectAttributes,
    _utcnow,
)
from insiderguard.policy_engine.policy_store import PolicyStore

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    """Resolved policies of one subject plus how they were obtained."""
    subject_id: str
    policies: List[Policy] = field(default_factory=list)
    subject: Optional[SubjectAttributes] = None
    degraded: bool = False
    from_cache: bool = False

    @property
    def policy_ids(self) -> List[int]:
        return [p.id for p in self.policies]


class PolicyResolver:
    """Cache-backed resolver of effective policies."""

    def __init__(
        self,
        store: PolicyStore,
        directory: DirectoryLookup,
        cache: ResolvedPolicyCache,
        invalidator: CacheInvalidator,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._directory = directory
        self._cache = cache
        self._invalidator = invalidator
        self._clock = clock or _utcnow

    def resolve(self, subject_id: str) -> List[Policy]:
        """Return the subject's effective policies in resolution order."""
        return self.resolve_detailed(subject_id).policies

    def resolve_detailed(self, subject_id: str) -> Resolution:
        """Resolve a subject, reporting cache use and degradation.

        Never raises for directory failures.
        """
        subject = self._lookup(subject_id)
        if subject is None:
            record_resolution_degraded()
            return Resolution(
                subject_id=subject_id,
                policies=self._store.list_candidates(None),
                degraded=True,
            )

        now = self._clock()
        entry = self._cache.get(subject_id, now)
        if entry is not None and entry.attributes != subject:
            # Directory attributes moved since the entry was computed
            self._invalidator.invalidate_subject(subject_id)
            entry = None

        if entry is not None:
            try:
                return Resolution(
                    subject_id=subject_id,
                    policies=self._from_cache(entry),
                    subject=subject,
                    from_cache=True,
                )
            except CacheInconsistencyError as exc:
                logger.info(
                    "Dropping inconsistent cache entry for %s: %s",
                    subject_id, exc.context.get("missing_policy_ids"),
                )
                self._invalidator.invalidate_subject(subject_id)

        generation = self._cache.generation
        policies = self._store.list_candidates(subject)
        self._cache.put(
            CacheEntry(
                subject_id=subject_id,
                policy_ids=tuple(p.id for p in policies),
                computed_at=now,
                attributes=subject,
            ),
            generation=generation,
        )
        logger.debug(
            "Resolved %d policies for %s", len(policies), subject_id,
        )
        return Resolution(subject_id=subject_id, policies=policies, subject=subject)

    def _lookup(self, subject_id: str) -> Optional[SubjectAttributes]:
        try:
            return self._directory.lookup(subject_id)
        except ResolutionError as exc:
            logger.warning(
                "Directory lookup failed for %s, resolving global policies only: %s",
                subject_id, exc.message,
            )
        except Exception as exc:
            logger.warning(
                "Directory lookup raised %s for %s, resolving global policies only: %s",
                type(exc).__name__, subject_id, exc,
            )
        return None

    def _from_cache(self, entry: CacheEntry) -> List[Policy]:
        active = self._store.get_active_policies(entry.policy_ids)
        missing = [pid for pid in entry.policy_ids if pid not in active]
        if missing:
            raise CacheInconsistencyError(
                f"Cached resolution for {entry.subject_id} references "
                f"{len(missing)} unavailable policies",
                subject_id=entry.subject_id,
                missing_policy_ids=missing,
            )
        return [active[pid] for pid in entry.policy_ids]


__all__ = [
    "PolicyResolver",
    "Resolution",
]
