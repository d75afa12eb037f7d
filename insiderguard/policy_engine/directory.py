# -*- coding: utf-8 -*-
"""
Directory Lookup

Adapter boundary to the employee directory that supplies a subject's
department, role and identifier. The resolver only depends on the
:class:`DirectoryLookup` protocol; :class:`InMemoryDirectory` backs tests
and single-process deployments where the platform pushes attribute
changes in.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional, Protocol, runtime_checkable

from insiderguard.exceptions import ResolutionError
from insiderguard.policy_engine.models import SubjectAttributes

logger = logging.getLogger(__name__)


@runtime_checkable
class DirectoryLookup(Protocol):
    """Returns directory attributes for a subject.

    Implementations raise :class:`ResolutionError` when the directory is
    unavailable or returns unusable data.
    """

    def lookup(self, subject_id: str) -> SubjectAttributes:
        ...


class InMemoryDirectory:
    """Thread-safe in-process directory.

    Unknown subjects resolve to bare attributes (no department or role),
    so only global and user-scoped policies can apply to them.
    """

    def __init__(
        self,
        subjects: Optional[Dict[str, SubjectAttributes]] = None,
    ) -> None:
        self._subjects: Dict[str, SubjectAttributes] = dict(subjects or {})
        self._listeners: List[Callable[[str], None]] = []
        self._lock = threading.Lock()

    def lookup(self, subject_id: str) -> SubjectAttributes:
        subject = self._subjects.get(subject_id)
        if subject is None:
            return SubjectAttributes(subject_id=subject_id)
        return subject

    def upsert(
        self,
        subject_id: str,
        department: Optional[str] = None,
        role: Optional[str] = None,
        identifier: Optional[str] = None,
    ) -> SubjectAttributes:
        """Create or replace a subject's attributes.

        Registered change listeners are notified so that cached
        resolutions computed from the old attributes are dropped.
        """
        subject = SubjectAttributes(
            subject_id=subject_id,
            department=department,
            role=role,
            identifier=identifier,
        )
        with self._lock:
            self._subjects[subject_id] = subject
        self._notify(subject_id)
        return subject

    def remove(self, subject_id: str) -> bool:
        with self._lock:
            removed = self._subjects.pop(subject_id, None) is not None
        if removed:
            self._notify(subject_id)
        return removed

    def add_listener(self, listener: Callable[[str], None]) -> None:
        """Register a callback invoked with the subject id on every change."""
        self._listeners.append(listener)

    def _notify(self, subject_id: str) -> None:
        for listener in self._listeners:
            listener(subject_id)

    def __len__(self) -> int:
        return len(self._subjects)


class CallableDirectory:
    """Wraps a plain function as a :class:`DirectoryLookup`.

    Any exception raised by the function, or a non-SubjectAttributes
    return value, is reported as :class:`ResolutionError`.

    Example:
        >>> directory = CallableDirectory(hr_client.fetch_employee)
    """

    def __init__(self, fetch: Callable[[str], SubjectAttributes]) -> None:
        self._fetch = fetch

    def lookup(self, subject_id: str) -> SubjectAttributes:
        try:
            subject = self._fetch(subject_id)
        except ResolutionError:
            raise
        except Exception as exc:
            raise ResolutionError(
                f"Directory lookup failed for {subject_id}",
                subject_id=subject_id,
                cause=exc,
            ) from exc
        if not isinstance(subject, SubjectAttributes):
            raise ResolutionError(
                f"Directory returned {type(subject).__name__} for {subject_id}",
                subject_id=subject_id,
            )
        return subject


__all__ = [
    "DirectoryLookup",
    "InMemoryDirectory",
    "CallableDirectory",
]
