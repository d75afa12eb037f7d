# -*- coding: utf-8 -*-
"""
Action Handler Registry

Maps action types to the callables that perform their side effects
(sending alerts, opening incidents, revoking access, ...). The executor
looks handlers up at dispatch time, so handlers can be registered after
the engine has started.

A handler receives an :class:`ActionDispatch` and returns an optional
dict of result details that is stored on the execution record. Raising
marks the record ``failed``.

Example:
    >>> registry = HandlerRegistry()
    >>> @registry.register("email_alert")
    ... def send_email(dispatch):
    ...     cfg = dispatch.typed_config()
    ...     mailer.send(cfg.recipients, subject=cfg.subject)
    ...     return {"recipients": len(cfg.recipients)}
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from insiderguard.policy_engine.models import ActionDispatch, ActionType

logger = logging.getLogger(__name__)

ActionHandler = Callable[[ActionDispatch], Optional[Dict[str, Any]]]


class HandlerRegistry:
    """Thread-safe registry of action handlers keyed by action type."""

    def __init__(self):
        self._handlers: Dict[str, ActionHandler] = {}
        self._lock = threading.Lock()

    def register(self, action_type: str, handler: Optional[ActionHandler] = None):
        """
        Register a handler for an action type.

        Usable directly (``registry.register("email_alert", fn)``) or as a
        decorator (``@registry.register("email_alert")``). A later
        registration replaces the earlier one.

        Args:
            action_type: Action type the handler serves
            handler: Handler callable (omit when used as decorator)

        Returns:
            The handler, or a decorator when no handler was given
        """
        key = action_type.strip().lower()

        def decorator(func: ActionHandler) -> ActionHandler:
            with self._lock:
                replaced = key in self._handlers
                self._handlers[key] = func
            logger.info(
                "%s handler for action type %s",
                "Replaced" if replaced else "Registered", key,
            )
            return func

        if handler is not None:
            return decorator(handler)
        return decorator

    def unregister(self, action_type: str) -> bool:
        with self._lock:
            return self._handlers.pop(action_type.strip().lower(), None) is not None

    def get(self, action_type: str) -> Optional[ActionHandler]:
        """Get the handler of an action type, or None."""
        return self._handlers.get(action_type.strip().lower())

    def action_types(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, action_type: str) -> bool:
        return action_type.strip().lower() in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def logging_handler(dispatch: ActionDispatch) -> Dict[str, Any]:
    """Handler that only records the requested action in the log."""
    logger.info(
        "Action %s requested by policy %d for subject %s (event %s, record %d): %s",
        dispatch.action_type, dispatch.policy_id, dispatch.subject_id,
        dispatch.event_id, dispatch.execution_record_id, dispatch.config,
    )
    return {"handler": "log_only", "action_type": dispatch.action_type}


def register_logging_handlers(registry: HandlerRegistry) -> None:
    """Register :func:`logging_handler` for every built-in action type
    that has no handler yet."""
    for action_type in ActionType:
        if action_type.value not in registry:
            registry.register(action_type.value, logging_handler)


__all__ = [
    "ActionHandler",
    "HandlerRegistry",
    "logging_handler",
    "register_logging_handlers",
]
