# -*- coding: utf-8 -*-
"""
Policy Engine Configuration

Centralized configuration for the policy resolution and execution engine
covering:
- Database location
- Resolved-policy cache toggle and TTL
- Executor worker pool, polling and execution horizon
- Business-hours window for the ``time_based`` condition
- Policy capacity limits

All settings can be overridden via environment variables with the
``IG_POLICY_ENGINE_`` prefix (e.g. ``IG_POLICY_ENGINE_CACHE_TTL_SECONDS``).

Example:
    >>> from insiderguard.policy_engine.config import get_config
    >>> cfg = get_config()
    >>> print(cfg.execution_timeout_seconds, cfg.cache_enabled)
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Environment variable prefix
# ---------------------------------------------------------------------------

_ENV_PREFIX = "IG_POLICY_ENGINE_"


def _default_database_url() -> str:
    db_path = os.path.expanduser(
        os.getenv("IG_POLICY_ENGINE_DB_PATH", "~/.insiderguard/policy_engine.db")
    )
    return f"sqlite:///{db_path}"


# ---------------------------------------------------------------------------
# PolicyEngineConfig
# ---------------------------------------------------------------------------


@dataclass
class PolicyEngineConfig:
    """Complete configuration for the policy engine.

    Attributes:
        database_url: SQLAlchemy URL of the policy/execution/ledger store.
            Empty string means a SQLite file under ``~/.insiderguard``.
        cache_enabled: Whether resolved policy lists are cached per subject.
        cache_ttl_seconds: Age after which a cache entry is no longer fresh.
        executor_max_workers: Parallel (policy, event) queues.
        executor_poll_interval_seconds: Sleep between executor ticks.
        executor_batch_size: Maximum due records pulled per tick.
        execution_timeout_seconds: Bounded execution horizon per action.
        business_hours_start: First hour (UTC) inside business hours.
        business_hours_end: First hour (UTC) after business hours.
        log_only_handlers: Register logging handlers for built-in action
            types (useful when no side-effect integrations are wired).
        max_policies: Maximum number of stored policies.
        max_conditions_per_policy: Maximum conditions per policy.
        max_actions_per_policy: Maximum actions per policy.
    """

    # -- Storage -------------------------------------------------------------
    database_url: str = ""

    # -- Resolution cache ----------------------------------------------------
    cache_enabled: bool = True
    cache_ttl_seconds: int = 300

    # -- Executor ------------------------------------------------------------
    executor_max_workers: int = 4
    executor_poll_interval_seconds: float = 5.0
    executor_batch_size: int = 100
    execution_timeout_seconds: float = 300.0

    # -- Condition evaluation ------------------------------------------------
    business_hours_start: int = 8
    business_hours_end: int = 18

    # -- Handlers ------------------------------------------------------------
    log_only_handlers: bool = False

    # -- Capacity limits -----------------------------------------------------
    max_policies: int = 1000
    max_conditions_per_policy: int = 50
    max_actions_per_policy: int = 50

    def resolved_database_url(self) -> str:
        """Return the configured database URL or the default SQLite path."""
        return self.database_url or _default_database_url()

    # ------------------------------------------------------------------
    # Factory helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls) -> PolicyEngineConfig:
        """Build a PolicyEngineConfig from environment variables.

        Every field can be overridden via ``IG_POLICY_ENGINE_<FIELD_UPPER>``.
        Boolean values accept ``true/1/yes`` (case-insensitive).

        Returns:
            Populated PolicyEngineConfig instance.
        """
        prefix = _ENV_PREFIX

        def _env(name: str, default: Any = None) -> Optional[str]:
            return os.environ.get(f"{prefix}{name}", default)

        def _bool(name: str, default: bool) -> bool:
            val = _env(name)
            if val is None:
                return default
            return val.lower() in ("true", "1", "yes")

        def _int(name: str, default: int) -> int:
            val = _env(name)
            if val is None:
                return default
            try:
                return int(val)
            except ValueError:
                logger.warning(
                    "Invalid integer for %s%s=%s, using default %d",
                    prefix, name, val, default,
                )
                return default

        def _float(name: str, default: float) -> float:
            val = _env(name)
            if val is None:
                return default
            try:
                return float(val)
            except ValueError:
                logger.warning(
                    "Invalid float for %s%s=%s, using default %s",
                    prefix, name, val, default,
                )
                return default

        def _str(name: str, default: str) -> str:
            val = _env(name)
            if val is None or not val.strip():
                return default
            return val

        config = cls(
            database_url=_str("DATABASE_URL", cls.database_url),
            cache_enabled=_bool("CACHE_ENABLED", cls.cache_enabled),
            cache_ttl_seconds=_int("CACHE_TTL_SECONDS", cls.cache_ttl_seconds),
            executor_max_workers=_int(
                "EXECUTOR_MAX_WORKERS", cls.executor_max_workers,
            ),
            executor_poll_interval_seconds=_float(
                "EXECUTOR_POLL_INTERVAL_SECONDS",
                cls.executor_poll_interval_seconds,
            ),
            executor_batch_size=_int(
                "EXECUTOR_BATCH_SIZE", cls.executor_batch_size,
            ),
            execution_timeout_seconds=_float(
                "EXECUTION_TIMEOUT_SECONDS", cls.execution_timeout_seconds,
            ),
            business_hours_start=_int(
                "BUSINESS_HOURS_START", cls.business_hours_start,
            ),
            business_hours_end=_int(
                "BUSINESS_HOURS_END", cls.business_hours_end,
            ),
            log_only_handlers=_bool("LOG_ONLY_HANDLERS", cls.log_only_handlers),
            max_policies=_int("MAX_POLICIES", cls.max_policies),
            max_conditions_per_policy=_int(
                "MAX_CONDITIONS_PER_POLICY", cls.max_conditions_per_policy,
            ),
            max_actions_per_policy=_int(
                "MAX_ACTIONS_PER_POLICY", cls.max_actions_per_policy,
            ),
        )

        logger.info(
            "PolicyEngineConfig loaded: cache=%s (ttl=%ds), workers=%d, "
            "poll=%.1fs, horizon=%.0fs, max_policies=%d",
            config.cache_enabled,
            config.cache_ttl_seconds,
            config.executor_max_workers,
            config.executor_poll_interval_seconds,
            config.execution_timeout_seconds,
            config.max_policies,
        )
        return config


# ---------------------------------------------------------------------------
# Thread-safe singleton accessor
# ---------------------------------------------------------------------------

_config_instance: Optional[PolicyEngineConfig] = None
_config_lock = threading.Lock()


def get_config() -> PolicyEngineConfig:
    """Return the singleton PolicyEngineConfig, creating from env if needed."""
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = PolicyEngineConfig.from_env()
    return _config_instance


def set_config(config: PolicyEngineConfig) -> None:
    """Replace the singleton PolicyEngineConfig (useful for testing).

    Args:
        config: New configuration to install.
    """
    global _config_instance
    with _config_lock:
        _config_instance = config
    logger.info("PolicyEngineConfig replaced programmatically")


def reset_config() -> None:
    """Reset the singleton (primarily for test teardown)."""
    global _config_instance
    with _config_lock:
        _config_instance = None


__all__ = [
    "PolicyEngineConfig",
    "get_config",
    "set_config",
    "reset_config",
]
