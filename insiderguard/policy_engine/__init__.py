# -*- coding: utf-8 -*-
"""
InsiderGuard Policy Resolution & Execution Engine
=================================================

Hierarchical rule engine deciding, for any monitored subject and any
incoming security/compliance event, which organizational policies apply,
whether their trigger conditions are met, and which remediation actions
must run, in what order, with what delay, and with auditable outcomes.

- Global / group (department or role) / user policy scopes
- Priority-ordered resolution with a per-subject cache and explicit
  scope-based invalidation
- Fail-closed resolution when the directory is unavailable
- Left-to-right AND/OR condition evaluation
- Durable, deduplicated execution records with delays and retries
- Thread-pool executor with per-(policy, event) sequential queues
- Hash-chained audit ledger for every mutation and status transition
- Prometheus metrics and a FastAPI REST API
- Thread-safe configuration with IG_POLICY_ENGINE_ env prefix

Key Components:
    - policy_store: PolicyStore for durable policy CRUD
    - cache: ResolvedPolicyCache and CacheInvalidator
    - resolver: PolicyResolver for effective policies
    - condition_evaluator: ConditionEvaluator for trigger conditions
    - scheduler: ActionScheduler for execution records
    - executor: ActionExecutor worker pool
    - handlers: HandlerRegistry for action side effects
    - ledger: AuditLedger with SHA-256 hash chain
    - directory: DirectoryLookup adapters
    - config: PolicyEngineConfig with IG_POLICY_ENGINE_ env prefix
    - metrics: Prometheus metrics
    - api: FastAPI HTTP router
    - setup: PolicyEngineService facade

Example:
    >>> from insiderguard.policy_engine import PolicyEngineService, PolicySpec
    >>> service = PolicyEngineService()
    >>> service.startup()
    >>> service.store.create_policy(PolicySpec(name="Baseline"), actor="admin")
    >>> result = service.evaluate("emp-42", {"severity": "critical", "risk_score": 90})
    >>> print(result.matched_policy_ids)
"""

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
from insiderguard.policy_engine.config import (
    PolicyEngineConfig,
    get_config,
    set_config,
    reset_config,
)

# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------
from insiderguard.policy_engine.models import (
    # Enumerations
    ScopeLevel,
    GroupKind,
    Operator,
    LogicalConnector,
    ConditionType,
    ActionType,
    ExecutionStatus,
    LedgerEntityType,
    LedgerEventType,
    # Scope
    GlobalScope,
    GroupScope,
    UserScope,
    Scope,
    scope_matches,
    # Inputs
    SubjectAttributes,
    SecurityEvent,
    ConditionSpec,
    ActionSpec,
    PolicySpec,
    PolicyUpdate,
    # Stored / runtime
    Condition,
    Action,
    Policy,
    ExecutionRecord,
    CacheEntry,
    LedgerEntry,
    ActionDispatch,
    EvaluationResult,
)

# ---------------------------------------------------------------------------
# Core components
# ---------------------------------------------------------------------------
from insiderguard.policy_engine.ledger import AuditLedger
from insiderguard.policy_engine.cache import ResolvedPolicyCache, CacheInvalidator
from insiderguard.policy_engine.policy_store import PolicyStore
from insiderguard.policy_engine.directory import (
    DirectoryLookup,
    InMemoryDirectory,
    CallableDirectory,
)
from insiderguard.policy_engine.resolver import PolicyResolver, Resolution
from insiderguard.policy_engine.condition_evaluator import ConditionEvaluator
from insiderguard.policy_engine.handlers import (
    HandlerRegistry,
    logging_handler,
    register_logging_handlers,
)
from insiderguard.policy_engine.scheduler import ActionScheduler
from insiderguard.policy_engine.executor import ActionExecutor

# ---------------------------------------------------------------------------
# Service setup facade
# ---------------------------------------------------------------------------
from insiderguard.policy_engine.setup import (
    PolicyEngineService,
    configure_policy_engine,
    get_policy_engine,
    reset_policy_engine,
    get_router,
)

__all__ = [
    "__version__",
    # Configuration
    "PolicyEngineConfig",
    "get_config",
    "set_config",
    "reset_config",
    # Enumerations
    "ScopeLevel",
    "GroupKind",
    "Operator",
    "LogicalConnector",
    "ConditionType",
    "ActionType",
    "ExecutionStatus",
    "LedgerEntityType",
    "LedgerEventType",
    # Scope
    "GlobalScope",
    "GroupScope",
    "UserScope",
    "Scope",
    "scope_matches",
    # Inputs
    "SubjectAttributes",
    "SecurityEvent",
    "ConditionSpec",
    "ActionSpec",
    "PolicySpec",
    "PolicyUpdate",
    # Stored / runtime
    "Condition",
    "Action",
    "Policy",
    "ExecutionRecord",
    "CacheEntry",
    "LedgerEntry",
    "ActionDispatch",
    "EvaluationResult",
    # Core components
    "AuditLedger",
    "ResolvedPolicyCache",
    "CacheInvalidator",
    "PolicyStore",
    "DirectoryLookup",
    "InMemoryDirectory",
    "CallableDirectory",
    "PolicyResolver",
    "Resolution",
    "ConditionEvaluator",
    "HandlerRegistry",
    "logging_handler",
    "register_logging_handlers",
    "ActionScheduler",
    "ActionExecutor",
    # Service setup facade
    "PolicyEngineService",
    "configure_policy_engine",
    "get_policy_engine",
    "reset_policy_engine",
    "get_router",
]
