# -*- coding: utf-8 -*-
"""
Policy Engine Data Models

Pydantic v2 data models for the policy resolution and execution engine.

Models:
    - Enums: ScopeLevel, GroupKind, Operator, LogicalConnector,
             ConditionType, ActionType, ExecutionStatus, EscalationLevel,
             MonitoringLevel, LedgerEntityType, LedgerEventType
    - Scope: GlobalScope, GroupScope, UserScope (tagged union ``Scope``)
    - Inputs: SubjectAttributes, SecurityEvent, ConditionSpec, ActionSpec,
              PolicySpec, PolicyUpdate
    - Stored: Policy, Condition, Action, ExecutionRecord, LedgerEntry
    - Runtime: CacheEntry, ActionDispatch, EvaluationResult
    - Action configurations: EmailAlertConfig, ImmediateAlertConfig,
      EscalateIncidentConfig, DisableAccessConfig, IncreaseMonitoringConfig,
      LogDetailedActivityConfig
"""

from __future__ import annotations

import hashlib
import json
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Type, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


# =============================================================================
# Enumerations
# =============================================================================


class ScopeLevel(str, Enum):
    """Hierarchy level a policy applies at."""
    GLOBAL = "global"
    GROUP = "group"
    USER = "user"


class GroupKind(str, Enum):
    """Subject attribute a group-scoped policy targets."""
    DEPARTMENT = "department"
    ROLE = "role"


class Operator(str, Enum):
    """Comparison operators available to conditions."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_EQUAL = "greater_equal"
    LESS_EQUAL = "less_equal"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IN = "in"
    NOT_IN = "not_in"


class LogicalConnector(str, Enum):
    """Connector joining a condition to the next one."""
    AND = "AND"
    OR = "OR"


class ConditionType(str, Enum):
    """Well-known condition types.

    Any other attribute name is accepted as a condition type and looked
    up directly in the event attribute map.
    """
    SEVERITY = "severity"
    RISK_SCORE = "risk_score"
    FREQUENCY = "frequency"
    CATEGORY = "category"
    TIME_BASED = "time_based"
    ALWAYS = "always"


class ActionType(str, Enum):
    """Built-in remediation action types."""
    EMAIL_ALERT = "email_alert"
    IMMEDIATE_ALERT = "immediate_alert"
    ESCALATE_INCIDENT = "escalate_incident"
    DISABLE_ACCESS = "disable_access"
    INCREASE_MONITORING = "increase_monitoring"
    LOG_DETAILED_ACTIVITY = "log_detailed_activity"


class ExecutionStatus(str, Enum):
    """Lifecycle status of an execution record."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class EscalationLevel(str, Enum):
    """Incident escalation levels."""
    NORMAL = "normal"
    HIGH = "high"
    IMMEDIATE = "immediate"
    CRITICAL = "critical"


class MonitoringLevel(str, Enum):
    """Subject monitoring intensity levels."""
    MINIMAL = "minimal"
    NORMAL = "normal"
    HIGH = "high"
    MAXIMUM = "maximum"


class LedgerEntityType(str, Enum):
    """Entity kinds recorded in the ledger."""
    POLICY = "policy"
    CONDITION = "condition"
    ACTION = "action"
    EXECUTION_RECORD = "execution_record"


class LedgerEventType(str, Enum):
    """Ledger event kinds (mutations and execution transitions)."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    ENABLED = "enabled"
    DISABLED = "disabled"
    SCHEDULED = "scheduled"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


# =============================================================================
# Constants
# =============================================================================


NUMERIC_OPERATORS = frozenset({
    Operator.GREATER_THAN,
    Operator.LESS_THAN,
    Operator.GREATER_EQUAL,
    Operator.LESS_EQUAL,
})

CONDITION_TYPE_ALIASES: Dict[str, str] = {
    "violation_severity": ConditionType.SEVERITY.value,
    "violation_type": ConditionType.CATEGORY.value,
    "any_violation": ConditionType.ALWAYS.value,
}

TERMINAL_STATUSES = frozenset({
    ExecutionStatus.SUCCESS,
    ExecutionStatus.FAILED,
    ExecutionStatus.SKIPPED,
})

STATUS_LEDGER_EVENTS: Dict[ExecutionStatus, LedgerEventType] = {
    ExecutionStatus.PENDING: LedgerEventType.SCHEDULED,
    ExecutionStatus.SUCCESS: LedgerEventType.SUCCEEDED,
    ExecutionStatus.FAILED: LedgerEventType.FAILED,
    ExecutionStatus.SKIPPED: LedgerEventType.SKIPPED,
}


# =============================================================================
# Utility
# =============================================================================


def _utcnow() -> datetime:
    """Return the current UTC time as a naive datetime (storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_uuid() -> str:
    """Generate a new UUID4 string."""
    return str(uuid.uuid4())


def to_naive_utc(dt: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values pass through."""
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _stringify_operand(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, set)):
        return ",".join(_stringify_operand(v) for v in value)
    return str(value)


# =============================================================================
# Scope (tagged variant)
# =============================================================================


class GlobalScope(BaseModel):
    """Applies to every subject. Carries no target."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    level: Literal["global"] = "global"


class GroupScope(BaseModel):
    """Applies to subjects whose department or role equals ``value``."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    level: Literal["group"] = "group"
    kind: GroupKind = Field(..., description="Subject attribute to match")
    value: str = Field(..., min_length=1, max_length=255)

    @field_validator("value", mode="before")
    @classmethod
    def _strip_value(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v


class UserScope(BaseModel):
    """Applies to the single subject with the given identifier."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    level: Literal["user"] = "user"
    user_id: str = Field(..., min_length=1, max_length=255)

    @field_validator("user_id", mode="before")
    @classmethod
    def _strip_user_id(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v


Scope = Annotated[
    Union[GlobalScope, GroupScope, UserScope],
    Field(discriminator="level"),
]


def scope_to_columns(scope: Union[GlobalScope, GroupScope, UserScope]) -> Tuple[str, Optional[str], Optional[str]]:
    """Flatten a scope into ``(policy_level, target_type, target_id)``."""
    if isinstance(scope, GroupScope):
        return ScopeLevel.GROUP.value, scope.kind.value, scope.value
    if isinstance(scope, UserScope):
        return ScopeLevel.USER.value, "user", scope.user_id
    return ScopeLevel.GLOBAL.value, None, None


def scope_from_columns(
    level: str,
    target_type: Optional[str],
    target_id: Optional[str],
) -> Union[GlobalScope, GroupScope, UserScope]:
    """Rebuild a scope from its stored columns."""
    if level == ScopeLevel.GROUP.value:
        return GroupScope(kind=GroupKind(target_type), value=target_id)
    if level == ScopeLevel.USER.value:
        return UserScope(user_id=target_id)
    return GlobalScope()


def scope_matches(
    scope: Union[GlobalScope, GroupScope, UserScope],
    subject: Optional["SubjectAttributes"],
) -> bool:
    """Return True when ``scope`` applies to ``subject``.

    A ``None`` subject means directory attributes are unavailable; only
    global scopes match in that case.
    """
    if isinstance(scope, GlobalScope):
        return True
    if subject is None:
        return False
    if isinstance(scope, GroupScope):
        if scope.kind == GroupKind.DEPARTMENT:
            return subject.department is not None and subject.department == scope.value
        return subject.role is not None and subject.role == scope.value
    return subject.identifier == scope.user_id


# =============================================================================
# Subjects and events
# =============================================================================


class SubjectAttributes(BaseModel):
    """Directory attributes of a monitored subject."""
    subject_id: str = Field(..., min_length=1)
    department: Optional[str] = None
    role: Optional[str] = None
    identifier: Optional[str] = Field(
        None, description="Identifier user-scoped policies target (defaults to subject_id)",
    )

    @model_validator(mode="after")
    def _default_identifier(self) -> "SubjectAttributes":
        if not self.identifier:
            self.identifier = self.subject_id
        return self


class SecurityEvent(BaseModel):
    """An incoming security/compliance event from a detection subsystem."""
    event_id: str = Field(default_factory=_new_uuid, description="Event ID")
    subject_id: str = Field(..., min_length=1, description="Monitored subject")
    category: Optional[str] = Field(None, description="Violation category/type")
    severity: Optional[str] = Field(None, description="Severity label")
    risk_score: Optional[float] = Field(None, description="Risk score")
    timestamp: datetime = Field(default_factory=_utcnow)
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _naive_timestamp(cls, v: datetime) -> datetime:
        return to_naive_utc(v)

    def attribute_map(self) -> Dict[str, Any]:
        """Merge free-form attributes with the well-known event fields."""
        attrs: Dict[str, Any] = dict(self.attributes)
        if self.category is not None:
            attrs[ConditionType.CATEGORY.value] = self.category
        if self.severity is not None:
            attrs[ConditionType.SEVERITY.value] = self.severity
        if self.risk_score is not None:
            attrs[ConditionType.RISK_SCORE.value] = self.risk_score
        return attrs


# =============================================================================
# Action configurations (discriminated by action type)
# =============================================================================


class EmailAlertConfig(BaseModel):
    """Configuration for ``email_alert``."""
    model_config = ConfigDict(extra="allow")

    recipients: List[str] = Field(..., min_length=1)
    subject: Optional[str] = None


class ImmediateAlertConfig(BaseModel):
    """Configuration for ``immediate_alert``."""
    model_config = ConfigDict(extra="allow")

    recipients: List[str] = Field(default_factory=list)
    priority: str = "urgent"
    channels: List[str] = Field(default_factory=lambda: ["email"])


class EscalateIncidentConfig(BaseModel):
    """Configuration for ``escalate_incident``."""
    model_config = ConfigDict(extra="allow")

    escalation_level: EscalationLevel = EscalationLevel.NORMAL
    notify_management: bool = False


class DisableAccessConfig(BaseModel):
    """Configuration for ``disable_access``."""
    model_config = ConfigDict(extra="allow")

    duration_hours: Optional[int] = Field(None, ge=1, description="None = indefinite")
    reason: Optional[str] = None
    notify_employee: bool = True


class IncreaseMonitoringConfig(BaseModel):
    """Configuration for ``increase_monitoring``."""
    model_config = ConfigDict(extra="allow")

    duration_hours: int = Field(24, ge=1)
    monitoring_level: MonitoringLevel = MonitoringLevel.HIGH


class LogDetailedActivityConfig(BaseModel):
    """Configuration for ``log_detailed_activity``."""
    model_config = ConfigDict(extra="allow")

    include_network: bool = False
    include_files: bool = False
    include_applications: bool = False
    duration_hours: Optional[int] = Field(None, ge=1)
    retention_days: int = Field(90, ge=1)


ACTION_CONFIG_MODELS: Dict[str, Type[BaseModel]] = {
    ActionType.EMAIL_ALERT.value: EmailAlertConfig,
    ActionType.IMMEDIATE_ALERT.value: ImmediateAlertConfig,
    ActionType.ESCALATE_INCIDENT.value: EscalateIncidentConfig,
    ActionType.DISABLE_ACCESS.value: DisableAccessConfig,
    ActionType.INCREASE_MONITORING.value: IncreaseMonitoringConfig,
    ActionType.LOG_DETAILED_ACTIVITY.value: LogDetailedActivityConfig,
}


def parse_action_config(
    action_type: str,
    payload: Optional[Dict[str, Any]],
) -> Union[BaseModel, Dict[str, Any]]:
    """Validate an action payload against its typed model.

    Unknown action types fall back to the raw key-value map.

    Raises:
        pydantic.ValidationError: If a known type's payload is invalid.
    """
    model = ACTION_CONFIG_MODELS.get(action_type)
    if model is None:
        return dict(payload or {})
    return model.model_validate(payload or {})


# =============================================================================
# Conditions and actions
# =============================================================================


class ConditionSpec(BaseModel):
    """Input definition of a policy condition."""
    model_config = ConfigDict(extra="forbid")

    condition_type: str = Field(..., min_length=1, max_length=50)
    operator: Operator = Operator.EQUALS
    value: str = Field(default="", description="Operand; lists are comma-joined")
    logical_operator: LogicalConnector = Field(
        default=LogicalConnector.AND,
        description="Connector to the next condition",
    )
    condition_order: Optional[int] = Field(None, ge=0)

    @field_validator("condition_type", mode="before")
    @classmethod
    def _normalize_type(cls, v: Any) -> Any:
        if not isinstance(v, str):
            return v
        key = v.strip().lower()
        return CONDITION_TYPE_ALIASES.get(key, key)

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_value(cls, v: Any) -> str:
        return _stringify_operand(v)

    @field_validator("operator", mode="before")
    @classmethod
    def _lower_operator(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("logical_operator", mode="before")
    @classmethod
    def _upper_connector(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def _numeric_operand(self) -> "ConditionSpec":
        if self.condition_type == ConditionType.ALWAYS.value:
            return self
        if self.operator in NUMERIC_OPERATORS:
            try:
                float(self.value)
            except ValueError:
                raise ValueError(
                    f"operator '{self.operator.value}' requires a numeric "
                    f"value, got '{self.value}'"
                )
        return self

    @property
    def is_always(self) -> bool:
        return self.condition_type == ConditionType.ALWAYS.value


class Condition(ConditionSpec):
    """A stored condition belonging to exactly one policy."""
    model_config = ConfigDict(extra="forbid")

    id: int
    policy_id: int
    condition_order: int = 1
    created_at: datetime = Field(default_factory=_utcnow)


class ActionSpec(BaseModel):
    """Input definition of a policy action."""
    model_config = ConfigDict(extra="forbid")

    action_type: str = Field(..., min_length=1, max_length=50)
    config: Dict[str, Any] = Field(default_factory=dict)
    execution_order: Optional[int] = Field(None, ge=0)
    delay_minutes: int = Field(default=0, ge=0)
    is_enabled: bool = True

    @field_validator("action_type", mode="before")
    @classmethod
    def _normalize_type(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def _validate_config(self) -> "ActionSpec":
        typed = parse_action_config(self.action_type, self.config)
        if isinstance(typed, BaseModel):
            self.config = typed.model_dump(mode="json")
        return self

    @property
    def delay(self) -> timedelta:
        return timedelta(minutes=self.delay_minutes)

    def typed_config(self) -> Union[BaseModel, Dict[str, Any]]:
        """Return the configuration as its typed model (or raw map)."""
        return parse_action_config(self.action_type, self.config)


class Action(ActionSpec):
    """A stored action belonging to exactly one policy."""
    model_config = ConfigDict(extra="forbid")

    id: int
    policy_id: int
    execution_order: int = 1
    created_at: datetime = Field(default_factory=_utcnow)


# =============================================================================
# Policies
# =============================================================================


class PolicySpec(BaseModel):
    """Input definition of a policy with its conditions and actions."""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=255)
    description: str = Field(default="")
    scope: Scope = Field(default_factory=GlobalScope)
    priority: int = Field(default=0, description="Higher number = higher priority")
    is_active: bool = True
    conditions: List[ConditionSpec] = Field(default_factory=list)
    actions: List[ActionSpec] = Field(default_factory=list)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v


class PolicyUpdate(BaseModel):
    """Partial update of a policy. Lists, when given, replace the stored ones."""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    scope: Optional[Scope] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None
    conditions: Optional[List[ConditionSpec]] = None
    actions: Optional[List[ActionSpec]] = None

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v


class Policy(BaseModel):
    """A stored policy with its ordered conditions and actions."""
    id: int
    name: str
    description: str = ""
    scope: Scope
    priority: int = 0
    is_active: bool = True
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    conditions: List[Condition] = Field(default_factory=list)
    actions: List[Action] = Field(default_factory=list)
    provenance_hash: str = Field(default="", description="SHA-256 of the policy content")

    @property
    def level(self) -> ScopeLevel:
        return ScopeLevel(self.scope.level)

    def enabled_actions(self) -> List[Action]:
        """Enabled actions in ascending execution order."""
        return sorted(
            (a for a in self.actions if a.is_enabled),
            key=lambda a: (a.execution_order, a.id),
        )

    def compute_hash(self) -> str:
        """Compute SHA-256 hash of the policy content for provenance tracking.

        Returns:
            Hex-encoded SHA-256 hash.
        """
        policy_str = json.dumps(
            {
                "id": self.id,
                "name": self.name,
                "scope": self.scope.model_dump(mode="json"),
                "priority": self.priority,
                "is_active": self.is_active,
                "conditions": [
                    c.model_dump(mode="json", exclude={"created_at"})
                    for c in self.conditions
                ],
                "actions": [
                    a.model_dump(mode="json", exclude={"created_at"})
                    for a in self.actions
                ],
            },
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(policy_str.encode()).hexdigest()


# =============================================================================
# Execution records, cache entries, ledger
# =============================================================================


class ExecutionRecord(BaseModel):
    """Tracks one action's lifecycle for one triggering event."""
    id: int
    policy_id: int
    action_id: int
    action_type: str
    execution_order: int = 1
    event_id: str
    subject_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    attempt: int = 1
    retry_of: Optional[int] = None
    scheduled_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_detail: Optional[str] = None
    result_details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def queue_key(self) -> Tuple[int, str]:
        """Sequential queue key: actions of one policy for one event."""
        return self.policy_id, self.event_id


class CacheEntry(BaseModel):
    """Cached resolution for one subject. Never edited, only replaced."""
    model_config = ConfigDict(frozen=True)

    subject_id: str
    policy_ids: Tuple[int, ...] = ()
    computed_at: datetime = Field(default_factory=_utcnow)
    attributes: Optional[SubjectAttributes] = None

    def is_fresh(self, now: datetime, ttl_seconds: float) -> bool:
        return (now - self.computed_at).total_seconds() < ttl_seconds


class LedgerEntry(BaseModel):
    """An immutable, hash-chained ledger entry."""
    id: int = 0
    entry_id: str = Field(default_factory=_new_uuid)
    entity_type: LedgerEntityType
    entity_id: str
    event_type: LedgerEventType
    actor: str = "system"
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)
    prev_hash: str = ""
    entry_hash: str = ""

    def compute_hash(self) -> str:
        """Chain hash over the entry content and the previous entry hash."""
        entry_str = json.dumps(
            {
                "entry_id": self.entry_id,
                "entity_type": self.entity_type.value,
                "entity_id": self.entity_id,
                "event_type": self.event_type.value,
                "actor": self.actor,
                "before": self.before,
                "after": self.after,
                "details": self.details,
                "timestamp": self.timestamp.isoformat(),
                "prev_hash": self.prev_hash,
            },
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(entry_str.encode()).hexdigest()


class ActionDispatch(BaseModel):
    """Request delivered to an action handler."""
    model_config = ConfigDict(frozen=True)

    execution_record_id: int
    policy_id: int
    policy_name: str = ""
    action_id: int
    action_type: str
    config: Dict[str, Any] = Field(default_factory=dict)
    subject_id: str
    event_id: str
    attempt: int = 1

    def typed_config(self) -> Union[BaseModel, Dict[str, Any]]:
        return parse_action_config(self.action_type, self.config)


class EvaluationResult(BaseModel):
    """Outcome of evaluating one event for one subject."""
    event_id: str
    subject_id: str
    matched_policy_ids: List[int] = Field(default_factory=list)
    created_execution_record_ids: List[int] = Field(default_factory=list)
    resolution_degraded: bool = Field(
        default=False, description="Directory lookup failed; only global policies applied",
    )
    evaluated_at: datetime = Field(default_factory=_utcnow)
    evaluation_time_ms: float = 0.0


__all__ = [
    # Enumerations
    "ScopeLevel",
    "GroupKind",
    "Operator",
    "LogicalConnector",
    "ConditionType",
    "ActionType",
    "ExecutionStatus",
    "EscalationLevel",
    "MonitoringLevel",
    "LedgerEntityType",
    "LedgerEventType",
    # Constants
    "NUMERIC_OPERATORS",
    "CONDITION_TYPE_ALIASES",
    "TERMINAL_STATUSES",
    "STATUS_LEDGER_EVENTS",
    "ACTION_CONFIG_MODELS",
    # Scope
    "GlobalScope",
    "GroupScope",
    "UserScope",
    "Scope",
    "scope_to_columns",
    "scope_from_columns",
    "scope_matches",
    # Inputs
    "SubjectAttributes",
    "SecurityEvent",
    "ConditionSpec",
    "ActionSpec",
    "PolicySpec",
    "PolicyUpdate",
    # Action configurations
    "EmailAlertConfig",
    "ImmediateAlertConfig",
    "EscalateIncidentConfig",
    "DisableAccessConfig",
    "IncreaseMonitoringConfig",
    "LogDetailedActivityConfig",
    "parse_action_config",
    # Stored / runtime
    "Condition",
    "Action",
    "Policy",
    "ExecutionRecord",
    "CacheEntry",
    "LedgerEntry",
    "ActionDispatch",
    "EvaluationResult",
    "to_naive_utc",
]
