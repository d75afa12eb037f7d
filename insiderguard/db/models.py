"""
Database models for the policy resolution and execution engine

Supports:
- Hierarchical security policies (global / group / user)
- Ordered policy conditions and actions
- Durable execution records
- Append-only, hash-chained ledger
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from insiderguard.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PolicyRow(Base):
    """Security policy with hierarchy scope"""

    __tablename__ = "security_policies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Scope: NULL target for global, department/role for group, identifier for user
    policy_level = Column(String(20), nullable=False)
    target_type = Column(String(20), nullable=True)
    target_id = Column(String(255), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    priority = Column(Integer, default=0, nullable=False)  # Higher number = higher priority

    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)
    provenance_hash = Column(String(64), nullable=True)

    # Relationships
    conditions = relationship(
        "ConditionRow",
        back_populates="policy",
        cascade="all, delete-orphan",
        order_by=lambda: [ConditionRow.condition_order, ConditionRow.id],
    )
    actions = relationship(
        "ActionRow",
        back_populates="policy",
        cascade="all, delete-orphan",
        order_by=lambda: [ActionRow.execution_order, ActionRow.id],
    )

    __table_args__ = (
        CheckConstraint(
            "(policy_level = 'global' AND target_id IS NULL AND target_type IS NULL) OR "
            "(policy_level = 'group' AND target_id IS NOT NULL AND target_type IN ('department', 'role')) OR "
            "(policy_level = 'user' AND target_id IS NOT NULL AND target_type = 'user')",
            name="valid_target_combination",
        ),
        Index("idx_security_policies_level_active", "policy_level", "is_active"),
        Index("idx_security_policies_target", "target_type", "target_id"),
        Index("idx_security_policies_priority", "priority", "created_at"),
        # Ids are never reused: execution records outlive their policy
        {"sqlite_autoincrement": True},
    )

    def __repr__(self):
        return f"<PolicyRow(id={self.id}, name={self.name}, level={self.policy_level})>"


class ConditionRow(Base):
    """Trigger condition of a policy"""

    __tablename__ = "policy_conditions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    policy_id = Column(
        Integer, ForeignKey("security_policies.id", ondelete="CASCADE"), nullable=False,
    )
    condition_type = Column(String(50), nullable=False)
    operator = Column(String(20), nullable=False)
    value = Column(Text, nullable=False, default="")
    logical_operator = Column(String(10), nullable=False, default="AND")
    condition_order = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    policy = relationship("PolicyRow", back_populates="conditions")

    __table_args__ = (
        CheckConstraint("logical_operator IN ('AND', 'OR')", name="valid_logical_operator"),
        Index("idx_policy_conditions_policy_id", "policy_id"),
        {"sqlite_autoincrement": True},
    )

    def __repr__(self):
        return f"<ConditionRow(id={self.id}, policy_id={self.policy_id}, type={self.condition_type})>"


class ActionRow(Base):
    """Remediation action of a policy"""

    __tablename__ = "policy_actions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    policy_id = Column(
        Integer, ForeignKey("security_policies.id", ondelete="CASCADE"), nullable=False,
    )
    action_type = Column(String(50), nullable=False)
    action_config = Column(JSON, nullable=False, default=dict)
    execution_order = Column(Integer, nullable=False, default=1)  # 1 = first
    delay_minutes = Column(Integer, nullable=False, default=0)
    is_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    policy = relationship("PolicyRow", back_populates="actions")

    __table_args__ = (
        Index("idx_policy_actions_policy_id", "policy_id", "execution_order"),
        {"sqlite_autoincrement": True},
    )

    def __repr__(self):
        return f"<ActionRow(id={self.id}, policy_id={self.policy_id}, type={self.action_type})>"


class ExecutionRow(Base):
    """One action's lifecycle for one triggering event.

    Policy and action ids are plain columns: execution history outlives
    deleted policies.
    """

    __tablename__ = "policy_executions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    policy_id = Column(Integer, nullable=False)
    action_id = Column(Integer, nullable=False)
    action_type = Column(String(50), nullable=False)
    execution_order = Column(Integer, nullable=False, default=1)
    event_id = Column(String(255), nullable=False)
    subject_id = Column(String(255), nullable=False)

    status = Column(String(20), nullable=False, default="pending")
    attempt = Column(Integer, nullable=False, default=1)
    retry_of = Column(Integer, ForeignKey("policy_executions.id"), nullable=True)

    scheduled_at = Column(DateTime, nullable=False)
    started_at = Column(DateTime, nullable=True)  # Set when an executor claims the record
    completed_at = Column(DateTime, nullable=True)
    error_detail = Column(Text, nullable=True)
    result_details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'success', 'failed', 'skipped')",
            name="valid_execution_status",
        ),
        UniqueConstraint(
            "policy_id", "action_id", "event_id", "attempt",
            name="uq_execution_policy_action_event_attempt",
        ),
        Index("idx_policy_executions_due", "status", "scheduled_at"),
        Index("idx_policy_executions_policy_event", "policy_id", "event_id"),
        Index("idx_policy_executions_subject", "subject_id", "created_at"),
    )

    def __repr__(self):
        return f"<ExecutionRow(id={self.id}, policy_id={self.policy_id}, status={self.status})>"


class LedgerRow(Base):
    """Append-only audit ledger entry"""

    __tablename__ = "policy_ledger"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(String(36), nullable=False, unique=True)
    entity_type = Column(String(30), nullable=False)
    entity_id = Column(String(64), nullable=False)
    event_type = Column(String(30), nullable=False)
    actor = Column(String(255), nullable=False)
    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)
    details = Column(JSON, nullable=True)
    timestamp = Column(DateTime, nullable=False)
    prev_hash = Column(String(64), nullable=False, default="")
    entry_hash = Column(String(64), nullable=False)

    __table_args__ = (
        Index("idx_policy_ledger_entity", "entity_type", "entity_id"),
        Index("idx_policy_ledger_timestamp", "timestamp"),
        Index("idx_policy_ledger_actor", "actor", "timestamp"),
    )

    def __repr__(self):
        return f"<LedgerRow(id={self.id}, entity={self.entity_type}:{self.entity_id}, event={self.event_type})>"
