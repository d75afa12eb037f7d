# -*- coding: utf-8 -*-
"""
Policy Store - Policy Resolution & Execution Engine

Durable CRUD over policies, their conditions and their actions. Every
mutation is validated before anything is written, commits together with
its ledger entry, and then drops the cache entries of the subjects the
mutated policy applies to.

Example:
    >>> store = PolicyStore(database, ledger, invalidator)
    >>> policy = store.create_policy(
    ...     PolicySpec(
    ...         name="R&D exfiltration",
    ...         scope=GroupScope(kind="department", value="R&D"),
    ...         priority=80,
    ...         conditions=[ConditionSpec(condition_type="risk_score",
    ...                                   operator="greater_than", value=85)],
    ...         actions=[ActionSpec(action_type="escalate_incident")],
    ...     ),
    ...     actor="alice",
    ... )
    >>> candidates = store.list_candidates(SubjectAttributes(subject_id="e-1",
    ...                                                      department="R&D"))
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session, selectinload

from insiderguard.db import ActionRow, ConditionRow, Database, ExecutionRow, PolicyRow
from insiderguard.exceptions import PolicyNotFoundError, ValidationError
from insiderguard.policy_engine.cache import CacheInvalidator
from insiderguard.policy_engine.config import PolicyEngineConfig, get_config
from insiderguard.policy_engine.ledger import AuditLedger
from insiderguard.policy_engine.metrics import record_mutation, update_policies_count
from insiderguard.policy_engine.models import (
    Action,
    ActionSpec,
    Condition,
    ConditionSpec,
    GlobalScope,
    GroupKind,
    GroupScope,
    LedgerEntityType,
    LedgerEventType,
    Policy,
    PolicySpec,
    PolicyUpdate,
    ScopeLevel,
    SubjectAttributes,
    UserScope,
    _utcnow,
    scope_from_columns,
    scope_to_columns,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
ScopeT = Union[GlobalScope, GroupScope, UserScope]


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------


def _validate(model: Type[ModelT], data: Union[ModelT, Dict[str, Any]]) -> ModelT:
    """Coerce ``data`` into ``model`` or raise a store ValidationError."""
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        invalid_fields = {
            ".".join(str(p) for p in err["loc"]) or "__root__": err["msg"]
            for err in exc.errors()
        }
        raise ValidationError(
            f"Invalid {model.__name__}: {exc.error_count()} error(s)",
            invalid_fields=invalid_fields,
        ) from exc


def _condition_from_row(row: ConditionRow) -> Condition:
    return Condition(
        id=row.id,
        policy_id=row.policy_id,
        condition_type=row.condition_type,
        operator=row.operator,
        value=row.value or "",
        logical_operator=row.logical_operator,
        condition_order=row.condition_order,
        created_at=row.created_at,
    )


def _action_from_row(row: ActionRow) -> Action:
    return Action(
        id=row.id,
        policy_id=row.policy_id,
        action_type=row.action_type,
        config=dict(row.action_config or {}),
        execution_order=row.execution_order,
        delay_minutes=row.delay_minutes,
        is_enabled=row.is_enabled,
        created_at=row.created_at,
    )


def _policy_from_row(row: PolicyRow) -> Policy:
    return Policy(
        id=row.id,
        name=row.name,
        description=row.description or "",
        scope=scope_from_columns(row.policy_level, row.target_type, row.target_id),
        priority=row.priority,
        is_active=row.is_active,
        created_by=row.created_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
        conditions=sorted(
            (_condition_from_row(c) for c in row.conditions),
            key=lambda c: (c.condition_order, c.id),
        ),
        actions=sorted(
            (_action_from_row(a) for a in row.actions),
            key=lambda a: (a.execution_order, a.id),
        ),
        provenance_hash=row.provenance_hash or "",
    )


def _snapshot(model: Optional[BaseModel]) -> Optional[Dict[str, Any]]:
    return model.model_dump(mode="json") if model is not None else None


def _ordered(specs: Iterable[Any], attr: str) -> List[Any]:
    """Assign 1-based declaration order where the caller gave none."""
    result = []
    for index, spec in enumerate(specs, start=1):
        if getattr(spec, attr) is None:
            spec = spec.model_copy(update={attr: index})
        result.append(spec)
    return result


# ---------------------------------------------------------------------------
# PolicyStore
# ---------------------------------------------------------------------------


class PolicyStore:
    """Durable policy CRUD with ledger entries and cache invalidation.

    Attributes:
        _db: Database holding the policy tables.
        _ledger: Ledger receiving one entry per mutation.
        _invalidator: Cache invalidator called after every commit.
        _config: Capacity limits.
    """

    def __init__(
        self,
        database: Database,
        ledger: AuditLedger,
        invalidator: Optional[CacheInvalidator] = None,
        config: Optional[PolicyEngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._db = database
        self._ledger = ledger
        self._invalidator = invalidator
        self._config = config or get_config()
        self._clock = clock or _utcnow
        logger.info(
            "PolicyStore initialized (max_policies=%d)", self._config.max_policies,
        )

    # ------------------------------------------------------------------
    # Policy CRUD
    # ------------------------------------------------------------------

    def create_policy(
        self,
        spec: Union[PolicySpec, Dict[str, Any]],
        actor: str,
    ) -> Policy:
        """Create a policy with its conditions and actions.

        Args:
            spec: Policy definition.
            actor: Who creates the policy.

        Returns:
            The stored policy with its provenance hash.

        Raises:
            ValidationError: If the definition is malformed or a capacity
                limit would be exceeded.
        """
        spec = _validate(PolicySpec, spec)
        self._check_child_limits(len(spec.conditions), len(spec.actions))
        now = self._clock()

        with self._db.write_session() as session:
            total = session.query(func.count(PolicyRow.id)).scalar() or 0
            if total >= self._config.max_policies:
                raise ValidationError(
                    f"Maximum policy capacity ({self._config.max_policies}) reached",
                    context={"max_policies": self._config.max_policies},
                )

            level, target_type, target_id = scope_to_columns(spec.scope)
            row = PolicyRow(
                name=spec.name,
                description=spec.description,
                policy_level=level,
                target_type=target_type,
                target_id=target_id,
                priority=spec.priority,
                is_active=spec.is_active,
                created_by=actor,
                created_at=now,
                updated_at=now,
            )
            row.conditions = self._condition_rows(spec.conditions, now)
            row.actions = self._action_rows(spec.actions, now)
            session.add(row)
            session.flush()

            policy = self._refresh_hash(row)
            self._ledger.append(
                session, LedgerEntityType.POLICY, policy.id,
                LedgerEventType.CREATED, actor=actor, after=_snapshot(policy),
            )
            total += 1

        self._after_mutation(
            LedgerEntityType.POLICY, LedgerEventType.CREATED, [policy.scope],
        )
        update_policies_count(total)
        logger.info(
            "Created policy %d '%s' (%s, priority=%d, hash: %s)",
            policy.id, policy.name, policy.scope.level, policy.priority,
            policy.provenance_hash[:16],
        )
        return policy

    def get_policy(self, policy_id: int) -> Policy:
        """Get a policy by ID.

        Raises:
            PolicyNotFoundError: If the policy does not exist.
        """
        with self._db.session() as session:
            return _policy_from_row(self._load(session, policy_id))

    def list_policies(
        self,
        active_only: bool = False,
        level: Optional[Union[ScopeLevel, str]] = None,
    ) -> List[Policy]:
        """List policies with optional filters, in resolution order.

        Args:
            active_only: Only return active policies.
            level: Optional scope level filter.

        Returns:
            List of matching policies.
        """
        with self._db.session() as session:
            query = self._policy_query(session)
            if active_only:
                query = query.filter(PolicyRow.is_active.is_(True))
            if level is not None:
                query = query.filter(PolicyRow.policy_level == ScopeLevel(level).value)
            return [_policy_from_row(r) for r in query.all()]

    def update_policy(
        self,
        policy_id: int,
        update: Union[PolicyUpdate, Dict[str, Any]],
        actor: str,
    ) -> Policy:
        """Update an existing policy in place (the id never changes).

        Given condition or action lists replace the stored ones.

        Args:
            policy_id: ID of the policy to update.
            update: Fields to change.
            actor: Who performs the update.

        Returns:
            Updated policy with new provenance hash.

        Raises:
            PolicyNotFoundError: If policy_id not found.
            ValidationError: If the update is malformed, or changes the
                scope of a policy that already has execution records.
        """
        update = _validate(PolicyUpdate, update)
        self._check_child_limits(
            len(update.conditions) if update.conditions is not None else 0,
            len(update.actions) if update.actions is not None else 0,
        )
        now = self._clock()

        with self._db.write_session() as session:
            row = self._load(session, policy_id)
            before = _policy_from_row(row)

            if update.scope is not None and update.scope != before.scope:
                if self._has_executions(session, policy_id):
                    raise ValidationError(
                        "Scope of a policy with execution records cannot change",
                        context={"policy_id": policy_id},
                        invalid_fields={"scope": "immutable once executed"},
                    )
                row.policy_level, row.target_type, row.target_id = (
                    scope_to_columns(update.scope)
                )
            if update.name is not None:
                row.name = update.name
            if update.description is not None:
                row.description = update.description
            if update.priority is not None:
                row.priority = update.priority
            if update.is_active is not None:
                row.is_active = update.is_active
            if update.conditions is not None:
                row.conditions = self._condition_rows(update.conditions, now)
            if update.actions is not None:
                row.actions = self._action_rows(update.actions, now)

            row.updated_at = now
            session.flush()
            policy = self._refresh_hash(row)
            self._ledger.append(
                session, LedgerEntityType.POLICY, policy_id,
                LedgerEventType.UPDATED, actor=actor,
                before=_snapshot(before), after=_snapshot(policy),
            )

        self._after_mutation(
            LedgerEntityType.POLICY, LedgerEventType.UPDATED,
            [before.scope, policy.scope],
        )
        logger.info(
            "Updated policy %d (hash: %s)", policy_id, policy.provenance_hash[:16],
        )
        return policy

    def delete_policy(self, policy_id: int, actor: str) -> Policy:
        """Delete a policy together with its conditions and actions.

        Execution records of the policy are kept as history.

        Returns:
            The policy as it was before deletion.

        Raises:
            PolicyNotFoundError: If policy_id not found.
        """
        with self._db.write_session() as session:
            row = self._load(session, policy_id)
            before = _policy_from_row(row)
            session.delete(row)
            session.flush()
            self._ledger.append(
                session, LedgerEntityType.POLICY, policy_id,
                LedgerEventType.DELETED, actor=actor, before=_snapshot(before),
            )
            total = session.query(func.count(PolicyRow.id)).scalar() or 0

        self._after_mutation(
            LedgerEntityType.POLICY, LedgerEventType.DELETED, [before.scope],
        )
        update_policies_count(total)
        logger.info("Deleted policy %d '%s'", policy_id, before.name)
        return before

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    def add_condition(
        self,
        policy_id: int,
        spec: Union[ConditionSpec, Dict[str, Any]],
        actor: str,
    ) -> Condition:
        """Append a condition to a policy.

        Without an explicit ``condition_order`` the condition is placed
        after the existing ones.
        """
        spec = _validate(ConditionSpec, spec)
        now = self._clock()

        with self._db.write_session() as session:
            row = self._load(session, policy_id)
            if len(row.conditions) >= self._config.max_conditions_per_policy:
                raise ValidationError(
                    "Maximum conditions per policy "
                    f"({self._config.max_conditions_per_policy}) reached",
                    context={"policy_id": policy_id},
                )
            if spec.condition_order is None:
                last = max((c.condition_order for c in row.conditions), default=0)
                spec = spec.model_copy(update={"condition_order": last + 1})

            cond_row = self._condition_rows([spec], now)[0]
            row.conditions.append(cond_row)
            row.updated_at = now
            session.flush()
            condition = _condition_from_row(cond_row)
            self._refresh_hash(row)
            self._ledger.append(
                session, LedgerEntityType.CONDITION, condition.id,
                LedgerEventType.CREATED, actor=actor, after=_snapshot(condition),
                details={"policy_id": policy_id},
            )
            scope = scope_from_columns(row.policy_level, row.target_type, row.target_id)

        self._after_mutation(
            LedgerEntityType.CONDITION, LedgerEventType.CREATED, [scope],
        )
        return condition

    def remove_condition(self, policy_id: int, condition_id: int, actor: str) -> Condition:
        """Remove one condition from a policy.

        Raises:
            PolicyNotFoundError: If the policy or condition does not exist.
        """
        now = self._clock()
        with self._db.write_session() as session:
            row = self._load(session, policy_id)
            cond_row = self._child(row.conditions, condition_id, "condition", policy_id)
            before = _condition_from_row(cond_row)
            row.conditions.remove(cond_row)
            row.updated_at = now
            session.flush()
            self._refresh_hash(row)
            self._ledger.append(
                session, LedgerEntityType.CONDITION, condition_id,
                LedgerEventType.DELETED, actor=actor, before=_snapshot(before),
                details={"policy_id": policy_id},
            )
            scope = scope_from_columns(row.policy_level, row.target_type, row.target_id)

        self._after_mutation(
            LedgerEntityType.CONDITION, LedgerEventType.DELETED, [scope],
        )
        return before

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def add_action(
        self,
        policy_id: int,
        spec: Union[ActionSpec, Dict[str, Any]],
        actor: str,
    ) -> Action:
        """Append an action to a policy."""
        spec = _validate(ActionSpec, spec)
        now = self._clock()

        with self._db.write_session() as session:
            row = self._load(session, policy_id)
            if len(row.actions) >= self._config.max_actions_per_policy:
                raise ValidationError(
                    "Maximum actions per policy "
                    f"({self._config.max_actions_per_policy}) reached",
                    context={"policy_id": policy_id},
                )
            if spec.execution_order is None:
                last = max((a.execution_order for a in row.actions), default=0)
                spec = spec.model_copy(update={"execution_order": last + 1})

            action_row = self._action_rows([spec], now)[0]
            row.actions.append(action_row)
            row.updated_at = now
            session.flush()
            action = _action_from_row(action_row)
            self._refresh_hash(row)
            self._ledger.append(
                session, LedgerEntityType.ACTION, action.id,
                LedgerEventType.CREATED, actor=actor, after=_snapshot(action),
                details={"policy_id": policy_id},
            )
            scope = scope_from_columns(row.policy_level, row.target_type, row.target_id)

        self._after_mutation(LedgerEntityType.ACTION, LedgerEventType.CREATED, [scope])
        return action

    def update_action(
        self,
        policy_id: int,
        action_id: int,
        changes: Dict[str, Any],
        actor: str,
    ) -> Action:
        """Update fields of one action.

        The merged action is re-validated as a whole, so a new ``config``
        must satisfy the typed model of the (possibly new) action type.

        Raises:
            PolicyNotFoundError: If the policy or action does not exist.
            ValidationError: If the merged action is malformed.
        """
        now = self._clock()
        with self._db.write_session() as session:
            row = self._load(session, policy_id)
            action_row = self._child(row.actions, action_id, "action", policy_id)
            before = _action_from_row(action_row)

            merged = before.model_dump(
                include={"action_type", "config", "execution_order",
                         "delay_minutes", "is_enabled"},
            )
            merged.update(changes)
            spec = _validate(ActionSpec, merged)

            action_row.action_type = spec.action_type
            action_row.action_config = spec.config
            action_row.execution_order = (
                spec.execution_order if spec.execution_order is not None
                else before.execution_order
            )
            action_row.delay_minutes = spec.delay_minutes
            action_row.is_enabled = spec.is_enabled
            row.updated_at = now
            session.flush()
            action = _action_from_row(action_row)
            self._refresh_hash(row)
            self._ledger.append(
                session, LedgerEntityType.ACTION, action_id,
                LedgerEventType.UPDATED, actor=actor,
                before=_snapshot(before), after=_snapshot(action),
                details={"policy_id": policy_id},
            )
            scope = scope_from_columns(row.policy_level, row.target_type, row.target_id)

        self._after_mutation(LedgerEntityType.ACTION, LedgerEventType.UPDATED, [scope])
        return action

    def set_action_enabled(
        self,
        policy_id: int,
        action_id: int,
        enabled: bool,
        actor: str,
    ) -> Action:
        """Enable or disable one action.

        Disabling affects records not yet dispatched: the executor skips
        pending records of a disabled action.
        """
        now = self._clock()
        event_type = LedgerEventType.ENABLED if enabled else LedgerEventType.DISABLED
        with self._db.write_session() as session:
            row = self._load(session, policy_id)
            action_row = self._child(row.actions, action_id, "action", policy_id)
            before = _action_from_row(action_row)
            action_row.is_enabled = enabled
            row.updated_at = now
            session.flush()
            action = _action_from_row(action_row)
            self._refresh_hash(row)
            self._ledger.append(
                session, LedgerEntityType.ACTION, action_id, event_type,
                actor=actor, before=_snapshot(before), after=_snapshot(action),
                details={"policy_id": policy_id},
            )
            scope = scope_from_columns(row.policy_level, row.target_type, row.target_id)

        self._after_mutation(LedgerEntityType.ACTION, event_type, [scope])
        logger.info(
            "Action %d of policy %d %s by %s",
            action_id, policy_id, event_type.value, actor,
        )
        return action

    def remove_action(self, policy_id: int, action_id: int, actor: str) -> Action:
        """Remove one action from a policy.

        Raises:
            PolicyNotFoundError: If the policy or action does not exist.
        """
        now = self._clock()
        with self._db.write_session() as session:
            row = self._load(session, policy_id)
            action_row = self._child(row.actions, action_id, "action", policy_id)
            before = _action_from_row(action_row)
            row.actions.remove(action_row)
            row.updated_at = now
            session.flush()
            self._refresh_hash(row)
            self._ledger.append(
                session, LedgerEntityType.ACTION, action_id,
                LedgerEventType.DELETED, actor=actor, before=_snapshot(before),
                details={"policy_id": policy_id},
            )
            scope = scope_from_columns(row.policy_level, row.target_type, row.target_id)

        self._after_mutation(LedgerEntityType.ACTION, LedgerEventType.DELETED, [scope])
        return before

    # ------------------------------------------------------------------
    # Resolution support
    # ------------------------------------------------------------------

    def list_candidates(self, subject: Optional[SubjectAttributes]) -> List[Policy]:
        """Active policies whose scope applies to ``subject``.

        Ordered by descending priority, then descending creation time,
        then descending id. A ``None`` subject yields global policies only.
        """
        filters = [PolicyRow.policy_level == ScopeLevel.GLOBAL.value]
        if subject is not None:
            if subject.department:
                filters.append(and_(
                    PolicyRow.policy_level == ScopeLevel.GROUP.value,
                    PolicyRow.target_type == GroupKind.DEPARTMENT.value,
                    PolicyRow.target_id == subject.department,
                ))
            if subject.role:
                filters.append(and_(
                    PolicyRow.policy_level == ScopeLevel.GROUP.value,
                    PolicyRow.target_type == GroupKind.ROLE.value,
                    PolicyRow.target_id == subject.role,
                ))
            filters.append(and_(
                PolicyRow.policy_level == ScopeLevel.USER.value,
                PolicyRow.target_id == subject.identifier,
            ))

        with self._db.session() as session:
            rows = (
                self._policy_query(session)
                .filter(PolicyRow.is_active.is_(True), or_(*filters))
                .all()
            )
            return [_policy_from_row(r) for r in rows]

    def get_active_policies(self, policy_ids: Iterable[int]) -> Dict[int, Policy]:
        """Load the active policies among ``policy_ids``, keyed by id."""
        ids = list(policy_ids)
        if not ids:
            return {}
        with self._db.session() as session:
            rows = (
                self._policy_query(session)
                .filter(PolicyRow.id.in_(ids), PolicyRow.is_active.is_(True))
                .all()
            )
            return {r.id: _policy_from_row(r) for r in rows}

    def has_executions(self, policy_id: int) -> bool:
        """True if any execution record references the policy."""
        with self._db.session() as session:
            return self._has_executions(session, policy_id)

    @property
    def count(self) -> int:
        """Return the number of stored policies."""
        with self._db.session() as session:
            return session.query(func.count(PolicyRow.id)).scalar() or 0

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _policy_query(session: Session):
        return (
            session.query(PolicyRow)
            .options(selectinload(PolicyRow.conditions), selectinload(PolicyRow.actions))
            .order_by(
                PolicyRow.priority.desc(),
                PolicyRow.created_at.desc(),
                PolicyRow.id.desc(),
            )
        )

    @staticmethod
    def _load(session: Session, policy_id: int) -> PolicyRow:
        row = session.get(PolicyRow, policy_id)
        if row is None:
            raise PolicyNotFoundError(
                f"Policy not found: {policy_id}",
                entity_type=LedgerEntityType.POLICY.value,
                entity_id=policy_id,
            )
        return row

    @staticmethod
    def _child(rows, child_id: int, entity_type: str, policy_id: int):
        for child in rows:
            if child.id == child_id:
                return child
        raise PolicyNotFoundError(
            f"{entity_type.capitalize()} {child_id} not found on policy {policy_id}",
            entity_type=entity_type,
            entity_id=child_id,
            context={"policy_id": policy_id},
        )

    @staticmethod
    def _has_executions(session: Session, policy_id: int) -> bool:
        return (
            session.query(ExecutionRow.id)
            .filter(ExecutionRow.policy_id == policy_id)
            .first()
        ) is not None

    def _check_child_limits(self, conditions: int, actions: int) -> None:
        if conditions > self._config.max_conditions_per_policy:
            raise ValidationError(
                "Too many conditions",
                invalid_fields={
                    "conditions": f"at most {self._config.max_conditions_per_policy}",
                },
            )
        if actions > self._config.max_actions_per_policy:
            raise ValidationError(
                "Too many actions",
                invalid_fields={
                    "actions": f"at most {self._config.max_actions_per_policy}",
                },
            )

    @staticmethod
    def _condition_rows(specs: List[ConditionSpec], now: datetime) -> List[ConditionRow]:
        return [
            ConditionRow(
                condition_type=spec.condition_type,
                operator=spec.operator.value,
                value=spec.value,
                logical_operator=spec.logical_operator.value,
                condition_order=spec.condition_order,
                created_at=now,
            )
            for spec in _ordered(specs, "condition_order")
        ]

    @staticmethod
    def _action_rows(specs: List[ActionSpec], now: datetime) -> List[ActionRow]:
        return [
            ActionRow(
                action_type=spec.action_type,
                action_config=spec.config,
                execution_order=spec.execution_order,
                delay_minutes=spec.delay_minutes,
                is_enabled=spec.is_enabled,
                created_at=now,
            )
            for spec in _ordered(specs, "execution_order")
        ]

    @staticmethod
    def _refresh_hash(row: PolicyRow) -> Policy:
        policy = _policy_from_row(row)
        policy.provenance_hash = policy.compute_hash()
        row.provenance_hash = policy.provenance_hash
        return policy

    def _after_mutation(
        self,
        entity_type: LedgerEntityType,
        event_type: LedgerEventType,
        scopes: List[ScopeT],
    ) -> None:
        record_mutation(entity_type.value, event_type.value)
        if self._invalidator is None:
            return
        seen: List[ScopeT] = []
        for scope in scopes:
            if scope not in seen:
                seen.append(scope)
                self._invalidator.invalidate_scope(scope)


__all__ = [
    "PolicyStore",
]
