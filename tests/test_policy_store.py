# -*- coding: utf-8 -*-
"""
Test Suite for the Policy Store
===============================

CRUD over policies, conditions and actions, the ledger entries every
mutation writes, capacity limits and candidate ordering.
"""

import pytest

from insiderguard.exceptions import PolicyNotFoundError, ValidationError
from insiderguard.policy_engine import (
    ActionScheduler,
    ActionSpec,
    ConditionSpec,
    GlobalScope,
    GroupScope,
    LedgerEntityType,
    LedgerEventType,
    PolicySpec,
    PolicyStore,
    PolicyUpdate,
    ScopeLevel,
    SubjectAttributes,
    UserScope,
)


def _spec(name="Exfiltration", **kwargs):
    kwargs.setdefault("conditions", [
        ConditionSpec(condition_type="risk_score", operator="greater_than", value=85),
    ])
    kwargs.setdefault("actions", [
        ActionSpec(action_type="email_alert", config={"recipients": ["soc@example.com"]}),
        ActionSpec(action_type="escalate_incident", delay_minutes=10),
    ])
    return PolicySpec(name=name, **kwargs)


class TestPolicyCrud:
    """Create, read, update and delete policies."""

    def test_create_assigns_id_and_order(self, store):
        """Stored children get ids and 1-based declaration order."""
        policy = store.create_policy(_spec(), actor="alice")

        assert policy.id > 0
        assert policy.created_by == "alice"
        assert [c.condition_order for c in policy.conditions] == [1]
        assert [a.execution_order for a in policy.actions] == [1, 2]
        assert all(a.policy_id == policy.id for a in policy.actions)
        assert len(policy.provenance_hash) == 64

    def test_create_from_dict(self, store):
        policy = store.create_policy(
            {"name": "Role policy", "scope": {"level": "group", "kind": "role", "value": "contractor"}},
            actor="alice",
        )
        assert policy.scope == GroupScope(kind="role", value="contractor")

    def test_get_round_trip(self, store):
        created = store.create_policy(_spec(), actor="alice")
        loaded = store.get_policy(created.id)

        assert loaded == created
        assert loaded.actions[0].config == {"recipients": ["soc@example.com"], "subject": None}

    def test_get_missing_raises(self, store):
        with pytest.raises(PolicyNotFoundError) as exc_info:
            store.get_policy(999)
        assert exc_info.value.context["entity_id"] == 999

    def test_invalid_spec_raises_validation_error(self, store):
        """Malformed definitions surface as ValidationError with field details."""
        with pytest.raises(ValidationError) as exc_info:
            store.create_policy({"name": "", "priority": "high"}, actor="alice")
        invalid = exc_info.value.context["invalid_fields"]
        assert "name" in invalid
        assert "priority" in invalid

    def test_invalid_spec_writes_nothing(self, store, ledger):
        """A rejected write leaves neither a policy nor a ledger entry."""
        with pytest.raises(ValidationError):
            store.create_policy(
                {"name": "Bad", "actions": [{"action_type": "email_alert", "config": {}}]},
                actor="alice",
            )
        assert store.count == 0
        assert ledger.count == 0

    def test_update_in_place(self, store):
        """Updates keep the id and replace given child lists."""
        policy = store.create_policy(_spec(), actor="alice")
        updated = store.update_policy(
            policy.id,
            PolicyUpdate(
                priority=70,
                actions=[ActionSpec(action_type="increase_monitoring")],
            ),
            actor="bob",
        )

        assert updated.id == policy.id
        assert updated.priority == 70
        assert [a.action_type for a in updated.actions] == ["increase_monitoring"]
        assert updated.conditions == policy.conditions
        assert updated.provenance_hash != policy.provenance_hash

    def test_update_missing_raises(self, store):
        with pytest.raises(PolicyNotFoundError):
            store.update_policy(42, {"priority": 1}, actor="bob")

    def test_delete_returns_previous_state(self, store):
        policy = store.create_policy(_spec(), actor="alice")
        deleted = store.delete_policy(policy.id, actor="bob")

        assert deleted.id == policy.id
        with pytest.raises(PolicyNotFoundError):
            store.get_policy(policy.id)
        assert store.count == 0

    def test_list_filters(self, store):
        store.create_policy(PolicySpec(name="G", priority=50), actor="a")
        store.create_policy(
            PolicySpec(name="U", scope=UserScope(user_id="emp-1"), priority=95, is_active=False),
            actor="a",
        )

        assert [p.name for p in store.list_policies()] == ["U", "G"]
        assert [p.name for p in store.list_policies(active_only=True)] == ["G"]
        assert [p.name for p in store.list_policies(level=ScopeLevel.USER)] == ["U"]


class TestScopeImmutability:
    """Scope changes once execution records exist."""

    def test_scope_change_allowed_without_executions(self, store):
        policy = store.create_policy(_spec(), actor="alice")
        updated = store.update_policy(
            policy.id, {"scope": {"level": "user", "user_id": "emp-1"}}, actor="alice",
        )
        assert updated.scope == UserScope(user_id="emp-1")

    def test_scope_change_rejected_after_execution(self, store, database, ledger, clock):
        """A policy that has produced execution records keeps its scope."""
        policy = store.create_policy(_spec(), actor="alice")
        scheduler = ActionScheduler(database, ledger, store, clock=clock)
        scheduler.trigger_policy(policy.id, "emp-1", actor="alice")

        assert store.has_executions(policy.id)
        with pytest.raises(ValidationError):
            store.update_policy(
                policy.id, {"scope": {"level": "user", "user_id": "emp-1"}}, actor="alice",
            )
        assert store.get_policy(policy.id).scope == GlobalScope()

    def test_same_scope_allowed_after_execution(self, store, database, ledger, clock):
        policy = store.create_policy(_spec(), actor="alice")
        ActionScheduler(database, ledger, store, clock=clock).trigger_policy(
            policy.id, "emp-1", actor="alice",
        )
        updated = store.update_policy(
            policy.id, {"scope": {"level": "global"}, "priority": 5}, actor="alice",
        )
        assert updated.priority == 5


class TestConditionsAndActions:
    """Child entity mutations."""

    @pytest.fixture
    def policy(self, store):
        return store.create_policy(_spec(), actor="alice")

    def test_add_condition_appends(self, store, policy):
        condition = store.add_condition(
            policy.id, {"condition_type": "severity", "value": "critical"}, actor="bob",
        )
        assert condition.condition_order == 2
        assert [c.id for c in store.get_policy(policy.id).conditions][-1] == condition.id

    def test_remove_condition(self, store, policy):
        cid = policy.conditions[0].id
        removed = store.remove_condition(policy.id, cid, actor="bob")
        assert removed.id == cid
        assert store.get_policy(policy.id).conditions == []

    def test_remove_condition_of_other_policy(self, store, policy):
        other = store.create_policy(_spec("Other"), actor="alice")
        with pytest.raises(PolicyNotFoundError):
            store.remove_condition(other.id, policy.conditions[0].id, actor="bob")

    def test_add_action_appends(self, store, policy):
        action = store.add_action(
            policy.id, ActionSpec(action_type="disable_access"), actor="bob",
        )
        assert action.execution_order == 3

    def test_update_action_revalidates(self, store, policy):
        """Changing an action's config is checked against its typed model."""
        action = policy.actions[0]
        with pytest.raises(ValidationError):
            store.update_action(policy.id, action.id, {"config": {"recipients": []}}, actor="bob")

        updated = store.update_action(policy.id, action.id, {"delay_minutes": 5}, actor="bob")
        assert updated.delay_minutes == 5
        assert updated.config["recipients"] == ["soc@example.com"]

    def test_disable_and_enable_action(self, store, ledger, policy):
        action = policy.actions[1]
        assert store.set_action_enabled(policy.id, action.id, False, actor="bob").is_enabled is False
        assert [a.id for a in store.get_policy(policy.id).enabled_actions()] == [policy.actions[0].id]

        store.set_action_enabled(policy.id, action.id, True, actor="bob")
        events = [
            e.event_type for e in ledger.get_entity_history(LedgerEntityType.ACTION, action.id)
        ]
        assert events == [LedgerEventType.DISABLED, LedgerEventType.ENABLED]

    def test_remove_action(self, store, policy):
        store.remove_action(policy.id, policy.actions[0].id, actor="bob")
        assert [a.id for a in store.get_policy(policy.id).actions] == [policy.actions[1].id]

    def test_missing_action(self, store, policy):
        with pytest.raises(PolicyNotFoundError):
            store.set_action_enabled(policy.id, 999, False, actor="bob")


class TestLedgerEntries:
    """Every mutation writes exactly one ledger entry."""

    def test_policy_history(self, store, ledger):
        policy = store.create_policy(_spec(), actor="alice")
        store.update_policy(policy.id, {"priority": 10}, actor="bob")
        store.delete_policy(policy.id, actor="carol")

        history = ledger.get_entity_history(LedgerEntityType.POLICY, policy.id)
        assert [(e.event_type, e.actor) for e in history] == [
            (LedgerEventType.CREATED, "alice"),
            (LedgerEventType.UPDATED, "bob"),
            (LedgerEventType.DELETED, "carol"),
        ]
        assert history[0].before is None
        assert history[1].before["priority"] == 0
        assert history[1].after["priority"] == 10
        assert history[2].after is None

    def test_child_mutations_reference_policy(self, store, ledger):
        policy = store.create_policy(_spec(), actor="alice")
        condition = store.add_condition(policy.id, {"condition_type": "always"}, actor="bob")

        entry = ledger.get_entity_history(LedgerEntityType.CONDITION, condition.id)[0]
        assert entry.event_type == LedgerEventType.CREATED
        assert entry.details == {"policy_id": policy.id}


class TestCapacityLimits:
    """Configured maxima are enforced before writing."""

    @pytest.fixture
    def small_store(self, database, ledger, config, clock):
        config.max_policies = 2
        config.max_conditions_per_policy = 1
        config.max_actions_per_policy = 1
        return PolicyStore(database, ledger, config=config, clock=clock)

    def test_max_policies(self, small_store):
        small_store.create_policy(PolicySpec(name="one"), actor="a")
        small_store.create_policy(PolicySpec(name="two"), actor="a")
        with pytest.raises(ValidationError):
            small_store.create_policy(PolicySpec(name="three"), actor="a")
        assert small_store.count == 2

    def test_max_children(self, small_store):
        with pytest.raises(ValidationError):
            small_store.create_policy(_spec(), actor="a")

        policy = small_store.create_policy(
            PolicySpec(name="ok", conditions=[ConditionSpec(condition_type="always")]),
            actor="a",
        )
        with pytest.raises(ValidationError):
            small_store.add_condition(policy.id, {"condition_type": "always"}, actor="a")


class TestCandidates:
    """Scope filtering and resolution ordering."""

    def test_candidates_for_subject(self, store):
        store.create_policy(PolicySpec(name="global"), actor="a")
        store.create_policy(
            PolicySpec(name="rnd", scope=GroupScope(kind="department", value="R&D")), actor="a",
        )
        store.create_policy(
            PolicySpec(name="engineers", scope=GroupScope(kind="role", value="engineer")),
            actor="a",
        )
        store.create_policy(
            PolicySpec(name="finance", scope=GroupScope(kind="department", value="Finance")),
            actor="a",
        )
        store.create_policy(PolicySpec(name="me", scope=UserScope(user_id="emp-1")), actor="a")
        store.create_policy(PolicySpec(name="other", scope=UserScope(user_id="emp-2")), actor="a")
        store.create_policy(PolicySpec(name="off", is_active=False), actor="a")

        subject = SubjectAttributes(subject_id="emp-1", department="R&D", role="engineer")
        names = {p.name for p in store.list_candidates(subject)}
        assert names == {"global", "rnd", "engineers", "me"}
        assert [p.name for p in store.list_candidates(None)] == ["global"]

    def test_ordering_ties(self, store, clock):
        """Priority desc, then creation time desc, then id desc."""
        first = store.create_policy(PolicySpec(name="first", priority=10), actor="a")
        second = store.create_policy(PolicySpec(name="second", priority=10), actor="a")
        clock.advance(minutes=1)
        third = store.create_policy(PolicySpec(name="third", priority=10), actor="a")
        top = store.create_policy(PolicySpec(name="top", priority=20), actor="a")

        ids = [p.id for p in store.list_candidates(None)]
        assert ids == [top.id, third.id, second.id, first.id]

    def test_active_policies_lookup(self, store):
        on = store.create_policy(PolicySpec(name="on"), actor="a")
        off = store.create_policy(PolicySpec(name="off", is_active=False), actor="a")
        found = store.get_active_policies([on.id, off.id, 999])
        assert list(found) == [on.id]
