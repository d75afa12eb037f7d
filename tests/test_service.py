# -*- coding: utf-8 -*-
"""
Test Suite for the Policy Engine Service Facade
===============================================

Component wiring, the handler registry, degraded evaluations and the
service metrics summary.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from insiderguard.policy_engine import (
    ActionSpec,
    ActionType,
    CallableDirectory,
    GroupScope,
    HandlerRegistry,
    PolicyEngineService,
    PolicySpec,
    logging_handler,
    register_logging_handlers,
)


class TestHandlerRegistry:
    """Registration and lookup of action handlers."""

    @pytest.fixture
    def registry(self):
        return HandlerRegistry()

    def test_register_direct_and_decorator(self, registry):
        def email(dispatch):
            return None

        registry.register("Email_Alert", email)

        @registry.register("open_ticket")
        def ticket(dispatch):
            return {"ticket": 1}

        assert registry.get("email_alert") is email
        assert registry.get("OPEN_TICKET") is ticket
        assert "open_ticket" in registry
        assert registry.action_types() == ["email_alert", "open_ticket"]

    def test_replace_and_unregister(self, registry):
        registry.register("email_alert", lambda d: None)
        replacement = lambda d: {"v": 2}  # noqa: E731
        registry.register("email_alert", replacement)

        assert registry.get("email_alert") is replacement
        assert registry.unregister("email_alert") is True
        assert registry.unregister("email_alert") is False
        assert registry.get("email_alert") is None

    def test_logging_handlers_fill_gaps(self, registry):
        """Built-in types get the logging handler unless already served."""
        custom = lambda d: None  # noqa: E731
        registry.register("disable_access", custom)
        register_logging_handlers(registry)

        assert len(registry) == len(ActionType)
        assert registry.get("disable_access") is custom
        assert registry.get("email_alert") is logging_handler


class TestPolicyEngineService:
    """Facade wiring and evaluation pipeline."""

    def test_log_only_handlers_config(self, config, database, clock):
        config.log_only_handlers = True
        service = PolicyEngineService(config=config, database=database, clock=clock)
        service.startup(start_executor=False)
        try:
            service.store.create_policy(
                PolicySpec(name="g", actions=[ActionSpec(action_type="increase_monitoring")]),
                actor="admin",
            )
            record_id = service.evaluate("emp-9", {}).created_execution_record_ids[0]
            service.run_pending()

            record = service.scheduler.get_record(record_id)
            assert record.status.value == "success"
            assert record.result_details["handler"] == "log_only"
        finally:
            service.shutdown()

    def test_database_from_config(self, config, clock, tmp_path):
        """Without an injected database the configured URL is used."""
        config.database_url = f"sqlite:///{tmp_path / 'configured.db'}"
        service = PolicyEngineService(config=config, clock=clock)
        try:
            assert service.database.url == config.database_url
            service.store.create_policy(PolicySpec(name="g"), actor="admin")
            assert service.store.count() == 1
            assert (tmp_path / "configured.db").exists()
        finally:
            service.database.dispose()

    def test_degraded_evaluation(self, config, database, registry, clock):
        """Directory outage still evaluates global policies."""

        def down(subject_id):
            raise ConnectionError("directory unreachable")

        service = PolicyEngineService(
            config=config, database=database, registry=registry,
            directory=CallableDirectory(down), clock=clock,
        )
        global_policy = service.store.create_policy(PolicySpec(name="global"), actor="admin")
        service.store.create_policy(
            PolicySpec(name="rnd", scope=GroupScope(kind="department", value="R&D")),
            actor="admin",
        )

        result = service.evaluate("emp-1", {"severity": "high"})
        assert result.resolution_degraded is True
        assert result.matched_policy_ids == [global_policy.id]
        assert service.get_metrics()["degraded_evaluations"] == 1

    def test_effective_policies(self, service):
        policy = service.store.create_policy(
            PolicySpec(name="rnd", scope=GroupScope(kind="department", value="R&D")),
            actor="admin",
        )
        assert [p.id for p in service.get_effective_policies("emp-1")] == [policy.id]
        assert service.get_effective_policies("emp-2") == []

    def test_directory_upsert_invalidates(self, service, directory):
        """The in-memory directory is wired to the cache invalidator."""
        service.get_effective_policies("emp-1")
        assert "emp-1" in service.cache

        directory.upsert("emp-1", department="Legal")
        assert "emp-1" not in service.cache

    def test_clear_cache(self, service):
        service.get_effective_policies("emp-1")
        service.get_effective_policies("emp-2")
        service.clear_cache()
        assert len(service.cache) == 0

    def test_metrics_summary(self, service):
        service.store.create_policy(
            PolicySpec(name="g", actions=[ActionSpec(action_type="increase_monitoring")]),
            actor="admin",
        )
        service.evaluate("emp-1", {"severity": "low"})
        service.evaluate("emp-2", {"severity": "low"})

        metrics = service.get_metrics()
        assert metrics["started"] is True
        assert metrics["total_evaluations"] == 2
        assert metrics["matched_evaluations"] == 2
        assert metrics["match_rate"] == 100
        assert metrics["scheduled_records"] == 2
        assert metrics["executions_by_status"]["pending"] == 2
        assert metrics["policies_stored"] == 1
        assert metrics["ledger_entries"] == 3

    def test_startup_recovers_stale_records(self, config, database, registry, clock):
        """Records left claimed by a previous process fail on startup."""
        first = PolicyEngineService(
            config=config, database=database, registry=registry, clock=clock,
        )
        first.store.create_policy(
            PolicySpec(name="g", actions=[ActionSpec(action_type="increase_monitoring")]),
            actor="admin",
        )
        record_id = first.evaluate("emp-1", {}).created_execution_record_ids[0]
        first.executor._claim(record_id)

        clock.advance(seconds=config.execution_timeout_seconds + 1)
        second = PolicyEngineService(
            config=config, database=database, registry=registry, clock=clock,
        )
        second.startup(start_executor=False)
        try:
            assert second.scheduler.get_record(record_id).status.value == "failed"
        finally:
            second.shutdown()


class TestConcurrentEvaluation:
    """Resolver and evaluator shared across threads."""

    def test_evaluate_while_store_mutates(self, service, directory):
        """Concurrent evaluations succeed and the cache converges."""
        created = []

        def evaluate_many(subject_id):
            for _ in range(15):
                service.evaluate(subject_id, {"severity": "high"})

        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [
                pool.submit(evaluate_many, subject_id)
                for subject_id in ("emp-1", "emp-2", "emp-1", "emp-2")
            ]
            for i in range(5):
                policy = service.store.create_policy(
                    PolicySpec(
                        name=f"rnd-{i}",
                        scope=GroupScope(kind="department", value="R&D"),
                        priority=i,
                    ),
                    actor="admin",
                )
                created.append(policy.id)
                service.store.update_policy(policy.id, {"priority": 10 + i}, actor="admin")
            for future in futures:
                future.result()

        effective = [p.id for p in service.get_effective_policies("emp-1")]
        assert sorted(effective) == sorted(created)
        assert effective == [p.id for p in service.store.list_candidates(directory.lookup("emp-1"))]
        assert service.get_effective_policies("emp-2") == []
        assert service.get_metrics()["total_evaluations"] == 60
