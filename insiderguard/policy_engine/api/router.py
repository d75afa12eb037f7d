# -*- coding: utf-8 -*-
"""
Policy Engine REST API Router

Administrative and evaluation endpoints at prefix
``/api/v1/policy-engine``. Mutating endpoints take the acting user from
the ``X-Actor`` header.

Endpoints:
    POST   /policies                                 Create policy
    GET    /policies                                 List policies
    GET    /policies/{policy_id}                     Get policy
    PUT    /policies/{policy_id}                     Update policy
    DELETE /policies/{policy_id}                     Delete policy
    POST   /policies/{policy_id}/conditions          Add condition
    DELETE /policies/{policy_id}/conditions/{cid}    Remove condition
    POST   /policies/{policy_id}/actions             Add action
    PATCH  /policies/{policy_id}/actions/{aid}       Update action
    POST   /policies/{policy_id}/actions/{aid}/enable
    POST   /policies/{policy_id}/actions/{aid}/disable
    DELETE /policies/{policy_id}/actions/{aid}       Remove action
    GET    /effective/{subject_id}                   Effective policies
    POST   /evaluate                                 Evaluate an event
    POST   /trigger/{policy_id}                      Manual trigger
    GET    /executions                               List execution records
    GET    /executions/{record_id}                   Get execution record
    POST   /executions/{record_id}/retry             Retry execution record
    GET    /ledger                                   Query ledger
    GET    /ledger/verify                            Verify hash chain
    GET    /ledger/{entity_type}/{entity_id}         Entity history
    GET    /health                                   Service metrics
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field

from insiderguard.exceptions import PolicyNotFoundError, ValidationError
from insiderguard.policy_engine.models import (
    Action,
    ActionSpec,
    Condition,
    ConditionSpec,
    EvaluationResult,
    ExecutionRecord,
    ExecutionStatus,
    LedgerEntityType,
    LedgerEntry,
    Policy,
    PolicySpec,
    PolicyUpdate,
    ScopeLevel,
    SecurityEvent,
)


class TriggerRequest(BaseModel):
    """Body of a manual policy trigger."""
    subject_id: str = Field(..., min_length=1)
    event_id: Optional[str] = None


class TriggerResponse(BaseModel):
    policy_id: int
    event_id: Optional[str] = None
    execution_record_ids: List[int] = Field(default_factory=list)


class ChainVerification(BaseModel):
    valid: bool
    entries: int


router = APIRouter(
    prefix="/api/v1/policy-engine",
    tags=["policy-engine"],
)


def _svc(request: Request):
    """Get the app's PolicyEngineService for route handlers."""
    from insiderguard.policy_engine.setup import get_policy_engine
    try:
        return get_policy_engine(request.app)
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


def _actor(x_actor: str = Header("api", alias="X-Actor")) -> str:
    return x_actor.strip() or "api"


@contextmanager
def _errors() -> Iterator[None]:
    try:
        yield
    except PolicyNotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.to_dict())
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.to_dict())


# ------------------------------------------------------------------
# Policies
# ------------------------------------------------------------------


@router.post("/policies", response_model=Policy, status_code=201)
def post_create_policy(
    spec: PolicySpec,
    service=Depends(_svc),
    actor: str = Depends(_actor),
) -> Policy:
    """Create a policy with its conditions and actions."""
    with _errors():
        return service.store.create_policy(spec, actor=actor)


@router.get("/policies", response_model=List[Policy])
def get_list_policies(
    active_only: bool = Query(False),
    level: Optional[ScopeLevel] = Query(None),
    service=Depends(_svc),
) -> List[Policy]:
    """List policies in resolution order."""
    return service.store.list_policies(active_only=active_only, level=level)


@router.get("/policies/{policy_id}", response_model=Policy)
def get_policy_by_id(policy_id: int, service=Depends(_svc)) -> Policy:
    """Get a policy by its identifier."""
    with _errors():
        return service.store.get_policy(policy_id)


@router.put("/policies/{policy_id}", response_model=Policy)
def put_update_policy(
    policy_id: int,
    update: PolicyUpdate,
    service=Depends(_svc),
    actor: str = Depends(_actor),
) -> Policy:
    """Update a policy; given condition/action lists replace stored ones."""
    with _errors():
        return service.store.update_policy(policy_id, update, actor=actor)


@router.delete("/policies/{policy_id}", status_code=204)
def delete_policy_by_id(
    policy_id: int,
    service=Depends(_svc),
    actor: str = Depends(_actor),
) -> None:
    """Delete a policy with its conditions and actions."""
    with _errors():
        service.store.delete_policy(policy_id, actor=actor)


# ------------------------------------------------------------------
# Conditions and actions
# ------------------------------------------------------------------


@router.post("/policies/{policy_id}/conditions", response_model=Condition, status_code=201)
def post_add_condition(
    policy_id: int,
    spec: ConditionSpec,
    service=Depends(_svc),
    actor: str = Depends(_actor),
) -> Condition:
    with _errors():
        return service.store.add_condition(policy_id, spec, actor=actor)


@router.delete("/policies/{policy_id}/conditions/{condition_id}", status_code=204)
def delete_condition(
    policy_id: int,
    condition_id: int,
    service=Depends(_svc),
    actor: str = Depends(_actor),
) -> None:
    with _errors():
        service.store.remove_condition(policy_id, condition_id, actor=actor)


@router.post("/policies/{policy_id}/actions", response_model=Action, status_code=201)
def post_add_action(
    policy_id: int,
    spec: ActionSpec,
    service=Depends(_svc),
    actor: str = Depends(_actor),
) -> Action:
    with _errors():
        return service.store.add_action(policy_id, spec, actor=actor)


@router.patch("/policies/{policy_id}/actions/{action_id}", response_model=Action)
def patch_update_action(
    policy_id: int,
    action_id: int,
    changes: Dict[str, Any] = Body(...),
    service=Depends(_svc),
    actor: str = Depends(_actor),
) -> Action:
    """Update fields of an action; the merged action is re-validated."""
    with _errors():
        return service.store.update_action(policy_id, action_id, changes, actor=actor)


@router.post("/policies/{policy_id}/actions/{action_id}/enable", response_model=Action)
def post_enable_action(
    policy_id: int,
    action_id: int,
    service=Depends(_svc),
    actor: str = Depends(_actor),
) -> Action:
    with _errors():
        return service.store.set_action_enabled(policy_id, action_id, True, actor=actor)


@router.post("/policies/{policy_id}/actions/{action_id}/disable", response_model=Action)
def post_disable_action(
    policy_id: int,
    action_id: int,
    service=Depends(_svc),
    actor: str = Depends(_actor),
) -> Action:
    """Disable an action; pending records of it will be skipped."""
    with _errors():
        return service.store.set_action_enabled(policy_id, action_id, False, actor=actor)


@router.delete("/policies/{policy_id}/actions/{action_id}", status_code=204)
def delete_action(
    policy_id: int,
    action_id: int,
    service=Depends(_svc),
    actor: str = Depends(_actor),
) -> None:
    with _errors():
        service.store.remove_action(policy_id, action_id, actor=actor)


# ------------------------------------------------------------------
# Resolution, evaluation and triggering
# ------------------------------------------------------------------


@router.get("/effective/{subject_id}", response_model=List[Policy])
def get_effective_policies(subject_id: str, service=Depends(_svc)) -> List[Policy]:
    """Resolved, priority-ordered policies applicable to a subject."""
    return service.get_effective_policies(subject_id)


@router.post("/evaluate", response_model=EvaluationResult)
def post_evaluate(event: SecurityEvent, service=Depends(_svc)) -> EvaluationResult:
    """Evaluate an event and schedule the triggered actions."""
    with _errors():
        return service.evaluate(event.subject_id, event)


@router.post("/trigger/{policy_id}", response_model=TriggerResponse, status_code=201)
def post_trigger_policy(
    policy_id: int,
    body: TriggerRequest,
    service=Depends(_svc),
    actor: str = Depends(_actor),
) -> TriggerResponse:
    """Schedule a policy's actions without evaluating its conditions."""
    with _errors():
        ids = service.trigger_policy(
            policy_id, body.subject_id, actor=actor, event_id=body.event_id,
        )
    event_id = body.event_id
    if ids and event_id is None:
        event_id = service.scheduler.get_record(ids[0]).event_id
    return TriggerResponse(policy_id=policy_id, event_id=event_id, execution_record_ids=ids)


# ------------------------------------------------------------------
# Execution records
# ------------------------------------------------------------------


@router.get("/executions", response_model=List[ExecutionRecord])
def get_list_executions(
    policy_id: Optional[int] = Query(None),
    subject_id: Optional[str] = Query(None),
    event_id: Optional[str] = Query(None),
    status: Optional[ExecutionStatus] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    service=Depends(_svc),
) -> List[ExecutionRecord]:
    return service.scheduler.list_records(
        policy_id=policy_id, subject_id=subject_id, event_id=event_id,
        status=status, limit=limit, offset=offset,
    )


@router.get("/executions/{record_id}", response_model=ExecutionRecord)
def get_execution(record_id: int, service=Depends(_svc)) -> ExecutionRecord:
    with _errors():
        return service.scheduler.get_record(record_id)


@router.post("/executions/{record_id}/retry", response_model=ExecutionRecord, status_code=201)
def post_retry_execution(
    record_id: int,
    service=Depends(_svc),
    actor: str = Depends(_actor),
) -> ExecutionRecord:
    """Schedule a new attempt of a failed or skipped record."""
    with _errors():
        return service.retry_execution(record_id, actor=actor)


# ------------------------------------------------------------------
# Ledger
# ------------------------------------------------------------------


@router.get("/ledger", response_model=List[LedgerEntry])
def get_ledger_entries(
    entity_type: Optional[LedgerEntityType] = Query(None),
    entity_id: Optional[str] = Query(None),
    actor: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    service=Depends(_svc),
) -> List[LedgerEntry]:
    """Query the ledger (newest first)."""
    return service.ledger.get_entries(
        entity_type=entity_type, entity_id=entity_id, actor=actor,
        start=start, end=end, limit=limit, offset=offset,
    )


@router.get("/ledger/verify", response_model=ChainVerification)
def get_verify_ledger(service=Depends(_svc)) -> ChainVerification:
    return ChainVerification(
        valid=service.ledger.verify_chain(), entries=service.ledger.count,
    )


@router.get("/ledger/{entity_type}/{entity_id}", response_model=List[LedgerEntry])
def get_entity_history(
    entity_type: LedgerEntityType,
    entity_id: str,
    service=Depends(_svc),
) -> List[LedgerEntry]:
    """Full history of one entity in chronological order."""
    return service.ledger.get_entity_history(entity_type, entity_id)


# ------------------------------------------------------------------
# Health
# ------------------------------------------------------------------


@router.get("/health")
def get_health(service=Depends(_svc)) -> Dict[str, Any]:
    return service.get_metrics()


__all__ = [
    "router",
    "TriggerRequest",
    "TriggerResponse",
    "ChainVerification",
]
