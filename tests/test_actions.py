"""Tests for the AI action state machine and the in-memory action store."""

import asyncio

import pytest

from pm_agents.actions import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    AIAction,
    ActionResult,
    ActionStatus,
    InMemoryActionStore,
    MutationSource,
    PlannedMutation,
    can_transition,
)
from pm_agents.errors import ActionNotFound, InvalidStateTransition
from pm_agents.governance import Disposition


def _action(disposition=Disposition.PROPOSE) -> AIAction:
    return AIAction(
        tenant_id="tenant-a",
        capability="wbs_generator",
        disposition=disposition,
        input={"description": "Launch a website"},
        triggered_by="user-1",
    )


def test_terminal_statuses():
    assert TERMINAL_STATUSES == {ActionStatus.REJECTED, ActionStatus.FAILED, ActionStatus.ROLLED_BACK}


@pytest.mark.parametrize(
    "current, target, allowed",
    [
        (ActionStatus.PENDING, ActionStatus.RUNNING, True),
        (ActionStatus.PENDING, ActionStatus.FAILED, True),
        (ActionStatus.PENDING, ActionStatus.PROPOSED, False),
        (ActionStatus.RUNNING, ActionStatus.PROPOSED, True),
        (ActionStatus.RUNNING, ActionStatus.EXECUTED, True),
        (ActionStatus.RUNNING, ActionStatus.APPROVED, False),
        (ActionStatus.PROPOSED, ActionStatus.APPROVED, True),
        (ActionStatus.PROPOSED, ActionStatus.REJECTED, True),
        (ActionStatus.PROPOSED, ActionStatus.EXECUTED, False),
        (ActionStatus.APPROVED, ActionStatus.EXECUTED, True),
        (ActionStatus.EXECUTED, ActionStatus.ROLLED_BACK, True),
        (ActionStatus.EXECUTED, ActionStatus.FAILED, False),
        (ActionStatus.REJECTED, ActionStatus.APPROVED, False),
        (ActionStatus.ROLLED_BACK, ActionStatus.EXECUTED, False),
    ],
)
def test_state_machine_edges(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_every_status_has_an_entry():
    assert set(ALLOWED_TRANSITIONS) == set(ActionStatus)


@pytest.mark.asyncio
async def test_transition_compare_and_set():
    store = InMemoryActionStore()
    action = await store.create(_action())

    running = await store.transition(action.id, [ActionStatus.PENDING], ActionStatus.RUNNING)
    assert running.status == ActionStatus.RUNNING

    with pytest.raises(InvalidStateTransition) as exc_info:
        await store.transition(action.id, [ActionStatus.PENDING], ActionStatus.RUNNING)
    assert exc_info.value.details == {"status": "running", "target": "running"}


@pytest.mark.asyncio
async def test_transition_rejects_edges_outside_the_machine():
    store = InMemoryActionStore()
    action = await store.create(_action())

    with pytest.raises(InvalidStateTransition):
        await store.transition(action.id, [ActionStatus.PENDING], ActionStatus.EXECUTED)


@pytest.mark.asyncio
async def test_concurrent_transitions_only_one_wins():
    store = InMemoryActionStore()
    action = await store.create(_action())
    await store.transition(action.id, [ActionStatus.PENDING], ActionStatus.RUNNING)
    await store.transition(action.id, [ActionStatus.RUNNING], ActionStatus.PROPOSED)

    results = await asyncio.gather(
        store.transition(action.id, [ActionStatus.PROPOSED], ActionStatus.APPROVED, reviewed_by="a"),
        store.transition(action.id, [ActionStatus.PROPOSED], ActionStatus.REJECTED, reviewed_by="b"),
        return_exceptions=True,
    )

    wins = [r for r in results if isinstance(r, AIAction)]
    losses = [r for r in results if isinstance(r, InvalidStateTransition)]
    assert len(wins) == 1
    assert len(losses) == 1


@pytest.mark.asyncio
async def test_unknown_action():
    store = InMemoryActionStore()

    assert await store.get("missing") is None
    with pytest.raises(ActionNotFound):
        await store.transition("missing", [ActionStatus.PENDING], ActionStatus.RUNNING)
    with pytest.raises(ActionNotFound):
        await store.update_fields("missing", output={})


@pytest.mark.asyncio
async def test_update_fields_rejects_status_and_identity():
    store = InMemoryActionStore()
    action = await store.create(_action())

    with pytest.raises(ValueError):
        await store.update_fields(action.id, status=ActionStatus.EXECUTED)
    with pytest.raises(ValueError):
        await store.update_fields(action.id, disposition=Disposition.EXECUTE)


@pytest.mark.asyncio
async def test_store_returns_copies():
    store = InMemoryActionStore()
    action = await store.create(_action())

    fetched = await store.get(action.id)
    fetched.input["description"] = "tampered"

    assert (await store.get(action.id)).input["description"] == "Launch a website"


@pytest.mark.asyncio
async def test_list_for_tenant_filters():
    store = InMemoryActionStore()
    mine = await store.create(_action())
    other = _action()
    other.tenant_id = "tenant-b"
    await store.create(other)
    await store.transition(mine.id, [ActionStatus.PENDING], ActionStatus.RUNNING)

    assert [a.id for a in await store.list_for_tenant("tenant-a")] == [mine.id]
    assert await store.list_for_tenant("tenant-a", status=ActionStatus.PENDING) == []


def test_shadow_result_hides_output():
    action = _action(disposition=Disposition.SHADOW)
    action.output = {"phases": []}

    result = ActionResult.from_action(action)

    assert result.output is None
    assert result.to_dict()["disposition"] == "shadow"


def test_planned_mutation_dict_round_trip():
    mutation = PlannedMutation(
        "pm-db.mutate", {"operation": "insert", "table": "tasks"}, MutationSource.OUTPUT
    )

    restored = PlannedMutation.from_dict(mutation.to_dict())

    assert restored == mutation
    assert restored.operation == "insert"
