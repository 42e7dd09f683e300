from __future__ import annotations

import asyncio

import pytest

from prusti_bridge.exceptions import NeverThrown
from prusti_bridge.state_machine import StateMachine


def _machine() -> StateMachine:
    return StateMachine("demo", "idle", ["idle", "busy", "done"])


def test_unknown_states_are_rejected() -> None:
    with pytest.raises(NeverThrown):
        StateMachine("demo", "missing", ["idle"])
    machine = _machine()
    with pytest.raises(NeverThrown):
        machine.set_state("missing")


def test_waiter_resolves_on_transition() -> None:
    async def scenario() -> None:
        machine = _machine()
        waiter = machine.wait_for_state("done")
        assert not waiter.done()
        machine.set_state("busy")
        assert not waiter.done()
        machine.set_state("done")
        await asyncio.wait_for(waiter, 1)
        assert machine.get_state() == "done"

    asyncio.run(scenario())


def test_waiting_for_current_state_resolves_immediately() -> None:
    async def scenario() -> None:
        machine = _machine()
        waiter = machine.wait_for_state("idle")
        assert waiter.done()
        await waiter

    asyncio.run(scenario())


def test_second_waiter_replaces_the_first() -> None:
    async def scenario() -> None:
        machine = _machine()
        first = machine.wait_for_state("busy")
        second = machine.wait_for_state("busy")
        assert first.cancelled()
        machine.set_state("busy")
        await second

    asyncio.run(scenario())


def test_cancel_waiters() -> None:
    async def scenario() -> None:
        machine = _machine()
        waiter = machine.wait_for_state("done")
        machine.cancel_waiters()
        assert waiter.cancelled()
        machine.set_state("done")

    asyncio.run(scenario())
