from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from prusti_bridge.invariants import never

logger = logging.getLogger(__name__)


class StateMachine:
    """A named state variable that can be awaited.

    Only one waiter per target state is supported: registering a second one
    before the first resolves replaces it, and the replaced future is
    cancelled.
    """

    def __init__(self, name: str, initial: str, states: Iterable[str]) -> None:
        self.name = name
        self._states = frozenset(states)
        if initial not in self._states:
            never("unknown initial state", machine=name, state=initial)
        self._state = initial
        self._waiters: dict[str, asyncio.Future[None]] = {}

    def get_state(self) -> str:
        return self._state

    def set_state(self, new_state: str) -> None:
        if new_state not in self._states:
            never("unknown state", machine=self.name, state=new_state)
        logger.debug("%s: %s -> %s", self.name, self._state, new_state)
        self._state = new_state
        waiter = self._waiters.pop(new_state, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(None)

    def wait_for_state(self, target: str) -> asyncio.Future[None]:
        if target not in self._states:
            never("unknown state", machine=self.name, state=target)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[None] = loop.create_future()
        if self._state == target:
            future.set_result(None)
            return future
        previous = self._waiters.get(target)
        if previous is not None and not previous.done():
            logger.warning("%s: replacing pending waiter for %s", self.name, target)
            previous.cancel()
        self._waiters[target] = future
        return future

    def cancel_waiters(self) -> None:
        for waiter in self._waiters.values():
            if not waiter.done():
                waiter.cancel()
        self._waiters.clear()
