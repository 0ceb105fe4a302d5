import asyncio
import itertools
from typing import Callable, Dict, Iterable, List

from connection import GameConnection


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Wait until ``predicate()`` holds, giving queued callbacks a chance to run."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


async def settle(rounds: int = 20) -> None:
    """Let every callback and task that is already scheduled run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def codes(*values: str) -> Callable[[], str]:
    """Room code factory handing out ``values`` in order, then repeating the last one."""
    source: Iterable[str] = itertools.chain(values, itertools.repeat(values[-1]))
    return lambda: next(source)


class Recorder:
    """Records every event a connection fires."""

    EVENTS = ("connected", "data", "disconnected", "error", "join_request")

    def __init__(self, connection: GameConnection):
        self.calls: Dict[str, List[tuple]] = {event: [] for event in self.EVENTS}
        for event in self.EVENTS:
            connection.on(event, self._recorder(event))

    def _recorder(self, event: str):
        def record(*args):
            self.calls[event].append(args)

        return record

    def count(self, event: str) -> int:
        return len(self.calls[event])

    def total(self) -> int:
        return sum(len(calls) for calls in self.calls.values())
