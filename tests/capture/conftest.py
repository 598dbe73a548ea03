"""Fakes for process supervision tests: a manual clock and a scripted process."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest


class FakeClock:
    """Time only moves when advance() is called."""

    def __init__(self) -> None:
        self.now_value = 0.0
        self._sleepers: list[tuple[float, asyncio.Future[None]]] = []

    def monotonic(self) -> float:
        return self.now_value

    def now(self) -> datetime:
        return datetime(2024, 1, 1, tzinfo=UTC) + timedelta(seconds=self.now_value)

    async def sleep(self, seconds: float) -> None:
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._sleepers.append((self.now_value + seconds, fut))
        try:
            await fut
        finally:
            self._sleepers = [s for s in self._sleepers if s[1] is not fut]

    @property
    def pending(self) -> int:
        return sum(1 for _, fut in self._sleepers if not fut.done())

    @property
    def deadlines(self) -> list[float]:
        """Deadlines of sleepers still waiting, in registration order."""
        return [deadline for deadline, fut in self._sleepers if not fut.done()]

    def advance(self, seconds: float) -> None:
        self.now_value += seconds
        for deadline, fut in list(self._sleepers):
            if deadline <= self.now_value and not fut.done():
                fut.set_result(None)


class FakeProcess:
    """Scripted stand-in for asyncio.subprocess.Process."""

    def __init__(self, *, pid: int = 4242, exit_on_terminate: bool = True) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.exit_on_terminate = exit_on_terminate
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()

    def write(self, data: bytes, *, stream: str = "stdout") -> None:
        reader = self.stdout if stream == "stdout" else self.stderr
        reader.feed_data(data)

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if self.exit_on_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


async def settle(predicate: Callable[[], bool], *, rounds: int = 200) -> None:
    """Yield to the loop until predicate() holds."""
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settle_until() -> Callable[..., object]:
    return settle


@pytest.fixture
def process_factory() -> Callable[..., object]:
    """Spawner that hands out FakeProcess instances and records requests.

    ``factory.processes`` lists every process created, in order.
    ``factory.fail_with`` makes the next spawn raise SpawnFailure.
    """
    from testscope.capture.runner import SpawnFailure

    class Factory:
        def __init__(self) -> None:
            self.processes: list[FakeProcess] = []
            self.requests: list[object] = []
            self.fail_with: str | None = None
            self.exit_on_terminate = True

        async def __call__(self, request: object) -> FakeProcess:
            self.requests.append(request)
            if self.fail_with is not None:
                raise SpawnFailure(self.fail_with)
            proc = FakeProcess(
                pid=1000 + len(self.processes),
                exit_on_terminate=self.exit_on_terminate,
            )
            self.processes.append(proc)
            return proc

    return Factory()
