"""Process supervision.

Spawns one external test process per target label and supervises it:
streams decoded stdout/stderr chunks to callbacks, enforces the timeout,
honors cancellation and always ends with terminate -> grace -> kill when
the process has to be stopped. onExit is delivered only after both pipes
have been drained, so callers see every captured byte first.

Time is injected through a Clock and process creation through a spawner,
so supervision can be tested without real processes or real waiting.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import os
import shutil
import signal
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

import structlog

from testscope.capture.models import RunOutcome, TestRunRequest
from testscope.config.models import RunnerConfig

log = structlog.get_logger(__name__)

OutputCallback = Callable[[str], None]
ExitCallback = Callable[[int | None, RunOutcome], None]

_POSIX = os.name == "posix"
_EXIT_POLL_SEC = 0.05


# =============================================================================
# Injectable Seams
# =============================================================================


class Clock(Protocol):
    def monotonic(self) -> float: ...

    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock backed by the event loop."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(UTC)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ProcessLike(Protocol):
    """The subset of asyncio.subprocess.Process the runner uses."""

    pid: int
    returncode: int | None
    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


Spawner = Callable[[TestRunRequest], Awaitable[ProcessLike]]


class SpawnFailure(Exception):
    """The process could not be started. Never escapes ProcessRunner.start()."""


def _resolve_executable(request: TestRunRequest, env: dict[str, str] | None) -> str | None:
    executable = request.argv[0]
    if os.sep in executable or (os.altsep and os.altsep in executable):
        candidate = Path(executable)
        if not candidate.is_absolute():
            candidate = request.cwd / candidate
        return str(candidate) if os.access(candidate, os.X_OK) and candidate.is_file() else None
    search_path = (env or os.environ).get("PATH")
    return shutil.which(executable, path=search_path)


async def spawn_process(request: TestRunRequest) -> ProcessLike:
    """Default spawner: validate, then asyncio.create_subprocess_exec."""
    if not request.argv:
        raise SpawnFailure("Empty command")
    if not request.cwd.is_dir():
        raise SpawnFailure(f"Working directory does not exist: {request.cwd}")

    env = {**os.environ, **request.env} if request.env else None
    if _resolve_executable(request, env) is None:
        raise SpawnFailure(f"Executable not found: {request.argv[0]}")

    try:
        proc = await asyncio.create_subprocess_exec(
            *request.argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=request.cwd,
            env=env,
            start_new_session=_POSIX,
        )
    except OSError as e:
        raise SpawnFailure(f"{request.argv[0]}: {e.strerror or e}") from e
    return GroupProcess(proc)


class GroupProcess:
    """A spawned process and the process group it leads.

    asyncio's Process.wait() returns only once stdout and stderr are closed,
    which a backgrounded grandchild (jest worker, dev server) can delay
    forever. wait() here returns as soon as the leader itself has exited;
    terminate() and kill() signal the whole group so grandchildren go too.
    """

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc
        self.pid = proc.pid
        self.stdout = proc.stdout
        self.stderr = proc.stderr

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def wait(self) -> int:
        while (code := self._proc.returncode) is None:
            await asyncio.sleep(_EXIT_POLL_SEC)
        return code

    def terminate(self) -> None:
        if _POSIX:
            self._signal_group(signal.SIGTERM)
        elif self._proc.returncode is None:
            self._proc.terminate()

    def kill(self) -> None:
        if _POSIX:
            self._signal_group(signal.SIGKILL)
        elif self._proc.returncode is None:
            self._proc.kill()

    def _signal_group(self, sig: signal.Signals) -> None:
        # The group outlives its leader while any member is alive
        with contextlib.suppress(ProcessLookupError):
            os.killpg(self.pid, sig)


# =============================================================================
# Handles and Registry
# =============================================================================


@dataclass
class RunHandle:
    """A supervised run. Terminal once ``outcome`` is set."""

    target: str
    request: TestRunRequest
    started_at: datetime
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    pid: int | None = None
    outcome: RunOutcome | None = None
    exit_code: int | None = None
    duration_seconds: float = 0.0
    ended_at: datetime | None = None
    spawn_error: str | None = None
    _cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _done_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self._done_event.is_set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Request cancellation. Await wait() for the terminal state."""
        self._cancel_event.set()

    async def wait(self) -> RunOutcome:
        await self._done_event.wait()
        assert self.outcome is not None
        return self.outcome


class RunRegistry:
    """Active runs by target label. At most one live handle per label."""

    def __init__(self) -> None:
        self._runs: dict[str, RunHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, target: str) -> asyncio.Lock:
        if target not in self._locks:
            self._locks[target] = asyncio.Lock()
        return self._locks[target]

    def get(self, target: str) -> RunHandle | None:
        return self._runs.get(target)

    def register(self, handle: RunHandle) -> None:
        self._runs[handle.target] = handle

    def release(self, handle: RunHandle) -> None:
        """Remove handle if it is still the registered run for its label."""
        if self._runs.get(handle.target) is handle:
            del self._runs[handle.target]

    def active(self) -> list[RunHandle]:
        return [h for h in self._runs.values() if not h.done]

    async def sweep(self) -> None:
        """Cancel every live run and wait for each to reach a terminal state."""
        handles = self.active()
        for handle in handles:
            handle.cancel()
        for handle in handles:
            await handle.wait()
        self._runs.clear()


# =============================================================================
# Process Runner
# =============================================================================


class ProcessRunner:
    """Starts and supervises processes; one per target label."""

    def __init__(
        self,
        registry: RunRegistry | None = None,
        config: RunnerConfig | None = None,
        clock: Clock | None = None,
        spawner: Spawner | None = None,
    ) -> None:
        self._registry = registry or RunRegistry()
        self._config = config or RunnerConfig()
        self._clock = clock or SystemClock()
        self._spawner = spawner or spawn_process

    @property
    def registry(self) -> RunRegistry:
        return self._registry

    async def start(
        self,
        request: TestRunRequest,
        *,
        on_stdout: OutputCallback,
        on_stderr: OutputCallback,
        on_exit: ExitCallback,
    ) -> RunHandle:
        """Start a run, preempting any live run for the same target first.

        Spawn failures do not raise: the returned handle is already terminal
        with outcome SPAWN_FAILED and on_exit has been called.
        """
        async with self._registry.lock(request.target):
            prior = self._registry.get(request.target)
            if prior is not None and not prior.done:
                log.info("run_preempted", target=request.target, run_id=prior.run_id)
                prior.cancel()
                await prior.wait()

            handle = RunHandle(
                target=request.target,
                request=request,
                started_at=self._clock.now(),
            )
            if request.cancel_event is not None:
                handle._cancel_event = request.cancel_event
            started = self._clock.monotonic()

            try:
                proc = await self._spawner(request)
            except SpawnFailure as e:
                handle.spawn_error = str(e)
                log.warning("spawn_failed", target=request.target, reason=str(e))
                self._finish(handle, None, RunOutcome.SPAWN_FAILED, started)
                on_exit(None, RunOutcome.SPAWN_FAILED)
                return handle

            handle.pid = proc.pid
            self._registry.register(handle)
            log.info(
                "run_started",
                target=request.target,
                run_id=handle.run_id,
                pid=proc.pid,
                command=request.command_line,
            )
            handle._task = asyncio.create_task(
                self._supervise(handle, proc, started, on_stdout, on_stderr, on_exit)
            )
            return handle

    async def _supervise(
        self,
        handle: RunHandle,
        proc: ProcessLike,
        started: float,
        on_stdout: OutputCallback,
        on_stderr: OutputCallback,
        on_exit: ExitCallback,
    ) -> None:
        timeout = handle.request.timeout_sec
        if timeout is None:
            timeout = self._config.default_timeout_sec
        pumps = [
            asyncio.create_task(self._pump(proc.stdout, on_stdout, handle, "stdout")),
            asyncio.create_task(self._pump(proc.stderr, on_stderr, handle, "stderr")),
        ]
        wait_task = asyncio.ensure_future(proc.wait())
        timer = asyncio.create_task(self._clock.sleep(timeout))
        cancelled = asyncio.create_task(handle._cancel_event.wait())

        try:
            done, _ = await asyncio.wait(
                {wait_task, timer, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
            # A process that exited in the same tick as a cancel still completed
            if wait_task in done:
                outcome = RunOutcome.COMPLETED
            elif cancelled in done:
                outcome = RunOutcome.CANCELLED
            else:
                outcome = RunOutcome.TIMED_OUT
        finally:
            timer.cancel()
            cancelled.cancel()

        if outcome != RunOutcome.COMPLETED:
            log.info(
                "run_stopping",
                target=handle.target,
                run_id=handle.run_id,
                reason=outcome.value,
            )
            await self._stop(proc, wait_task)

        exit_code = await wait_task
        await self._drain(pumps, handle, proc)
        self._finish(handle, exit_code, outcome, started)
        try:
            on_exit(exit_code, outcome)
        finally:
            self._registry.release(handle)
            handle._done_event.set()

    async def _stop(self, proc: ProcessLike, wait_task: asyncio.Future[int]) -> None:
        """terminate, wait the grace window, then kill."""
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        grace = asyncio.create_task(self._clock.sleep(self._config.grace_period_sec))
        try:
            done, _ = await asyncio.wait({wait_task, grace}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            grace.cancel()
        if wait_task not in done:
            log.warning("run_killed", pid=proc.pid, grace_sec=self._config.grace_period_sec)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()

    async def _pump(
        self,
        reader: asyncio.StreamReader | None,
        callback: OutputCallback,
        handle: RunHandle,
        stream: str,
    ) -> None:
        if reader is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        failed = False

        def deliver(text: str) -> None:
            nonlocal failed
            try:
                callback(text)
            except Exception as e:
                # Keep reading so the child never blocks on a full pipe
                if not failed:
                    failed = True
                    log.error(
                        "output_callback_failed",
                        target=handle.target,
                        stream=stream,
                        error=str(e),
                        error_type=type(e).__name__,
                    )

        while chunk := await reader.read(self._config.read_chunk_size):
            text = decoder.decode(chunk)
            if text:
                deliver(text)
        tail = decoder.decode(b"", final=True)
        if tail:
            deliver(tail)

    async def _drain(
        self, pumps: list[asyncio.Task[None]], handle: RunHandle, proc: ProcessLike
    ) -> None:
        """Wait for pipes to close, bounded by drain_timeout_sec."""
        gathered = asyncio.gather(*pumps, return_exceptions=True)
        timer = asyncio.create_task(self._clock.sleep(self._config.drain_timeout_sec))
        try:
            done, _ = await asyncio.wait({gathered, timer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            timer.cancel()
        if gathered not in done:
            # Grandchildren holding the pipe open
            log.warning("drain_timeout", target=handle.target, run_id=handle.run_id)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            for pump in pumps:
                pump.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            return
        for result in gathered.result():
            if isinstance(result, Exception):
                log.error(
                    "output_read_failed",
                    target=handle.target,
                    error=str(result),
                    error_type=type(result).__name__,
                )

    def _finish(
        self,
        handle: RunHandle,
        exit_code: int | None,
        outcome: RunOutcome,
        started: float,
    ) -> None:
        handle.exit_code = exit_code
        handle.outcome = outcome
        handle.duration_seconds = max(0.0, self._clock.monotonic() - started)
        handle.ended_at = self._clock.now()
        if outcome == RunOutcome.SPAWN_FAILED:
            handle._done_event.set()
        log.info(
            "run_finished",
            target=handle.target,
            run_id=handle.run_id,
            outcome=outcome.value,
            exit_code=exit_code,
            duration_sec=round(handle.duration_seconds, 3),
        )
