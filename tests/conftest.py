"""
Pytest configuration and fixtures.
"""

import asyncio
import os
import time
from pathlib import Path
from typing import Callable, Optional

import pytest
import pytest_asyncio

from keepalive.core.backoff import BackoffPolicy
from keepalive.core.process import ChildExit, ChildTarget
from keepalive.core.supervisor import Supervisor, SupervisorState
from keepalive.lib.errors import SpawnError, SpawnErrorKind

# Set test environment
os.environ["KEEPALIVE_LOG_LEVEL"] = "WARNING"


class FakeHandle:
    """Stand-in for ProcessHandle that exits only when told to."""

    def __init__(self, pid: int, on_exit, ignore_terminate: bool = False):
        self.pid = pid
        self._on_exit = on_exit
        self._started = time.monotonic()
        self.ignore_terminate = ignore_terminate
        self.alive = True
        self.exit_event: Optional[ChildExit] = None
        self.terminate_calls: list[int] = []
        self.kill_calls = 0

    @property
    def uptime(self) -> float:
        if self.exit_event is not None:
            return self.exit_event.uptime
        return time.monotonic() - self._started

    def terminate(self, sig: int) -> None:
        self.terminate_calls.append(sig)
        if not self.ignore_terminate:
            self.exit(signal=sig)

    def kill(self) -> None:
        self.kill_calls += 1
        self.exit(signal=9)

    def exit(self, code: Optional[int] = None, signal: Optional[int] = None,
             uptime: Optional[float] = None) -> None:
        """Simulate the child dying."""
        if not self.alive:
            return
        self.alive = False
        self.exit_event = ChildExit(
            pid=self.pid,
            code=code,
            signal=signal,
            uptime=self.uptime if uptime is None else uptime,
        )
        self._on_exit(self, self.exit_event)


class FakeSpawner:
    """Spawner double recording every spawn attempt."""

    def __init__(self):
        self.handles: list[FakeHandle] = []
        self.attempts = 0
        self.fail_with: Optional[SpawnErrorKind] = None
        self.ignore_terminate = False

    async def __call__(self, target: ChildTarget, on_exit) -> FakeHandle:
        self.attempts += 1
        if self.fail_with is not None:
            raise SpawnError(self.fail_with, target.path, f"cannot spawn {target.path}")
        handle = FakeHandle(1000 + len(self.handles), on_exit, self.ignore_terminate)
        self.handles.append(handle)
        return handle

    @property
    def current(self) -> FakeHandle:
        return self.handles[-1]


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch) -> Path:
    """Working directory for the worker; also the CWD so no stray .env is read."""
    work = tmp_path / "worker"
    work.mkdir()
    monkeypatch.chdir(tmp_path)
    return work


@pytest.fixture
def target(workdir: Path) -> ChildTarget:
    return ChildTarget(script=Path("bot.py"), working_dir=workdir)


@pytest.fixture
def write_script(workdir: Path) -> Callable[[str, str], Path]:
    """Write a worker script into the working directory."""

    def _write(name: str, code: str) -> Path:
        path = workdir / name
        path.write_text(code)
        return path

    return _write


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def wait_until():
    """Poll a condition on the running loop."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return _wait


@pytest_asyncio.fixture
async def supervise(target, spawner):
    """Create supervisors running on the test loop; stops them afterwards."""
    running: list[tuple[Supervisor, asyncio.Task]] = []

    def _make(**kwargs) -> Supervisor:
        kwargs.setdefault("backoff", BackoffPolicy(initial=0.05, maximum=0.2, factor=1.5))
        kwargs.setdefault("grace_period", 0.5)
        kwargs.setdefault("backoff_reset_after", 10.0)
        kwargs.setdefault("spawner", spawner)
        supervisor = Supervisor(target, **kwargs)
        running.append((supervisor, asyncio.create_task(supervisor.run())))
        return supervisor

    yield _make

    for supervisor, task in running:
        if supervisor.state is not SupervisorState.STOPPED:
            await asyncio.wait_for(supervisor.shutdown(), timeout=5)
        await asyncio.wait_for(task, timeout=5)


@pytest_asyncio.fixture
async def fast_timers(monkeypatch):
    """Fire supervisor restart timers immediately, recording requested delays."""
    loop = asyncio.get_running_loop()
    real_call_later = loop.call_later
    delays: list[float] = []

    def _call_later(delay, callback, *args, **kwargs):
        if isinstance(getattr(callback, "__self__", None), Supervisor):
            delays.append(delay)
            return real_call_later(0, callback, *args, **kwargs)
        return real_call_later(delay, callback, *args, **kwargs)

    monkeypatch.setattr(loop, "call_later", _call_later)
    return delays
