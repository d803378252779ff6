"""
Child process handle.

Spawns the supervised executable, forwards its output to logging and reports
a single exit event per successful start.
"""

import asyncio
import logging
import os
import signal
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from keepalive.lib.errors import SpawnError, SpawnErrorKind

logger = logging.getLogger(__name__)

stdout_logger = logging.getLogger("keepalive.child.stdout")
stderr_logger = logging.getLogger("keepalive.child.stderr")

# asyncio's default StreamReader limit is 64 KiB per line
STREAM_LIMIT = 1024 * 1024
# How long to keep reading pipes after the process itself has exited
DRAIN_TIMEOUT = 2.0


@dataclass(frozen=True)
class ChildTarget:
    """What to run and where."""

    script: Path
    working_dir: Path
    interpreter: Optional[str] = None

    @property
    def path(self) -> Path:
        """Script path resolved against the working directory."""
        if self.script.is_absolute():
            return self.script
        return self.working_dir / self.script

    def command(self) -> list[str]:
        path = str(self.path)
        if self.interpreter:
            return [self.interpreter, path]
        if self.path.suffix == ".py":
            return [sys.executable, path]
        return [path]


@dataclass(frozen=True)
class ChildExit:
    """Terminal event of one child process."""

    pid: int
    code: Optional[int]
    signal: Optional[int]
    uptime: float

    @property
    def signal_name(self) -> Optional[str]:
        if self.signal is None:
            return None
        try:
            return signal.Signals(self.signal).name
        except ValueError:
            return str(self.signal)

    @property
    def clean(self) -> bool:
        return self.code == 0 and self.signal is None

    def describe(self) -> str:
        return f"code={self.code} signal={self.signal_name}"


ExitCallback = Callable[["ProcessHandle", ChildExit], None]


async def _pump(
    stream: asyncio.StreamReader, log: logging.Logger, level: int, pid: Optional[int] = None
) -> None:
    """Forward lines from a child pipe to a logger until EOF.

    A line longer than STREAM_LIMIT is dropped whole: its chunks are consumed
    until the terminating newline, and one warning is logged in its place.
    """
    extra = {"child_pid": pid}
    discarding = False
    while True:
        eof = False
        try:
            line = await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            # Last line without a trailing newline (empty at EOF)
            line, eof = e.partial, True
        except asyncio.LimitOverrunError as e:
            await stream.readexactly(e.consumed)
            if not discarding:
                log.warning(
                    f"Dropped output line longer than {STREAM_LIMIT} bytes", extra=extra
                )
                discarding = True
            continue

        if discarding:
            # Tail of the oversized line
            discarding = False
        else:
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                log.log(level, text, extra=extra)
        if eof:
            break


class ProcessHandle:
    """
    Owns exactly one OS child process.

    The exit callback fires once, after the process has exited and its output
    pipes have been drained. It is the only signal that the child is gone;
    `terminate()` and `kill()` merely request it.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        target: ChildTarget,
        on_exit: Optional[ExitCallback] = None,
    ):
        self._process = process
        self.target = target
        self.pid: int = process.pid
        self._started = time.monotonic()
        self._on_exit = on_exit
        self.exit: Optional[ChildExit] = None
        self._watcher = asyncio.create_task(self._watch(), name=f"child-{self.pid}")

    @classmethod
    async def start(
        cls, target: ChildTarget, on_exit: Optional[ExitCallback] = None
    ) -> "ProcessHandle":
        """Spawn the target. Raises SpawnError if it cannot be started."""
        path = target.path
        if not path.exists():
            raise SpawnError(SpawnErrorKind.NOT_FOUND, path, f"Target script not found: {path}")
        if not target.working_dir.is_dir():
            raise SpawnError(
                SpawnErrorKind.NOT_FOUND, path, f"Working directory not found: {target.working_dir}"
            )

        env = os.environ.copy()
        env.setdefault("PYTHONUNBUFFERED", "1")

        cmd = target.command()
        logger.debug(f"Spawning: {' '.join(cmd)} (cwd={target.working_dir})")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(target.working_dir),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise SpawnError.from_os_error(path, e) from e

        logger.info(f"Child spawned (pid={process.pid})")
        return cls(process, target, on_exit)

    @property
    def alive(self) -> bool:
        return self._process.returncode is None

    @property
    def uptime(self) -> float:
        if self.exit is not None:
            return self.exit.uptime
        return time.monotonic() - self._started

    def terminate(self, sig: int = signal.SIGTERM) -> None:
        """Ask the child to stop. Does not wait."""
        if not self.alive:
            return
        logger.info(f"Sending {signal.Signals(sig).name} to child (pid={self.pid})")
        try:
            self._process.send_signal(sig)
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        if not self.alive:
            return
        logger.warning(f"Killing child (pid={self.pid})")
        try:
            self._process.kill()
        except ProcessLookupError:
            pass

    async def wait(self) -> ChildExit:
        """Wait for the exit event."""
        return await asyncio.shield(self._watcher)

    async def _watch(self) -> ChildExit:
        readers = []
        if self._process.stdout is not None:
            readers.append(asyncio.create_task(
                _pump(self._process.stdout, stdout_logger, logging.INFO, self.pid)
            ))
        if self._process.stderr is not None:
            readers.append(asyncio.create_task(
                _pump(self._process.stderr, stderr_logger, logging.ERROR, self.pid)
            ))

        returncode = await self._process.wait()
        uptime = time.monotonic() - self._started

        if readers:
            # Grandchildren can keep the pipes open after the child is gone
            _, pending = await asyncio.wait(readers, timeout=DRAIN_TIMEOUT)
            for task in pending:
                task.cancel()

        if returncode < 0:
            child_exit = ChildExit(pid=self.pid, code=None, signal=-returncode, uptime=uptime)
        else:
            child_exit = ChildExit(pid=self.pid, code=returncode, signal=None, uptime=uptime)
        self.exit = child_exit

        logger.info(f"Child closed (pid={self.pid}). {child_exit.describe()}")
        if self._on_exit is not None:
            try:
                self._on_exit(self, child_exit)
            except Exception:
                logger.exception("Exit callback failed")
        return child_exit
