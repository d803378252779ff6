"""
Supervisor for the worker process.

Keeps exactly one child alive forever: every exit (or failed spawn) schedules
a restart after an exponential backoff delay, until shutdown is requested.

All lifecycle changes run on one event queue consumed by `run()`. Child exits,
restart timers, start requests and shutdown requests are posted to it and
handled one at a time, so state transitions never interleave.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from keepalive.core.backoff import BackoffPolicy, RestartPolicy
from keepalive.core.process import ChildExit, ChildTarget, ExitCallback, ProcessHandle
from keepalive.lib.errors import SpawnError

logger = logging.getLogger(__name__)

Spawner = Callable[[ChildTarget, ExitCallback], Awaitable[ProcessHandle]]

# Upper bound on waiting for the exit event after a force-kill
KILL_TIMEOUT = 5.0


class SupervisorState(str, Enum):
    """Lifecycle state of the supervisor."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


# === Events ===
@dataclass(frozen=True)
class StartRequested:
    reason: Optional[str] = None


@dataclass(frozen=True)
class ChildExited:
    handle: ProcessHandle
    exit: ChildExit


@dataclass(frozen=True)
class RestartDue:
    generation: int


@dataclass(frozen=True)
class ShutdownRequested:
    signal: Optional[int] = None


Event = Union[StartRequested, ChildExited, RestartDue, ShutdownRequested]


@dataclass(frozen=True)
class SupervisorSnapshot:
    """Point-in-time view of the supervisor for observers."""

    state: SupervisorState
    alive: bool
    restarts: int
    pid: Optional[int]
    child_uptime: Optional[float]
    current_delay: float
    last_exit: Optional[ChildExit]


class Supervisor:
    """
    Restart-on-exit state machine around a single ProcessHandle.

    Retries are unlimited; only the delay between them is bounded. A child that
    stays up for at least `backoff_reset_after` seconds resets the delay to its
    initial value; with 0 the delay resets on every successful spawn.
    """

    def __init__(
        self,
        target: ChildTarget,
        backoff: Optional[BackoffPolicy] = None,
        *,
        grace_period: float = 10.0,
        backoff_reset_after: float = 10.0,
        stop_signal: int = signal.SIGTERM,
        spawner: Optional[Spawner] = None,
    ):
        self.target = target
        self.grace_period = grace_period
        self.backoff_reset_after = backoff_reset_after
        self.stop_signal = stop_signal
        self._policy = RestartPolicy(backoff or BackoffPolicy())
        self._spawn: Spawner = spawner or ProcessHandle.start

        self._state = SupervisorState.IDLE
        self._child: Optional[ProcessHandle] = None
        self._last_exit: Optional[ChildExit] = None
        self._events: asyncio.Queue[Event] = asyncio.Queue()
        self._restart_timer: Optional[asyncio.TimerHandle] = None
        self._generation = 0
        self._shutdown_requested = False
        self._running = False
        self._stopped = asyncio.Event()

    # === Read-only accessors ===
    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def restarts(self) -> int:
        return self._policy.restarts

    @property
    def current_delay(self) -> float:
        return self._policy.current_delay

    @property
    def child(self) -> Optional[ProcessHandle]:
        return self._child

    @property
    def last_exit(self) -> Optional[ChildExit]:
        return self._last_exit

    @property
    def is_alive(self) -> bool:
        child = self._child
        return self._state is SupervisorState.RUNNING and child is not None and child.alive

    @property
    def restart_pending(self) -> bool:
        return self._restart_timer is not None

    def snapshot(self) -> SupervisorSnapshot:
        child = self._child
        return SupervisorSnapshot(
            state=self._state,
            alive=self.is_alive,
            restarts=self.restarts,
            pid=child.pid if child is not None else None,
            child_uptime=child.uptime if child is not None else None,
            current_delay=self.current_delay,
            last_exit=self._last_exit,
        )

    # === Public control ===
    def start(self, reason: Optional[str] = None) -> None:
        """Request a spawn. A no-op while a child is alive."""
        if self._shutdown_requested or self._state is SupervisorState.STOPPED:
            logger.info("Shutdown in progress, ignoring start request")
            return
        self._post(StartRequested(reason))

    def request_shutdown(self, sig: Optional[int] = None) -> None:
        """Begin shutdown without waiting. Safe to call from a signal handler."""
        if self._shutdown_requested:
            return
        # Set before queueing so that earlier events can no longer spawn
        self._shutdown_requested = True
        self._post(ShutdownRequested(sig))

    async def shutdown(self, sig: Optional[int] = None) -> None:
        """Stop supervising, terminate the child and wait until Stopped."""
        self.request_shutdown(sig)
        if self._running:
            await self._stopped.wait()
        elif self._state is not SupervisorState.STOPPED:
            # Never ran: nothing to terminate
            self._cancel_restart_timer()
            self._state = SupervisorState.STOPPED
            self._stopped.set()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def run(self) -> None:
        """Process events until the supervisor is stopped."""
        if self._running:
            raise RuntimeError("Supervisor is already running")
        if self._state is SupervisorState.STOPPED:
            return
        self._running = True
        logger.info(f"Supervising {self.target.path}")
        self.start("Starting worker")
        try:
            while self._state is not SupervisorState.STOPPED:
                event = await self._events.get()
                await self._dispatch(event)
        finally:
            self._cancel_restart_timer()
            if self._state is not SupervisorState.STOPPED:
                # Cancelled or failed before shutdown completed
                self._abandon()
            self._running = False
            self._stopped.set()
        logger.info(f"Supervisor stopped after {self.restarts} restart(s)")

    # === Event handling ===
    def _post(self, event: Event) -> None:
        self._events.put_nowait(event)

    def _on_child_exit(self, handle: ProcessHandle, child_exit: ChildExit) -> None:
        self._post(ChildExited(handle, child_exit))

    async def _dispatch(self, event: Event) -> None:
        if isinstance(event, StartRequested):
            await self._handle_start(event)
        elif isinstance(event, ChildExited):
            self._handle_exit(event)
        elif isinstance(event, RestartDue):
            await self._handle_restart_due(event)
        elif isinstance(event, ShutdownRequested):
            await self._handle_shutdown(event)

    async def _handle_start(self, event: StartRequested) -> None:
        if self._shutdown_requested:
            logger.debug("Shutdown requested, not spawning")
            return
        if self._child is not None and self._child.alive:
            logger.info("Child already running, skipping spawn.")
            return
        if event.reason:
            logger.info(event.reason)

        self._cancel_restart_timer()
        self._state = SupervisorState.STARTING
        try:
            handle = await self._spawn(self.target, self._on_child_exit)
        except SpawnError as e:
            logger.error(f"Spawn failed ({e.kind.value}): {e}")
            self._child = None
            self._schedule_restart(f"Spawn failed ({e.kind.value})")
            return
        except Exception:
            logger.exception("Unexpected error while spawning child")
            self._child = None
            self._schedule_restart("Spawn failed")
            return

        self._child = handle
        self._state = SupervisorState.RUNNING
        if self.backoff_reset_after <= 0:
            self._policy.reset()

    def _handle_exit(self, event: ChildExited) -> None:
        if event.handle is not self._child:
            logger.debug(f"Ignoring exit of stale child (pid={event.exit.pid})")
            return

        self._child = None
        self._last_exit = event.exit
        logger.info(f"Child exited. {event.exit.describe()} after {event.exit.uptime:.1f}s")

        if self._shutdown_requested or self._state is SupervisorState.SHUTTING_DOWN:
            logger.info("Shutdown in progress - not scheduling a restart.")
            return

        if self.backoff_reset_after > 0 and event.exit.uptime >= self.backoff_reset_after:
            self._policy.reset()
        self._schedule_restart(f"Child exited ({event.exit.describe()})")

    async def _handle_restart_due(self, event: RestartDue) -> None:
        if event.generation != self._generation or self._state is not SupervisorState.RESTARTING:
            logger.debug("Ignoring stale restart timer")
            return
        self._restart_timer = None
        await self._handle_start(StartRequested(f"Restarting worker (restart #{self.restarts})"))

    async def _handle_shutdown(self, event: ShutdownRequested) -> None:
        if self._state in (SupervisorState.SHUTTING_DOWN, SupervisorState.STOPPED):
            return

        sig_name = signal.Signals(event.signal).name if event.signal else "request"
        logger.info(f"Shutting down ({sig_name})...")
        self._state = SupervisorState.SHUTTING_DOWN
        self._cancel_restart_timer()

        child = self._child
        if child is not None:
            if child.alive:
                child.terminate(self.stop_signal)
            try:
                await asyncio.wait_for(self._wait_for_exit(child), timeout=self.grace_period)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Child did not exit within {self.grace_period}s, forcing shutdown"
                )
                child.kill()
                try:
                    await asyncio.wait_for(self._wait_for_exit(child), timeout=KILL_TIMEOUT)
                except asyncio.TimeoutError:
                    logger.error(f"Child (pid={child.pid}) did not report exit after kill")

        self._child = None
        self._state = SupervisorState.STOPPED

    def _abandon(self) -> None:
        """Stop without waiting: the event loop is no longer ours to use."""
        self._shutdown_requested = True
        child = self._child
        if child is not None and child.alive:
            logger.warning(f"Supervisor interrupted, terminating child (pid={child.pid})")
            child.terminate(self.stop_signal)
        self._child = None
        self._state = SupervisorState.STOPPED

    async def _wait_for_exit(self, child: ProcessHandle) -> None:
        """Drain the queue until the exit event of `child` arrives."""
        while True:
            event = await self._events.get()
            if isinstance(event, ChildExited) and event.handle is child:
                self._handle_exit(event)
                return
            logger.debug(f"Ignoring {type(event).__name__} during shutdown")

    # === Restart scheduling ===
    def _schedule_restart(self, reason: str) -> None:
        if self._shutdown_requested:
            return
        delay = self._policy.record_restart()
        logger.warning(
            f"{reason}. Scheduling restart #{self.restarts} in {delay:g}s"
        )
        self._state = SupervisorState.RESTARTING
        self._cancel_restart_timer()
        self._generation += 1
        loop = asyncio.get_running_loop()
        self._restart_timer = loop.call_later(delay, self._post, RestartDue(self._generation))

    def _cancel_restart_timer(self) -> None:
        if self._restart_timer is not None:
            self._restart_timer.cancel()
            self._restart_timer = None
