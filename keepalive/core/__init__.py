"""Supervision core: backoff, child process handle and the supervisor loop."""

from keepalive.core.backoff import BackoffPolicy, RestartPolicy
from keepalive.core.process import ChildExit, ChildTarget, ProcessHandle
from keepalive.core.supervisor import Supervisor, SupervisorSnapshot, SupervisorState

__all__ = [
    "BackoffPolicy",
    "ChildExit",
    "ChildTarget",
    "ProcessHandle",
    "RestartPolicy",
    "Supervisor",
    "SupervisorSnapshot",
    "SupervisorState",
]
