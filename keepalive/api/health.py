"""
Health check endpoint.
"""

import time
from typing import Any

from fastapi import APIRouter, Query, Request

from keepalive import __version__
from keepalive.core.supervisor import Supervisor

router = APIRouter()

# Launcher start time for uptime calculation
_start_time = time.time()


def _get_supervisor(request: Request) -> Supervisor:
    return request.app.state.supervisor


@router.get("/health")
async def health_check(
    request: Request,
    detailed: bool = Query(False, description="Include supervisor details"),
) -> dict[str, Any]:
    """
    Report whether the worker is alive and how often it was restarted.

    Only reads supervisor state; never starts or stops anything.
    """
    snapshot = _get_supervisor(request).snapshot()

    basic = {
        "alive": snapshot.alive,
        "restarts": snapshot.restarts,
    }

    if not detailed:
        return basic

    last_exit = None
    if snapshot.last_exit is not None:
        last_exit = {
            "pid": snapshot.last_exit.pid,
            "code": snapshot.last_exit.code,
            "signal": snapshot.last_exit.signal_name,
            "uptime": round(snapshot.last_exit.uptime, 3),
        }

    return {
        **basic,
        "state": snapshot.state.value,
        "pid": snapshot.pid,
        "child_uptime": round(snapshot.child_uptime, 3) if snapshot.child_uptime is not None else None,
        "current_delay": snapshot.current_delay,
        "last_exit": last_exit,
        "version": __version__,
        "timestamp": int(time.time() * 1000),
        "uptime": time.time() - _start_time,
    }
