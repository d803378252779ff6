"""
Keepalive launcher.

Runs the supervisor and the health endpoint in one asyncio loop:
- the supervisor keeps the worker process alive
- an embedded uvicorn server answers /, /health and /logs
- SIGINT/SIGTERM shut the supervisor down, then the HTTP server

The two halves are independent. A port that cannot be bound, or an HTTP
server that crashes, is logged and supervision carries on.
"""

import asyncio
import contextlib
import logging
import signal
import socket
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from keepalive import __version__
from keepalive.api import api_router
from keepalive.config import Settings
from keepalive.core.supervisor import Supervisor
from keepalive.lib.errors import ListenError

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Health endpoint startup/shutdown. Does not touch the supervisor."""
    logger.info("Health endpoint starting...")
    yield
    logger.info("Health endpoint shutting down...")


def create_app(supervisor: Supervisor, settings: Settings) -> FastAPI:
    """Build the FastAPI app observing `supervisor`."""
    app = FastAPI(
        title="Keepalive",
        description="Health endpoint for a supervised worker process",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.supervisor = supervisor
    app.state.settings = settings
    app.include_router(api_router)
    return app


def create_supervisor(settings: Settings) -> Supervisor:
    return Supervisor(
        settings.target,
        settings.backoff,
        grace_period=settings.shutdown_grace_period,
        backoff_reset_after=settings.backoff_reset_after,
    )


class EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the launcher."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def bind_listener(host: str, port: int) -> socket.socket:
    """Bind the health endpoint socket. Raises ListenError on failure."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    try:
        return socket.create_server((host, port), family=family)
    except OSError as e:
        raise ListenError.from_os_error(host, port, e) from e


async def _serve_http(server: uvicorn.Server, sock: socket.socket) -> None:
    try:
        await server.serve(sockets=[sock])
    except Exception:
        logger.exception("Health endpoint crashed; supervision continues")
    finally:
        sock.close()


def start_http(
    app: FastAPI, settings: Settings
) -> tuple[Optional[uvicorn.Server], Optional[asyncio.Task]]:
    """Start the embedded HTTP server, or return (None, None) if it cannot bind."""
    try:
        sock = bind_listener(settings.host, settings.port)
    except ListenError as e:
        logger.error(f"{e} Health endpoint disabled; supervision continues.")
        return None, None

    config = uvicorn.Config(
        app,
        log_config=None,
        log_level=settings.log_level.lower(),
        access_log=False,
    )
    server = EmbeddedServer(config)
    port = sock.getsockname()[1]
    logger.info(f"Server is running on port {port}...")
    task = asyncio.create_task(_serve_http(server, sock), name="http")
    return server, task


def _on_signal(supervisor: Supervisor, sig: int) -> None:
    name = signal.Signals(sig).name
    if supervisor.restart_pending or supervisor.child is not None:
        logger.info(f"Received {name}, stopping worker...")
    else:
        logger.info(f"Received {name}, shutting down...")
    supervisor.request_shutdown(sig)


def install_signal_handlers(loop: asyncio.AbstractEventLoop, supervisor: Supervisor) -> None:
    for sig in HANDLED_SIGNALS:
        try:
            loop.add_signal_handler(sig, _on_signal, supervisor, sig)
        except NotImplementedError:
            # Windows loops have no add_signal_handler
            signal.signal(
                sig,
                lambda signum, frame: loop.call_soon_threadsafe(_on_signal, supervisor, signum),
            )


def remove_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    for sig in HANDLED_SIGNALS:
        try:
            loop.remove_signal_handler(sig)
        except NotImplementedError:
            signal.signal(sig, signal.SIG_DFL)


async def serve(settings: Settings, supervisor: Optional[Supervisor] = None) -> None:
    """Run until the supervisor has been shut down and stopped."""
    supervisor = supervisor or create_supervisor(settings)
    app = create_app(supervisor, settings)

    loop = asyncio.get_running_loop()
    install_signal_handlers(loop, supervisor)

    logger.info(f"Keepalive {__version__} starting (worker: {settings.target.path})")
    supervisor_task = asyncio.create_task(supervisor.run(), name="supervisor")
    server, server_task = start_http(app, settings)

    try:
        await supervisor_task
    finally:
        if server is not None and server_task is not None:
            server.should_exit = True
            await server_task
        remove_signal_handlers(loop)
        logger.info("Launcher stopped")


def run(settings: Settings) -> None:
    """Blocking entry point."""
    asyncio.run(serve(settings))
