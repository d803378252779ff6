"""
Integration tests for the HTTP routes.
"""

import asyncio
import logging

import httpx
import pytest
from fastapi.testclient import TestClient

from keepalive.config import Settings
from keepalive.core.backoff import BackoffPolicy
from keepalive.core.process import ProcessHandle
from keepalive.core.supervisor import Supervisor
from keepalive.lib.logger import BufferedHandler, get_log_buffer
from keepalive.server import create_app


@pytest.fixture
def settings(workdir):
    return Settings(working_dir=workdir)


@pytest.fixture
def test_client(target, spawner, settings):
    """Client for an app whose supervisor has not been started."""
    app = create_app(Supervisor(target, spawner=spawner), settings)
    return TestClient(app)


@pytest.fixture
def log_buffer():
    buffer = get_log_buffer()
    buffer.clear()
    yield buffer
    buffer.clear()


def test_health_idle_supervisor(test_client):
    response = test_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"alive": False, "restarts": 0}


def test_health_detailed_idle(test_client):
    response = test_client.get("/health", params={"detailed": "true"})

    assert response.status_code == 200
    data = response.json()
    assert data["alive"] is False
    assert data["state"] == "idle"
    assert data["pid"] is None
    assert data["last_exit"] is None
    assert data["current_delay"] == 2.0
    assert "version" in data
    assert "timestamp" in data


def test_index_not_found(test_client):
    response = test_client.get("/")

    assert response.status_code == 200
    assert response.text == "Index not found"


def test_index_served_from_working_dir(test_client, workdir):
    (workdir / "index.html").write_text("<h1>bot is up</h1>")
    response = test_client.get("/")

    assert response.status_code == 200
    assert "text/html" in response.headers["content-type"]
    assert response.text == "<h1>bot is up</h1>"


def test_logs_returns_recent_entries(test_client, log_buffer):
    for i in range(5):
        log_buffer.append({"level": "INFO", "logger": "keepalive.child.stdout", "message": f"line {i}"})

    response = test_client.get("/logs", params={"limit": 2})

    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 2
    assert [e["message"] for e in data["entries"]] == ["line 3", "line 4"]


def test_logs_filtered_by_source(test_client, log_buffer):
    log_buffer.append({"source": "launcher", "stream": None, "message": "Child spawned (pid=7)"})
    log_buffer.append({"source": "worker", "stream": "stdout", "pid": 7, "message": "hello"})

    response = test_client.get("/logs", params={"source": "worker"})

    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 1
    assert data["entries"][0]["stream"] == "stdout"
    assert data["entries"][0]["pid"] == 7


def test_logs_rejects_unknown_source(test_client):
    assert test_client.get("/logs", params={"source": "kernel"}).status_code == 422


@pytest.mark.asyncio
async def test_worker_output_reaches_logs(target, write_script, log_buffer, settings):
    write_script("bot.py", "print('hello from bot')\n")
    handler = BufferedHandler(log_buffer)
    child_logger = logging.getLogger("keepalive.child")
    child_logger.addHandler(handler)
    child_logger.setLevel(logging.INFO)
    try:
        handle = await ProcessHandle.start(target)
        await asyncio.wait_for(handle.wait(), timeout=10)
    finally:
        child_logger.removeHandler(handler)
        child_logger.setLevel(logging.NOTSET)

    transport = httpx.ASGITransport(app=create_app(Supervisor(target), settings))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        data = (await client.get("/logs", params={"source": "worker"})).json()

    [entry] = data["entries"]
    assert entry["message"] == "hello from bot"
    assert entry["stream"] == "stdout"
    assert entry["pid"] == handle.pid


def test_logs_rejects_zero_limit(test_client):
    assert test_client.get("/logs", params={"limit": 0}).status_code == 422


@pytest.mark.asyncio
async def test_health_tracks_child(supervise, spawner, wait_until, settings):
    supervisor = supervise(backoff=BackoffPolicy(initial=5.0, maximum=10.0))
    app = create_app(supervisor, settings)
    transport = httpx.ASGITransport(app=app)

    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        await wait_until(lambda: supervisor.is_alive)
        response = await client.get("/health")
        assert response.json() == {"alive": True, "restarts": 0}

        detailed = (await client.get("/health?detailed=true")).json()
        assert detailed["state"] == "running"
        assert detailed["pid"] == spawner.current.pid

        spawner.current.exit(code=1, signal=None)
        await wait_until(lambda: supervisor.restart_pending)

        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"alive": False, "restarts": 1}

        detailed = (await client.get("/health?detailed=true")).json()
        assert detailed["state"] == "restarting"
        assert detailed["last_exit"]["code"] == 1
        assert detailed["current_delay"] == 7.5


@pytest.mark.asyncio
async def test_health_never_changes_state(supervise, spawner, wait_until, settings):
    supervisor = supervise(backoff=BackoffPolicy(initial=5.0, maximum=10.0))
    app = create_app(supervisor, settings)
    transport = httpx.ASGITransport(app=app)

    await wait_until(lambda: supervisor.is_alive)
    spawner.current.exit(code=1)
    await wait_until(lambda: supervisor.restart_pending)

    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        for _ in range(5):
            await client.get("/health")
            await client.get("/")

    assert spawner.attempts == 1
    assert supervisor.restart_pending
