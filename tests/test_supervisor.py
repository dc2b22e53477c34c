import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from moltkeeper.config.settings import GatewayEnvironment
from moltkeeper.core import supervisor as supervisor_module
from moltkeeper.core.supervisor import (
    ProcessHandle,
    ProcessStatus,
    ProcessSupervisor,
    is_gateway_process,
    is_reapable_process,
)
from moltkeeper.exceptions import GatewayStartError


class _FakeAsyncProcess:
    def __init__(self, pid: int = 4242, returncode=None):
        self.pid = pid
        self.returncode = returncode
        self.terminated = False

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def kill(self):
        self.returncode = -9

    async def wait(self):
        return self.returncode


class _GatewayStub:
    """Stands in for launching the gateway: healthy once launched."""

    def __init__(self, returncode=None):
        self.launches = []
        self.returncode = returncode

    async def launch(self, cmd):
        self.launches.append(list(cmd))
        return _FakeAsyncProcess(pid=4242 + len(self.launches), returncode=self.returncode)

    async def probe(self, timeout=None):
        return bool(self.launches) and self.returncode is None


@pytest.fixture
def supervisor(settings, monkeypatch):
    sup = ProcessSupervisor(settings, GatewayEnvironment())
    monkeypatch.setattr(sup, "_scan", lambda predicate: [])
    return sup


def _install(monkeypatch, sup, stub):
    monkeypatch.setattr(sup, "_launch", stub.launch)
    monkeypatch.setattr(sup, "probe_health", stub.probe)
    monkeypatch.setattr(supervisor_module, "START_POLL_INTERVAL", 0.01)


# =============================================================================
# Start
# =============================================================================

@pytest.mark.asyncio
async def test_two_calls_spawn_exactly_one_process(supervisor, monkeypatch):
    stub = _GatewayStub()
    _install(monkeypatch, supervisor, stub)

    first = await supervisor.ensure_running()
    second = await supervisor.ensure_running()

    assert len(stub.launches) == 1
    assert first is second
    assert first.status is ProcessStatus.RUNNING
    assert first.spawned is True


@pytest.mark.asyncio
async def test_concurrent_calls_spawn_exactly_one_process(supervisor, monkeypatch):
    stub = _GatewayStub()
    _install(monkeypatch, supervisor, stub)

    handles = await asyncio.gather(*(supervisor.ensure_running() for _ in range(5)))

    assert len(stub.launches) == 1
    assert len({h.pid for h in handles}) == 1


@pytest.mark.asyncio
async def test_early_exit_raises_with_log_tail(supervisor, settings, monkeypatch):
    stub = _GatewayStub(returncode=1)
    _install(monkeypatch, supervisor, stub)
    settings.gateway_log_file.write_text("Error: invalid config key channels.telegram.dm\n")

    with pytest.raises(GatewayStartError) as excinfo:
        await supervisor.ensure_running()

    assert excinfo.value.exit_code == 1
    assert "invalid config key" in excinfo.value.stderr
    assert "invalid config key" in str(excinfo.value)


@pytest.mark.asyncio
async def test_start_timeout_raises(supervisor, settings, monkeypatch):
    stub = _GatewayStub()
    _install(monkeypatch, supervisor, stub)

    async def _never(timeout=None):
        return False

    monkeypatch.setattr(supervisor, "probe_health", _never)
    settings.gateway_start_timeout = 0.05

    with pytest.raises(GatewayStartError, match="did not become healthy"):
        await supervisor.ensure_running()


@pytest.mark.asyncio
async def test_unresponsive_untracked_gateway_is_replaced(supervisor, settings, monkeypatch):
    stub = _GatewayStub()
    _install(monkeypatch, supervisor, stub)
    stale = ProcessHandle(pid=999, command="openclaw gateway --port 18789", status=ProcessStatus.RUNNING)
    monkeypatch.setattr(supervisor, "_scan", lambda predicate: [] if stub.launches else [stale])

    terminated = []
    monkeypatch.setattr(supervisor, "_terminate_pid", lambda pid: terminated.append(pid) or True)

    for lock_file in settings.gateway_lock_files:
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        lock_file.write_text("locked")

    handle = await supervisor.ensure_running()

    assert terminated == [999]
    assert handle.spawned is True
    assert len(stub.launches) == 1
    assert not any(lock_file.exists() for lock_file in settings.gateway_lock_files)


@pytest.mark.asyncio
async def test_healthy_untracked_gateway_is_adopted(supervisor, monkeypatch):
    stub = _GatewayStub()
    _install(monkeypatch, supervisor, stub)
    existing = ProcessHandle(pid=777, status=ProcessStatus.RUNNING)
    monkeypatch.setattr(supervisor, "_scan", lambda predicate: [existing])

    async def _healthy(timeout=None):
        return True

    monkeypatch.setattr(supervisor, "probe_health", _healthy)

    handle = await supervisor.ensure_running()

    assert handle.pid == 777
    assert stub.launches == []


def test_build_command_modes(settings):
    plain = ProcessSupervisor(settings, GatewayEnvironment()).build_command()
    token = ProcessSupervisor(settings, GatewayEnvironment(gateway_token="secret")).build_command()

    assert plain[1:] == ["gateway", "--port", "18789", "--verbose", "--allow-unconfigured", "--bind", "lan"]
    assert token[-2:] == ["--token", "secret"]


# =============================================================================
# Force restart
# =============================================================================

@pytest.mark.asyncio
async def test_force_restart_counts_every_killed_process(supervisor, monkeypatch):
    spawned = _FakeAsyncProcess(pid=100)
    supervisor._spawned = ProcessHandle(pid=100, status=ProcessStatus.RUNNING, spawned=True, process=spawned)

    scans = [
        [ProcessHandle(pid=100), ProcessHandle(pid=200), ProcessHandle(pid=300)],
        [],
    ]
    monkeypatch.setattr(supervisor, "_scan", lambda predicate: scans.pop(0) if scans else [])
    monkeypatch.setattr(supervisor, "_terminate_pid", lambda pid: pid != 300)

    killed = await supervisor.force_restart()

    assert killed == 2
    assert spawned.terminated is True
    assert supervisor._spawned.status is ProcessStatus.KILLED


@pytest.mark.asyncio
async def test_force_restart_survives_slow_cleanup(supervisor, settings, monkeypatch):
    settings.cleanup_timeout = 0.05

    def _slow_cleanup():
        import time
        time.sleep(0.3)
        return 0

    monkeypatch.setattr(supervisor, "_cleanup_pass", _slow_cleanup)

    assert await supervisor.force_restart() == 0


def test_process_patterns():
    assert is_gateway_process({"cmdline": ["openclaw", "gateway", "--port", "18789"]})
    assert is_gateway_process({"cmdline": ["node", "/usr/lib/openclaw-gateway/index.js"]})
    assert not is_gateway_process({"cmdline": ["openclaw", "doctor"]})
    assert is_reapable_process({"cmdline": ["bash", "/usr/local/bin/start-openclaw.sh"]})
    assert is_reapable_process({"name": "openclaw", "cmdline": ["openclaw", "doctor"]})
    assert not is_reapable_process({"name": "python", "cmdline": ["python", "-m", "moltkeeper"]})


# =============================================================================
# Status and health
# =============================================================================

@pytest.mark.asyncio
async def test_status_variants(supervisor, monkeypatch):
    state = {"healthy": False, "handle": None}

    async def _probe(timeout=None):
        return state["healthy"]

    async def _find():
        return state["handle"]

    monkeypatch.setattr(supervisor, "probe_health", _probe)
    monkeypatch.setattr(supervisor, "find_existing", _find)

    assert (await supervisor.status()).status == "not_running"

    state["handle"] = ProcessHandle(pid=55)
    result = await supervisor.status()
    assert (result.status, result.processId) == ("not_responding", "55")

    state["healthy"] = True
    assert (await supervisor.status()).processId == "55"

    state["handle"] = None
    result = await supervisor.status()
    assert (result.ok, result.status, result.processId) == (True, "running", "untracked")


@pytest.mark.asyncio
async def test_status_reports_errors(supervisor, monkeypatch):
    async def _broken():
        raise RuntimeError("process table unavailable")

    monkeypatch.setattr(supervisor, "find_existing", _broken)

    result = await supervisor.status()

    assert result.ok is False
    assert result.status == "error"
    assert result.error == "process table unavailable"


@pytest.mark.asyncio
async def test_probe_health_treats_any_response_as_reachable(supervisor, settings):
    async def _not_found(request):
        return web.Response(status=404)

    app = web.Application()
    app.router.add_get("/", _not_found)
    server = TestServer(app, host="127.0.0.1")
    await server.start_server()
    try:
        settings.gateway_port = server.port
        assert await supervisor.probe_health() is True
    finally:
        await server.close()

    assert await supervisor.probe_health() is False
