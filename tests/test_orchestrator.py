"""End-to-end tests of the Warden registry against the fake remote host."""

import asyncio

import httpx
import pytest
from conftest import HOME, WORKER, mock_client

from warden.orchestrator import Warden
from warden.types import ProcessStatus


class HealthEndpoint:
    """Scripted /health responses; falls back to 200 once the script runs out."""

    def __init__(self, *statuses):
        self.statuses = list(statuses)
        self.checks = 0

    def __call__(self, request):
        if request.url.path == "/logs":
            return httpx.Response(200, text="worker stalled\n")
        self.checks += 1
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status)


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def make_warden(config, transport_factory, endpoint=None):
    return Warden(
        config,
        transport_factory=transport_factory,
        http_client=mock_client(endpoint or HealthEndpoint()),
    )


class TestScenarios:
    @pytest.mark.asyncio
    async def test_connect_and_pwd(self, config, transport_factory):
        async with make_warden(config, transport_factory) as warden:
            connected = await warden.connect_project("u1", "demo")
            assert connected.ok
            assert connected.value["cwd"] == HOME

            result = await warden.execute("u1", "pwd")

            assert result.value.stdout.strip() == HOME
            assert warden.sessions.cwd("u1") == HOME

    @pytest.mark.asyncio
    async def test_cd_to_missing_directory(self, config, transport_factory):
        async with make_warden(config, transport_factory) as warden:
            await warden.connect_project("u1", "demo")

            result = await warden.execute("u1", "cd /nonexistent")

            assert not result.ok
            assert warden.sessions.cwd("u1") == HOME

    @pytest.mark.asyncio
    async def test_deploy_then_noop(self, config, transport_factory, remote):
        async with make_warden(config, transport_factory) as warden:
            await warden.connect_project("u1", "demo")

            first = await warden.deploy_artifact("u1")
            second = await warden.deploy_artifact("u1")

            assert first.ok and second.ok
            assert len(remote.puts) == 1
            assert WORKER in remote.executables

    @pytest.mark.asyncio
    async def test_start_and_start_again(self, config, transport_factory, remote):
        async with make_warden(config, transport_factory) as warden:
            await warden.connect_project("u1", "demo")
            await warden.deploy_artifact("u1")

            started = await warden.start_worker("u1", 8000)
            again = await warden.start_worker("u1", 8000)

            assert started.value.status == ProcessStatus.RUNNING
            assert started.value.pid > 0
            assert started.value.url == "http://localhost:8000"
            assert again.value.pid == started.value.pid
            assert "already running" in again.message

    @pytest.mark.asyncio
    async def test_start_frees_foreign_occupant(self, config, transport_factory, remote):
        remote.worker_port = 8000
        occupant = remote.spawn("node server.js", port=8000)

        async with make_warden(config, transport_factory) as warden:
            await warden.connect_project("u1", "demo")
            await warden.deploy_artifact("u1")

            started = await warden.start_worker("u1", 8000)

            assert started.ok
            assert not remote.alive(occupant)
            assert remote.port_holders(8000) == [started.value.pid]

    @pytest.mark.asyncio
    async def test_two_failures_trigger_one_recovery(self, config, transport_factory, remote):
        endpoint = HealthEndpoint(500, 500)
        remote.add_file(WORKER, "binary", executable=True)
        hung = remote.spawn(WORKER, port=3051, ignores_term=True)

        async with make_warden(config, transport_factory, endpoint) as warden:
            await warden.connect_project("u1", "demo")
            recover = warden.recovery.recover
            calls = []

            async def counting_recover(user_id):
                calls.append(user_id)
                return await recover(user_id)

            warden.recovery.recover = counting_recover

            result = await warden.monitor("u1", interval=0.01, max_retries=3)
            assert result.monitoring_started
            await wait_until(lambda: result.handle.state.check_count >= 3)
            result.stop()
            await result.handle.wait()

            assert calls == ["u1"]
            assert result.handle.state.consecutive_failures == 0
            assert not remote.alive(hung)
            process = warden.supervisor.get("u1")
            assert process.status == ProcessStatus.RUNNING
            assert remote.port_holders(3051) == [process.pid]

    @pytest.mark.asyncio
    async def test_stop_monitoring_is_prompt(self, config, transport_factory):
        endpoint = HealthEndpoint()

        async with make_warden(config, transport_factory, endpoint) as warden:
            await warden.connect_project("u1", "demo")
            result = await warden.monitor("u1", interval=0.01, max_retries=3)
            await wait_until(lambda: endpoint.checks >= 2)

            result.stop()
            seen = endpoint.checks
            await asyncio.sleep(0.05)

            assert endpoint.checks <= seen + 1


class TestMonitorLifecycle:
    @pytest.mark.asyncio
    async def test_requires_session(self, config, transport_factory):
        async with make_warden(config, transport_factory) as warden:
            result = await warden.monitor("u1")

            assert not result.monitoring_started
            assert "SSH not connected" in result.message

    @pytest.mark.asyncio
    async def test_requires_public_url(self, config, transport_factory):
        async with make_warden(config, transport_factory) as warden:
            await warden.connect_project("u1", "headless")

            result = await warden.monitor("u1")

            assert not result.monitoring_started
            assert "Public address not configured" in result.message

    @pytest.mark.asyncio
    async def test_new_monitor_replaces_old(self, config, transport_factory):
        async with make_warden(config, transport_factory) as warden:
            await warden.connect_project("u1", "demo")
            first = await warden.monitor("u1", interval=0.01)
            second = await warden.monitor("u1", interval=0.01)

            assert first.handle.stopped
            assert not first.handle.running
            assert second.handle.running
            assert warden.monitor_for("u1") is second.handle

    @pytest.mark.asyncio
    async def test_default_interval_from_config(self, config, transport_factory):
        async with make_warden(config, transport_factory) as warden:
            await warden.connect_project("u1", "demo")

            result = await warden.monitor("u1")

            assert result.handle.interval == pytest.approx(0.01)
            assert result.handle.max_retries == 3
            assert "0.01s interval" in result.message

    @pytest.mark.asyncio
    async def test_stop_monitoring(self, config, transport_factory):
        async with make_warden(config, transport_factory) as warden:
            await warden.connect_project("u1", "demo")
            result = await warden.monitor("u1", interval=0.01)

            assert await warden.stop_monitoring("u1")
            assert not result.handle.running
            assert not await warden.stop_monitoring("u1")

    @pytest.mark.asyncio
    async def test_aclose_stops_everything(self, config, transport_factory, remote):
        warden = make_warden(config, transport_factory)
        await warden.connect_project("u1", "demo")
        await warden.connect_project("u2", "demo")
        result = await warden.monitor("u1", interval=0.01)

        await warden.aclose()

        assert not result.handle.running
        assert all(transport.closed for transport in remote.transports)
        assert not warden.sessions.is_connected("u1")
        assert not (await warden.monitor("u1")).monitoring_started


class TestProjects:
    @pytest.mark.asyncio
    async def test_unknown_project(self, config, transport_factory, remote):
        async with make_warden(config, transport_factory) as warden:
            result = await warden.connect_project("u1", "missing")

            assert not result.ok
            assert "no deployment target" in result.message
            assert remote.connects == []
            assert warden.active_project("u1") is None

    @pytest.mark.asyncio
    async def test_active_project_per_user(self, config, transport_factory):
        async with make_warden(config, transport_factory) as warden:
            await warden.connect_project("u1", "demo")
            await warden.connect_project("u2", "headless")

            assert warden.active_project("u1") == "demo"
            assert warden.active_project("u2") == "headless"
            assert warden.health.endpoint("u1") == "https://demo.example.com"
            assert warden.health.endpoint("u2") is None

    @pytest.mark.asyncio
    async def test_release_port_without_tracked_process(self, config, transport_factory, remote):
        pid = remote.spawn(WORKER, port=3051)

        async with make_warden(config, transport_factory) as warden:
            await warden.connect_project("u1", "demo")

            result = await warden.release_port("u1")

            assert result.ok
            assert not remote.alive(pid)


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_same_user_commands_do_not_interleave(self, config, transport_factory, remote):
        async with make_warden(config, transport_factory) as warden:
            await warden.connect_project("u1", "demo")
            remote.delay = 0.01

            changed, printed = await asyncio.gather(
                warden.execute("u1", "cd /tmp"),
                warden.execute("u1", "pwd"),
            )

            assert changed.ok
            assert printed.value.stdout.strip() == "/tmp"

    @pytest.mark.asyncio
    async def test_users_run_independently(self, config, transport_factory, remote):
        async with make_warden(config, transport_factory) as warden:
            await warden.connect_project("u1", "demo")
            await warden.connect_project("u2", "demo")
            remote.delay = 0.01

            await asyncio.gather(
                warden.execute("u1", "cd /tmp"),
                warden.execute("u2", "cd project"),
            )

            assert warden.sessions.cwd("u1") == "/tmp"
            assert warden.sessions.cwd("u2") == f"{HOME}/project"
