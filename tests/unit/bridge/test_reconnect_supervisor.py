"""
Unit tests for the source connection supervisor.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from src.models.message import ConnectionStatus, ConnectionUpdate, DisconnectReason
from src.services.bridge.reconnect_supervisor import ConnectionState, ReconnectSupervisor


def closed(reason=DisconnectReason.CONNECTION_LOST, detail=""):
    return ConnectionUpdate(status=ConnectionStatus.CLOSE, reason=reason, detail=detail)


@pytest.fixture
def alerts():
    return AsyncMock()


@pytest.fixture
async def supervisor(source_client, alerts):
    instance = ReconnectSupervisor(source_client.connect, delay=0.01, max_delay=0.05,
                                   alert_callback=alerts)
    yield instance
    await instance.request_shutdown()


async def wait_for_state(supervisor, state, timeout=1.0):
    async def poll():
        while supervisor.state is not state:
            await asyncio.sleep(0.005)
    await asyncio.wait_for(poll(), timeout)


class TestStart:
    """Initial connection"""

    @pytest.mark.asyncio
    async def test_start_connects(self, supervisor, source_client):
        assert await supervisor.start() is True
        assert supervisor.is_connected
        assert source_client.connect_calls == 1

    @pytest.mark.asyncio
    async def test_failed_start_schedules_reconnect(self, supervisor, source_client):
        source_client.connect_failures = 1

        assert await supervisor.start() is False
        await wait_for_state(supervisor, ConnectionState.CONNECTED)

        assert source_client.connect_calls == 2


class TestConnectionUpdates:
    """Recoverable and terminal drops"""

    @pytest.mark.asyncio
    async def test_recoverable_close_reconnects(self, supervisor, source_client):
        await supervisor.start()

        await supervisor.handle_update(closed())
        assert supervisor.state is ConnectionState.CONNECTING
        await wait_for_state(supervisor, ConnectionState.CONNECTED)

        assert source_client.connect_calls == 2
        assert supervisor.get_stats()['last_disconnect_reason'] == "connection_lost"

    @pytest.mark.asyncio
    async def test_repeated_failures_keep_retrying(self, supervisor, source_client):
        await supervisor.start()
        source_client.connect_failures = 3

        await supervisor.handle_update(closed(DisconnectReason.TIMED_OUT))
        await wait_for_state(supervisor, ConnectionState.CONNECTED)

        stats = supervisor.get_stats()
        assert stats['failed_attempts'] == 3
        assert stats['reconnect_attempts'] == 4

    @pytest.mark.asyncio
    async def test_burst_of_closes_schedules_one_attempt(self, supervisor, source_client):
        await supervisor.start()

        for _ in range(5):
            await supervisor.handle_update(closed())
        await wait_for_state(supervisor, ConnectionState.CONNECTED)

        assert source_client.connect_calls == 2

    @pytest.mark.asyncio
    async def test_logout_is_terminal(self, supervisor, source_client, alerts):
        await supervisor.start()

        await supervisor.handle_update(closed(DisconnectReason.LOGGED_OUT, "device removed"))
        await asyncio.sleep(0.05)

        assert supervisor.state is ConnectionState.TERMINAL
        assert source_client.connect_calls == 1
        assert supervisor.schedule_reconnect() is False
        alerts.assert_awaited_once()
        title, message = alerts.await_args.args
        assert title == "Source Logged Out"
        assert "device removed" in message

    @pytest.mark.asyncio
    async def test_close_during_shutdown_does_not_reconnect(self, supervisor, source_client):
        await supervisor.start()
        await supervisor.request_shutdown()

        await supervisor.handle_update(closed())
        await asyncio.sleep(0.05)

        assert supervisor.state is ConnectionState.DISCONNECTED
        assert source_client.connect_calls == 1
        assert supervisor.reconnect_pending is False

    @pytest.mark.asyncio
    async def test_open_update_marks_connected(self, supervisor):
        await supervisor.handle_update(ConnectionUpdate(status=ConnectionStatus.CONNECTING))
        assert supervisor.state is ConnectionState.CONNECTING

        await supervisor.handle_update(ConnectionUpdate(status=ConnectionStatus.OPEN))
        assert supervisor.is_connected


class TestOperatorControls:
    """Manual reconnect and shutdown"""

    @pytest.mark.asyncio
    async def test_reconnect_now_leaves_terminal_state(self, supervisor, source_client):
        await supervisor.start()
        await supervisor.handle_update(closed(DisconnectReason.LOGGED_OUT))

        assert await supervisor.reconnect_now() is True
        assert supervisor.is_connected
        assert source_client.connect_calls == 2

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_attempt(self, source_client):
        supervisor = ReconnectSupervisor(source_client.connect, delay=10)
        await supervisor.handle_update(closed())
        assert supervisor.reconnect_pending

        await supervisor.request_shutdown()

        assert supervisor.reconnect_pending is False
        assert supervisor.is_shutting_down
        assert await supervisor.reconnect_now() is False


class TestBackoff:
    """Delay calculation"""

    def test_fixed_delay_by_default(self, source_client):
        supervisor = ReconnectSupervisor(source_client.connect, delay=5)

        delays = [supervisor._calculate_backoff_delay(n, 5, 60, supervisor.multiplier) for n in range(5)]

        assert delays == [5, 5, 5, 5, 5]

    def test_multiplier_is_capped(self, source_client):
        supervisor = ReconnectSupervisor(source_client.connect)

        delays = [supervisor._calculate_backoff_delay(n, 1, 10, 2.0) for n in range(6)]

        assert delays == [1, 2, 4, 8, 10, 10]


class TestConnectedCallback:
    """Notification when the connection opens"""

    @pytest.mark.asyncio
    async def test_called_once_per_opening(self, source_client):
        opened = AsyncMock()
        supervisor = ReconnectSupervisor(source_client.connect, delay=0.01, connected_callback=opened)
        try:
            await supervisor.start()
            await supervisor.handle_update(ConnectionUpdate(status=ConnectionStatus.OPEN))
            assert opened.await_count == 1

            await supervisor.handle_update(closed())
            await wait_for_state(supervisor, ConnectionState.CONNECTED)
            await asyncio.sleep(0.01)
            assert opened.await_count == 2
        finally:
            await supervisor.request_shutdown()

    @pytest.mark.asyncio
    async def test_callback_failure_keeps_connection(self, source_client):
        supervisor = ReconnectSupervisor(source_client.connect,
                                         connected_callback=AsyncMock(side_effect=RuntimeError("down")))

        assert await supervisor.start() is True
        assert supervisor.is_connected
        await supervisor.request_shutdown()
