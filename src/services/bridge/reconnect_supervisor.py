"""
Reconnect Supervisor for TopicGate

Owns the source connection state and keeps the connection alive. A
recoverable drop schedules a reconnect after a delay; a terminal drop
(remote logout) stops all attempts and alerts the operator.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from src.models.message import ConnectionStatus, ConnectionUpdate, DisconnectReason


class ConnectionState(Enum):
    """Source connection states"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    TERMINAL = "terminal"


AlertCallback = Callable[[str, str], Awaitable[Any]]
ConnectedCallback = Callable[[], Awaitable[Any]]


class ReconnectSupervisor:
    """
    Connection supervisor for the source client.

    Features:
    - Fixed delay between attempts by default, optional backoff multiplier
    - At most one pending reconnect attempt at a time
    - Terminal state for logouts that need manual re-authentication
    - Shutdown flag checked before every scheduling decision
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[Any]],
        delay: float = 5.0,
        multiplier: float = 1.0,
        max_delay: float = 60.0,
        alert_callback: Optional[AlertCallback] = None,
        connected_callback: Optional[ConnectedCallback] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the supervisor.

        Args:
            connect: Coroutine function opening the source connection; raises on failure
            delay: Seconds to wait before the first reconnect attempt
            multiplier: Backoff multiplier applied per failed attempt (1.0 = fixed delay)
            max_delay: Upper bound for the delay in seconds
            alert_callback: Coroutine function (title, message) notifying the operator
            connected_callback: Coroutine function awaited each time the connection opens
            logger: Logger instance for supervisor operations
        """
        self._connect = connect
        self.delay = delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.alert_callback = alert_callback
        self.connected_callback = connected_callback
        self.logger = logger or logging.getLogger(__name__)

        self._state = ConnectionState.DISCONNECTED
        self._shutting_down = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempt = 0

        self.stats = {
            'connects': 0,
            'disconnects': 0,
            'reconnect_attempts': 0,
            'failed_attempts': 0,
            'last_connected_at': None,
            'last_disconnect_reason': None,
        }

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def start(self) -> bool:
        """
        Open the initial connection.

        Returns:
            True if connected; on failure a reconnect is scheduled and False returned
        """
        self._state = ConnectionState.CONNECTING
        try:
            await self._connect()
        except Exception as e:
            self.logger.error(f"Initial connection failed: {e}")
            self._state = ConnectionState.DISCONNECTED
            self.schedule_reconnect()
            return False

        await self._mark_connected()
        return True

    async def handle_update(self, update: ConnectionUpdate) -> None:
        """Apply a connection update reported by the source client"""
        if update.status is ConnectionStatus.OPEN:
            await self._mark_connected()
            return

        if update.status is ConnectionStatus.CONNECTING:
            if self._state is not ConnectionState.TERMINAL:
                self._state = ConnectionState.CONNECTING
            return

        reason = update.reason or DisconnectReason.UNKNOWN
        self.stats['disconnects'] += 1
        self.stats['last_disconnect_reason'] = reason.value

        if self._shutting_down:
            self._state = ConnectionState.DISCONNECTED
            self.logger.info("Source connection closed during shutdown")
            return

        if reason.is_terminal:
            await self._enter_terminal(reason, update.detail)
            return

        self.logger.warning(f"Source connection closed ({reason.value}), will reconnect")
        self._state = ConnectionState.DISCONNECTED
        self.schedule_reconnect()

    def schedule_reconnect(self) -> bool:
        """
        Schedule a reconnect attempt unless one is pending or reconnecting is not allowed.

        Returns:
            True if a new attempt was scheduled
        """
        if self._shutting_down or self._state is ConnectionState.TERMINAL:
            return False

        self._state = ConnectionState.CONNECTING
        if self.reconnect_pending:
            return False

        self._reconnect_task = asyncio.create_task(self._reconnect_loop())
        return True

    async def reconnect_now(self) -> bool:
        """
        Operator-requested reconnect: drop any pending attempt and connect immediately.

        Also leaves the terminal state, for use after manual re-authentication.
        """
        if self._shutting_down:
            return False

        await self._cancel_pending()
        self._state = ConnectionState.CONNECTING
        self._reconnect_attempt = 0
        try:
            await self._connect()
        except Exception as e:
            self.logger.error(f"Manual reconnect failed: {e}")
            self._state = ConnectionState.DISCONNECTED
            self.schedule_reconnect()
            return False

        await self._mark_connected()
        return True

    async def request_shutdown(self) -> None:
        """Stop reconnecting for good and cancel any pending attempt"""
        self._shutting_down = True
        await self._cancel_pending()
        if self._state is not ConnectionState.TERMINAL:
            self._state = ConnectionState.DISCONNECTED

    async def _reconnect_loop(self) -> None:
        while not self._shutting_down:
            delay = self._calculate_backoff_delay(
                self._reconnect_attempt, self.delay, self.max_delay, self.multiplier
            )
            self.logger.info(f"Reconnection attempt {self._reconnect_attempt + 1} in {delay:.1f} seconds")

            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                self.logger.info("Reconnection cancelled")
                raise

            if self._shutting_down or self._state is ConnectionState.TERMINAL:
                return

            self._reconnect_attempt += 1
            self.stats['reconnect_attempts'] += 1
            try:
                await self._connect()
            except Exception as e:
                self.stats['failed_attempts'] += 1
                self.logger.warning(f"Reconnection attempt {self._reconnect_attempt} failed: {e}")
                continue

            self.logger.info(f"Reconnected after {self._reconnect_attempt} attempt(s)")
            await self._mark_connected()
            return

    def _calculate_backoff_delay(
        self,
        attempt: int,
        initial_delay: float,
        max_delay: float,
        multiplier: float
    ) -> float:
        """
        Calculate the delay before an attempt.

        Formula: min(initial_delay * (multiplier ^ attempt), max_delay)
        """
        delay = initial_delay * (multiplier ** attempt)
        return min(delay, max_delay)

    async def _mark_connected(self) -> None:
        opened = self._state is not ConnectionState.CONNECTED
        self._state = ConnectionState.CONNECTED
        self._reconnect_attempt = 0
        if not opened:
            return

        self.logger.info("Source connection open")
        self.stats['connects'] += 1
        self.stats['last_connected_at'] = datetime.utcnow().isoformat()

        if self.connected_callback is not None:
            try:
                await self.connected_callback()
            except Exception as e:
                self.logger.error(f"Connected callback failed: {e}")

    async def _enter_terminal(self, reason: DisconnectReason, detail: str) -> None:
        self._state = ConnectionState.TERMINAL
        await self._cancel_pending()

        message = f"Source session ended ({reason.value}). Re-authentication is required."
        if detail:
            message = f"{message} {detail}"
        self.logger.critical(message)

        if self.alert_callback is not None:
            try:
                await self.alert_callback("Source Logged Out", message)
            except Exception as e:
                self.logger.error(f"Operator alert failed: {e}")

    async def _cancel_pending(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def get_stats(self) -> Dict[str, Any]:
        return {
            'state': self._state.value,
            'shutting_down': self._shutting_down,
            'reconnect_pending': self.reconnect_pending,
            'reconnect_attempt': self._reconnect_attempt,
            **self.stats,
        }
