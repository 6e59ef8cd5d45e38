"""Connection state machine: the single owner of ``ConnectionState``.

Transitions::

    disconnected --connect()--> connecting --success--> connected
    connecting --failure/timeout--> error
    connecting --cancel_connection()--> disconnected
    connected --disconnect()--> disconnecting --> disconnected
    connected --RECONNECTING reported--> reconnecting --CONNECTED--> connected
"""

import asyncio
import time
from typing import Callable, Iterable, Optional

from .backend import OpenVPNBackend, VPNBackend
from .credentials import CredentialProvider
from .exceptions import VPNError
from .models import (
    ConnectionState,
    ConnectionStatus,
    ServerDescriptor,
    StatisticsSnapshot,
)
from .monitor import MonitorLease, StatsMonitor
from .retry import RetryPolicy
from .telemetry import ConnectionTelemetry
from ..logging_utility import logger
from ..settings import Settings

StateListener = Callable[[ConnectionState], None]

CONNECTION_DROPPED = "Connection dropped"
DEFAULT_FAILURE = "Connection failed"

_LIVE = (ConnectionStatus.CONNECTED, ConnectionStatus.RECONNECTING)


class SessionController:
    """Runs connect, disconnect and cancel for one backend.

    At most one connection task is in flight. Every state change, whether
    it comes from an explicit call or from the statistics loop, goes through
    ``_set_state`` under one lock.
    """

    def __init__(
            self,
            backend: VPNBackend,
            monitor: StatsMonitor,
            credentials: Optional[CredentialProvider] = None,
            telemetry: Optional[ConnectionTelemetry] = None,
            retry_policy: RetryPolicy = RetryPolicy.DEFAULT,
    ):
        self.backend = backend
        self.monitor = monitor
        self.credentials = credentials
        self.telemetry = telemetry or ConnectionTelemetry()
        self.retry_policy = retry_policy

        self._state = ConnectionState.DISCONNECTED
        self._state_lock = asyncio.Lock()
        self._listeners: list[StateListener] = []
        self._connection_task: Optional[asyncio.Task] = None
        self._current_server: Optional[ServerDescriptor] = None
        self._lease: Optional[MonitorLease] = None

        monitor.add_status_listener(self._on_management_status)
        logger.info(f"Initialized with {backend.name} backend")

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def statistics(self) -> StatisticsSnapshot:
        return self.monitor.snapshot

    @property
    def current_server(self) -> Optional[ServerDescriptor]:
        return self._current_server

    @property
    def is_busy(self) -> bool:
        return self._connection_task is not None and not self._connection_task.done()

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    async def _set_state(self, new: ConnectionState,
                         only_from: Optional[Iterable[ConnectionStatus]] = None) -> bool:
        async with self._state_lock:
            if only_from is not None and self._state.status not in only_from:
                return False
            if new == self._state:
                return False
            old, self._state = self._state, new
            logger.info(f"State: {old} -> {new}")
            for listener in self._listeners:
                listener(new)
            return True

    # Connect

    async def connect(self, server: ServerDescriptor, enable_retry: bool = True) -> None:
        """
        Connect to a server, superseding any attempt in flight.

        Returns normally when the attempt is cancelled.

        Raises:
            VPNError: If the attempt fails; the state is then ``error``
        """
        logger.info(f"Connecting to: {server.country_long}")
        await self._cancel_inflight()
        self._current_server = server

        task = asyncio.create_task(self._perform_connection(server, enable_retry))
        self._connection_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            # The attempt removes its files before the cancellation propagates
            await asyncio.wait({task})
            raise
        finally:
            if self._connection_task is task and task.done():
                self._connection_task = None

        if task.cancelled():
            return
        task.result()

    async def _cancel_inflight(self) -> None:
        task = self._connection_task
        self._connection_task = None
        if task is not None and not task.done():
            logger.info("Cancelling previous connection attempt")
            task.cancel()
            await asyncio.wait({task})

    def _release_lease(self) -> None:
        if self._lease is not None:
            self._lease.release()
            self._lease = None

    async def _abandon_attempt(self) -> None:
        """Stop monitoring and tear the half-built session down."""
        self._lease = None
        self.monitor.force_stop()
        # Shielded so a second cancellation cannot leave files behind
        await asyncio.shield(self.backend.cancel())

    async def _perform_connection(self, server: ServerDescriptor, enable_retry: bool) -> None:
        started = time.monotonic()
        retries = 0

        def count_retry(attempt: int, error: Exception) -> None:
            nonlocal retries
            retries = attempt

        await self._set_state(ConnectionState.CONNECTING)
        self._release_lease()
        self.monitor.set_server_info(self.backend.describe(server))
        self._lease = self.monitor.start_monitoring()

        try:
            if self.credentials is not None:
                await self.credentials.ensure_authenticated()

            if enable_retry:
                await self.retry_policy.execute(lambda: self.backend.launch(server), on_retry=count_retry)
            else:
                await self.backend.launch(server)
        except asyncio.CancelledError:
            logger.info("Connection cancelled by user")
            await self._abandon_attempt()
            await self._set_state(ConnectionState.DISCONNECTED)
            raise
        except Exception as e:
            reason = e.reason if isinstance(e, VPNError) else DEFAULT_FAILURE
            logger.error(f"Connection failed: {e!r}")
            await self._abandon_attempt()
            self.telemetry.record_attempt(server.id, success=False, retry_count=retries,
                                          failure_reason=reason)
            await self._set_state(ConnectionState.error(reason))
            raise

        elapsed = time.monotonic() - started
        logger.info(f"Connected in {elapsed:.2f}s")
        self.telemetry.record_attempt(server.id, success=True, connection_time=elapsed,
                                      retry_count=retries)
        self.monitor.mark_connected()
        await self._set_state(ConnectionState.CONNECTED)

    # Cancel / disconnect

    async def cancel_connection(self) -> None:
        """Abandon the attempt in flight. Ends in ``disconnected``, never in ``error``."""
        logger.info("Cancelling connection...")
        await self._cancel_inflight()
        self._lease = None
        self.monitor.force_stop()
        await self.backend.cancel()
        await self._set_state(ConnectionState.DISCONNECTED)
        self._current_server = None

    async def disconnect(self) -> None:
        """
        Stop the tunnel and remove the session's files.

        Raises:
            VPNError: If the client could not be stopped; files are removed anyway
        """
        logger.info("Disconnecting...")
        await self._cancel_inflight()
        await self._set_state(ConnectionState.DISCONNECTING)
        self._lease = None
        self.monitor.force_stop()

        try:
            await self.backend.disconnect()
        except VPNError as e:
            logger.error(f"Disconnect failed: {e}")
            await self._set_state(ConnectionState.error(e.reason))
            raise

        await self._set_state(ConnectionState.DISCONNECTED)
        self._current_server = None
        logger.info("Disconnected successfully")

    # Statistics loop

    async def _on_management_status(self, status: Optional[ConnectionStatus]) -> None:
        if status is None or status is ConnectionStatus.DISCONNECTED:
            if await self._set_state(ConnectionState.error(CONNECTION_DROPPED), only_from=_LIVE):
                await self.backend.cancel()
                self._lease = None
                # Stops the loop this listener runs in, so it must come last
                self.monitor.force_stop()
        elif status is ConnectionStatus.RECONNECTING:
            await self._set_state(ConnectionState.RECONNECTING, only_from=(ConnectionStatus.CONNECTED,))
        elif status is ConnectionStatus.CONNECTED:
            await self._set_state(ConnectionState.CONNECTED, only_from=(ConnectionStatus.RECONNECTING,))


def build_controller(
        settings: Settings,
        credentials: CredentialProvider,
        telemetry: Optional[ConnectionTelemetry] = None,
) -> SessionController:
    """Wire the OpenVPN backend, monitor and controller together."""
    backend = OpenVPNBackend(settings, credentials)
    monitor = StatsMonitor(backend.channel, settings.poll_interval)
    return SessionController(
        backend=backend,
        monitor=monitor,
        credentials=credentials,
        telemetry=telemetry,
        retry_policy=RetryPolicy.named(settings.retry_preset),
    )
