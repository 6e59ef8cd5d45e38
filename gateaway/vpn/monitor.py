"""Background polling of the management socket for live statistics."""

import asyncio
import time
from dataclasses import replace
from datetime import datetime
from typing import Awaitable, Callable, Optional

from .control_channel import ControlChannel
from .models import ConnectionStatus, ServerInfo, StatisticsSnapshot
from .protocol import StateReport, StatusReport
from ..logging_utility import logger

SnapshotListener = Callable[[StatisticsSnapshot], None]
# Receives the mapped status of each state report, or None when the socket vanished
StatusListener = Callable[[Optional[ConnectionStatus]], Awaitable[None]]


def _delta(current: int, previous: int) -> int:
    # A lower counter means a new client process: count from zero again
    if current < previous:
        return current
    return current - previous


def build_snapshot(
        previous: StatisticsSnapshot,
        state: Optional[StateReport],
        status: Optional[StatusReport],
        now: Optional[float] = None,
) -> StatisticsSnapshot:
    """Derive the next snapshot from the latest replies.

    Fields the replies do not carry are taken from ``previous``.
    """
    now = time.monotonic() if now is None else now

    received = previous.bytes_received
    sent = previous.bytes_sent
    if status is not None:
        if status.bytes_received is not None:
            received = status.bytes_received
        if status.bytes_sent is not None:
            sent = status.bytes_sent

    received_delta = _delta(received, previous.bytes_received)
    sent_delta = _delta(sent, previous.bytes_sent)
    elapsed = now - previous.sampled_at if previous.sampled_at is not None else 0.0

    connected_since = previous.connected_since
    if state is not None and state.connection_status is ConnectionStatus.CONNECTED and connected_since is None:
        connected_since = datetime.fromtimestamp(state.timestamp)

    return replace(
        previous,
        connected_since=connected_since,
        tunnel_ip=(state.tunnel_ip if state else None) or previous.tunnel_ip,
        public_ip=(state.remote_ip if state else None) or previous.public_ip,
        bytes_received=received,
        bytes_sent=sent,
        received_delta=received_delta,
        sent_delta=sent_delta,
        download_speed=received_delta / elapsed if elapsed > 0 else 0.0,
        upload_speed=sent_delta / elapsed if elapsed > 0 else 0.0,
        management_state=state.token if state else previous.management_state,
        sampled_at=now,
    )


class MonitorLease:
    """One observer's interest in the polling loop.

    The loop runs while at least one lease is held. ``release`` is
    idempotent, and a lease works as a context manager.
    """

    def __init__(self, monitor: 'StatsMonitor'):
        self._monitor = monitor
        self._released = False

    @property
    def active(self) -> bool:
        return not self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._monitor._release(self)

    def __enter__(self) -> 'MonitorLease':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class StatsMonitor:
    """Polls ``state`` and ``status`` once per interval while leased."""

    def __init__(self, channel: ControlChannel, poll_interval: float = 1.0):
        self.channel = channel
        self.poll_interval = poll_interval
        self._leases: set[MonitorLease] = set()
        self._task: Optional[asyncio.Task] = None
        self._snapshot = StatisticsSnapshot.EMPTY
        self._was_connected = False
        self._last_status: Optional[ConnectionStatus] = None
        self._snapshot_listeners: list[SnapshotListener] = []
        self._status_listeners: list[StatusListener] = []

    @property
    def snapshot(self) -> StatisticsSnapshot:
        return self._snapshot

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def observer_count(self) -> int:
        return len(self._leases)

    def add_snapshot_listener(self, listener: SnapshotListener) -> None:
        self._snapshot_listeners.append(listener)

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    # Lifecycle

    def start_monitoring(self) -> MonitorLease:
        """Register an observer, starting the loop for the first one."""
        lease = MonitorLease(self)
        self._leases.add(lease)
        logger.debug(f"Starting monitoring (observers: {len(self._leases)})")
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return lease

    def stop_monitoring(self, lease: MonitorLease) -> None:
        lease.release()

    def _release(self, lease: MonitorLease) -> None:
        self._leases.discard(lease)
        if self._leases:
            return
        logger.debug("Stopping monitoring (no more observers)")
        self._stop_task()

    def force_stop(self) -> None:
        """Stop the loop regardless of outstanding leases."""
        leases, self._leases = self._leases, set()
        for lease in leases:
            lease._released = True
        self._stop_task()
        logger.debug("Monitoring force stopped")

    def _stop_task(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._was_connected = False
        self._last_status = None
        self._publish(StatisticsSnapshot.EMPTY)

    def set_server_info(self, info: ServerInfo) -> None:
        self._snapshot = replace(
            StatisticsSnapshot.EMPTY,
            protocol=info.protocol,
            port=info.port,
            cipher=info.cipher,
        )

    def mark_connected(self, since: Optional[datetime] = None) -> None:
        self._was_connected = True
        self._snapshot = replace(self._snapshot, connected_since=since or datetime.now())

    # Polling

    async def _run(self) -> None:
        try:
            while True:
                snapshot = await self.poll()
                # A listener may have stopped monitoring while we polled
                if self._task is not asyncio.current_task():
                    return
                self._publish(snapshot)
                await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            logger.debug("Monitoring task stopped")
            raise

    async def poll(self) -> StatisticsSnapshot:
        previous = self._snapshot
        if not self.channel.exists():
            if self._was_connected:
                self._was_connected = False
                logger.warning("VPN connection dropped (socket missing)")
                await self._notify_status(None)
            return previous

        state, status = await asyncio.gather(self.channel.query_state(), self.channel.query_status())
        snapshot = build_snapshot(previous, state, status)

        # Only a definitive reply changes what we believe about the link
        if state is not None:
            current = state.connection_status
            if current is not self._last_status:
                if self._was_connected and current is not ConnectionStatus.CONNECTED:
                    logger.warning(f"VPN connection state changed to {state.token}")
                self._last_status = current
            await self._notify_status(current)
        return snapshot

    def _publish(self, snapshot: StatisticsSnapshot) -> None:
        self._snapshot = snapshot
        for listener in self._snapshot_listeners:
            listener(snapshot)

    async def _notify_status(self, status: Optional[ConnectionStatus]) -> None:
        for listener in self._status_listeners:
            await listener(status)
