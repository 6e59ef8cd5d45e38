import asyncio
from dataclasses import replace

import pytest

from gateaway.vpn.control_channel import ControlChannel
from gateaway.vpn.models import ConnectionStatus, ManagementState, ServerInfo, StatisticsSnapshot
from gateaway.vpn.monitor import StatsMonitor, build_snapshot
from gateaway.vpn.protocol import StateReport, StatusReport

from conftest import FakeManagementServer


def _state(token="CONNECTED", tunnel_ip="10.8.0.6", remote_ip="92.202.199.250"):
    return StateReport(
        timestamp=1700000000,
        state=ManagementState.from_token(token),
        token=token,
        description="SUCCESS",
        tunnel_ip=tunnel_ip,
        remote_ip=remote_ip,
    )


def test_snapshot_computes_deltas_and_speed():
    previous = replace(StatisticsSnapshot.EMPTY, bytes_received=1024, bytes_sent=512, sampled_at=10.0)

    snapshot = build_snapshot(previous, _state(), StatusReport(2048, 1024), now=12.0)

    assert snapshot.received_delta == 1024
    assert snapshot.sent_delta == 512
    assert snapshot.download_speed == 512.0
    assert snapshot.upload_speed == 256.0
    assert snapshot.tunnel_ip == "10.8.0.6"
    assert snapshot.public_ip == "92.202.199.250"
    assert snapshot.management_state == "CONNECTED"


def test_counter_decrease_resets_baseline():
    previous = replace(StatisticsSnapshot.EMPTY, bytes_received=5000, bytes_sent=4000, sampled_at=0.0)

    snapshot = build_snapshot(previous, None, StatusReport(300, 200), now=1.0)

    assert snapshot.received_delta == 300
    assert snapshot.sent_delta == 200
    assert snapshot.download_speed >= 0
    assert snapshot.upload_speed >= 0


def test_failed_poll_carries_previous_values_forward():
    previous = replace(
        StatisticsSnapshot.EMPTY,
        tunnel_ip="10.8.0.6",
        public_ip="92.202.199.250",
        bytes_received=2048,
        bytes_sent=1024,
        protocol="OpenVPN/UDP",
        sampled_at=1.0,
    )

    snapshot = build_snapshot(previous, None, None, now=2.0)

    assert snapshot.tunnel_ip == "10.8.0.6"
    assert snapshot.public_ip == "92.202.199.250"
    assert snapshot.bytes_received == 2048
    assert snapshot.received_delta == 0
    assert snapshot.protocol == "OpenVPN/UDP"


def test_first_sample_has_no_speed():
    snapshot = build_snapshot(StatisticsSnapshot.EMPTY, _state(), StatusReport(2048, 1024), now=5.0)

    assert snapshot.bytes_received == 2048
    assert snapshot.download_speed == 0.0
    assert snapshot.connected_since is not None


@pytest.mark.asyncio
async def test_leases_keep_loop_running_until_last_release(config_dir):
    monitor = StatsMonitor(ControlChannel(config_dir / "missing.sock"), poll_interval=0.01)

    first = monitor.start_monitoring()
    second = monitor.start_monitoring()
    assert monitor.is_running
    assert monitor.observer_count == 2

    first.release()
    first.release()
    assert monitor.is_running
    assert monitor.observer_count == 1

    monitor.stop_monitoring(second)
    assert not monitor.is_running
    assert monitor.snapshot == StatisticsSnapshot.EMPTY


@pytest.mark.asyncio
async def test_lease_as_context_manager(config_dir):
    monitor = StatsMonitor(ControlChannel(config_dir / "missing.sock"), poll_interval=0.01)

    with monitor.start_monitoring() as lease:
        assert lease.active
        assert monitor.is_running

    assert not lease.active
    assert not monitor.is_running


@pytest.mark.asyncio
async def test_force_stop_drops_every_lease(config_dir):
    monitor = StatsMonitor(ControlChannel(config_dir / "missing.sock"), poll_interval=0.01)
    leases = [monitor.start_monitoring() for _ in range(3)]

    monitor.force_stop()

    assert not monitor.is_running
    assert monitor.observer_count == 0
    assert not any(lease.active for lease in leases)
    # Releasing after a force stop is harmless
    leases[0].release()


@pytest.mark.asyncio
async def test_polling_publishes_snapshots(config_dir):
    fake = FakeManagementServer(config_dir / "m.sock")
    await fake.start()
    monitor = StatsMonitor(ControlChannel(fake.socket_path, timeout=1.0), poll_interval=0.02)
    monitor.set_server_info(ServerInfo(protocol="OpenVPN/UDP", port=1195, cipher="AES-128-CBC"))
    seen = []
    monitor.add_snapshot_listener(seen.append)

    lease = monitor.start_monitoring()
    try:
        await asyncio.sleep(0.2)
    finally:
        lease.release()
        fake.close()

    populated = [s for s in seen if s.tunnel_ip]
    assert populated
    assert populated[0].tunnel_ip == "10.8.0.6"
    assert populated[0].bytes_received == 2048
    assert populated[0].port == 1195


@pytest.mark.asyncio
async def test_missing_socket_after_connect_is_reported(config_dir):
    monitor = StatsMonitor(ControlChannel(config_dir / "gone.sock"), poll_interval=0.01)
    statuses = []

    async def on_status(status):
        statuses.append(status)

    monitor.add_status_listener(on_status)
    monitor.mark_connected()
    await monitor.poll()
    await monitor.poll()

    assert statuses == [None]


@pytest.mark.asyncio
async def test_poll_reports_mapped_status(config_dir):
    fake = FakeManagementServer(config_dir / "m.sock", token="RECONNECTING")
    await fake.start()
    monitor = StatsMonitor(ControlChannel(fake.socket_path, timeout=1.0))
    statuses = []

    async def on_status(status):
        statuses.append(status)

    monitor.add_status_listener(on_status)
    try:
        await monitor.poll()
    finally:
        fake.close()

    assert statuses == [ConnectionStatus.RECONNECTING]
