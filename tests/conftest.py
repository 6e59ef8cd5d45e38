"""Shared fixtures: a fake OpenVPN client driven through a fake credential provider.

The fake never spawns anything. "Starting" the client opens a management
server on the configured Unix socket and flips the process count that
``count_client_processes`` reports.
"""

import asyncio
import base64
import shutil
import tempfile
import time
from pathlib import Path
from typing import Optional

import pytest

from gateaway.settings import Settings
from gateaway.vpn.credentials import CredentialProvider
from gateaway.vpn.exceptions import AuthenticationCancelled
from gateaway.vpn.models import ServerDescriptor

RELAY_IP = "219.100.37.1"
TUNNEL_IP = "10.8.0.6"

SAMPLE_OVPN = """client
dev tun
proto udp
remote 219.100.37.1 1195
cipher AES-128-CBC
auth-user-pass
#auth-user-pass
;management 127.0.0.1 7505
<ca>
-----BEGIN CERTIFICATE-----
MIIB
-----END CERTIFICATE-----
</ca>
"""


def state_line(token: str, tunnel_ip: str = TUNNEL_IP, remote_ip: str = RELAY_IP) -> str:
    return f"{int(time.time())},{token},SUCCESS,{tunnel_ip},{remote_ip},1195,,"


def status_reply(received: int, sent: int) -> str:
    return (
        "OpenVPN STATISTICS\r\n"
        "Updated,2024-01-01 00:00:00\r\n"
        "TUN/TAP read bytes,100\r\n"
        "TUN/TAP write bytes,200\r\n"
        f"TCP/UDP read bytes,{received}\r\n"
        f"TCP/UDP write bytes,{sent}\r\n"
        "Auth read bytes,300\r\n"
        "END\r\n"
    )


def make_server(country_short: str = "JP", ip: str = RELAY_IP, score: int = 100,
                config: str = SAMPLE_OVPN) -> ServerDescriptor:
    host = f"public-vpn-{country_short.lower()}"
    return ServerDescriptor(
        id=f"{ip}|{host}|{country_short}",
        hostname=host,
        ip=ip,
        country_long="Japan" if country_short == "JP" else country_short,
        country_short=country_short,
        score=score,
        config_base64=base64.b64encode(config.encode()).decode(),
        ping_ms=12,
        speed_bps=95_000_000,
    )


class FakeManagementServer:
    """Answers ``state``, ``status`` and ``signal SIGTERM`` on a Unix socket."""

    def __init__(self, socket_path: Path, token: str = "CONNECTED"):
        self.socket_path = socket_path
        self.token = token
        self.bytes_received = 2048
        self.bytes_sent = 1024
        self.complete_replies = True
        self.commands: list[str] = []
        self.on_terminate = None
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def is_serving(self) -> bool:
        return self._server is not None

    async def start(self) -> None:
        self._server = await asyncio.start_unix_server(self._handle, path=str(self.socket_path))

    def close(self) -> None:
        server, self._server = self._server, None
        if server is not None:
            server.close()
        self.socket_path.unlink(missing_ok=True)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        command = (await reader.readline()).decode().strip()
        self.commands.append(command)
        if command == "state":
            reply = f">INFO:OpenVPN Management Interface Version 5\r\n{state_line(self.token)}\r\n"
            if self.complete_replies:
                reply += "END\r\n"
        elif command == "status":
            reply = status_reply(self.bytes_received, self.bytes_sent)
        elif command == "signal SIGTERM":
            reply = "SUCCESS: signal SIGTERM thrown\r\n"
            if self.on_terminate is not None:
                self.on_terminate()
        else:
            reply = f"ERROR: unknown command [{command}]\r\n"

        writer.write(reply.encode())
        await writer.drain()
        if not self.complete_replies and command == "state":
            # Hold the connection open so the client times out
            await asyncio.sleep(0.5)
        writer.close()


class FakeOpenVPN(CredentialProvider):
    """Credential provider whose privileged commands drive a fake client.

    ``outcomes`` is consumed one entry per start:

    - ``"connect"``: the client comes up and reports CONNECTED
    - ``"hang"``: the client comes up but stays in WAIT
    - ``"auth_failed"``: the client writes AUTH_FAILED to its log and exits
    - ``"die"``: the client exits without logging anything
    """

    def __init__(self, settings: Settings, outcomes: Optional[list[str]] = None):
        self.settings = settings
        self.outcomes = list(outcomes or ["connect"])
        self.running = False
        self.starts = 0
        self.auth_checks = 0
        self.cancel_prompt = False
        self.commands: list[str] = []
        self.server: Optional[FakeManagementServer] = None

    @property
    def process_count(self) -> int:
        return 1 if self.running else 0

    async def ensure_authenticated(self) -> None:
        self.auth_checks += 1
        if self.cancel_prompt:
            raise AuthenticationCancelled()

    async def run(self, command: str, privileged: bool = False) -> str:
        self.commands.append(command)
        if "killall" in command:
            self.crash()
        if "--config" in command:
            await self._start()
        return ""

    async def _start(self) -> None:
        self.starts += 1
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if outcome == "auth_failed":
            self.settings.log_file.write_text(
                "Mon Jan  1 00:00:00 2024 SENT CONTROL [vpn]: 'PUSH_REQUEST' (status=1)\n"
                "Mon Jan  1 00:00:01 2024 AUTH: Received control message: AUTH_FAILED\n"
                "Mon Jan  1 00:00:01 2024 SIGTERM[soft,auth-failure] received, process exiting\n"
            )
            return
        if outcome == "die":
            return

        self.server = FakeManagementServer(
            self.settings.socket_path,
            token="CONNECTED" if outcome == "connect" else "WAIT",
        )
        self.server.on_terminate = self.crash
        await self.server.start()
        self.settings.pid_file.write_text("4242\n")
        self.running = True

    def crash(self) -> None:
        """The client process goes away and takes its socket with it."""
        self.running = False
        if self.server is not None:
            self.server.close()


@pytest.fixture
def config_dir():
    # Unix socket paths are limited to ~100 bytes, so stay out of tmp_path
    path = Path(tempfile.mkdtemp(prefix="ga-"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def settings(config_dir):
    binary = config_dir / "openvpn"
    binary.touch()
    return Settings(
        config_dir=config_dir,
        openvpn_paths=(str(binary),),
        connection_timeout=100,
        poll_interval=0.05,
        command_timeout=1.0,
        process_query_timeout=1.0,
        startup_delay=0.0,
        socket_wait=20,
        socket_wait_interval=0.05,
        stale_process_wait=0.0,
        disconnect_grace=0.0,
    )


@pytest.fixture
def server():
    return make_server()


@pytest.fixture
def fake_openvpn(settings, monkeypatch):
    fake = FakeOpenVPN(settings)
    monkeypatch.setattr("gateaway.vpn.supervisor.count_client_processes", lambda: fake.process_count)
    yield fake
    fake.crash()
