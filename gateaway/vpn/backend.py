"""VPN backends: the capability interface and the OpenVPN CLI implementation."""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from .config_generator import ConfigGenerator
from .control_channel import ControlChannel
from .credentials import CredentialProvider
from .exceptions import ConnectionFailed, DisconnectionFailed, Timeout
from .models import ConnectionStatus, ServerDescriptor, ServerInfo, Session
from .protocol import StateReport
from .supervisor import ProcessSupervisor
from .utils import remove_files
from ..logging_utility import logger
from ..settings import Settings


class VPNBackend(ABC):
    """What the session controller needs from a VPN client."""

    name: str = "VPN"

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Whether the client binary is installed."""

    @abstractmethod
    async def launch(self, server: ServerDescriptor) -> None:
        """Start a connection and return once the tunnel is up."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Stop the tunnel and remove the session's files."""

    @abstractmethod
    async def cancel(self) -> None:
        """Abandon an in-progress attempt. Never raises."""

    def describe(self, server: ServerDescriptor) -> ServerInfo:
        return ServerInfo(country=server.country_long, country_short=server.country_short,
                          server_name=server.hostname)


class OpenVPNBackend(VPNBackend):
    """Drives the ``openvpn`` binary through its management socket."""

    name = "OpenVPN CLI"

    def __init__(
            self,
            settings: Settings,
            credentials: CredentialProvider,
            channel: Optional[ControlChannel] = None,
            generator: Optional[ConfigGenerator] = None,
            supervisor: Optional[ProcessSupervisor] = None,
    ):
        self.settings = settings
        self.channel = channel or ControlChannel(settings.socket_path, settings.command_timeout)
        self.generator = generator or ConfigGenerator(settings)
        self.supervisor = supervisor or ProcessSupervisor(settings, credentials, self.channel)
        self.session: Optional[Session] = None

        settings.config_dir.mkdir(parents=True, exist_ok=True)

    @property
    def is_available(self) -> bool:
        return self.supervisor.is_installed()

    def describe(self, server: ServerDescriptor) -> ServerInfo:
        return self.generator.describe(server)

    async def launch(self, server: ServerDescriptor) -> None:
        logger.info(f"Connecting to {server.country_long} ({server.hostname})")
        await self._discard_session()

        config_path = self.generator.generate(server)
        self.session = Session(
            server=server,
            config_path=config_path,
            auth_path=self.settings.auth_file,
            socket_path=self.settings.socket_path,
            pid_path=self.settings.pid_file,
            log_path=self.settings.log_file,
        )

        await self.supervisor.launch(config_path)
        logger.debug("Process running, waiting for CONNECTED state...")
        report = await self.wait_for_connection()
        logger.info(f"Connection established, VPN IP: {report.tunnel_ip}")

    async def wait_for_connection(self) -> StateReport:
        """
        Poll the management socket once per interval until CONNECTED.

        Raises:
            ConnectionFailed: If the process dies while waiting
            Timeout: If CONNECTED is not reached in time
        """
        attempts = self.settings.connection_timeout
        for attempt in range(1, attempts + 1):
            report = await self.channel.query_state()
            if report is not None and report.connection_status is ConnectionStatus.CONNECTED:
                logger.info(f"Connection established after {attempt} checks")
                return report

            if not await self.supervisor.is_running():
                logger.error("Process terminated during connection")
                raise ConnectionFailed(self.supervisor.diagnose_failure())

            await asyncio.sleep(self.settings.poll_interval)

        raise Timeout(f"Connection timeout after {attempts} seconds - check server")

    async def cancel(self) -> None:
        logger.info("Cancelling connection...")
        if not self.channel.exists():
            logger.debug("No socket yet, only stray processes need stopping")
        try:
            await self.supervisor.stop()
        except Exception as e:
            logger.warning(f"Cancel cleanup failed: {e}")
        finally:
            self.cleanup()

    async def disconnect(self) -> None:
        logger.info("Disconnecting...")
        try:
            stopped = await self.supervisor.stop()
        finally:
            self.cleanup()
        if not stopped:
            raise DisconnectionFailed("OpenVPN process is still running")
        logger.info("Disconnected successfully")

    def cleanup(self) -> None:
        """Remove every transient file, whether or not the process is gone."""
        remove_files([
            self.settings.pid_file,
            self.settings.socket_path,
            self.settings.auth_file,
            *self.generator.generated_configs(),
        ])
        self.session = None

    async def _discard_session(self) -> None:
        if self.session is not None:
            logger.debug("Discarding previous session files")
        stale = [self.settings.auth_file, self.settings.pid_file, *self.generator.generated_configs()]
        # A live client still needs its socket to be stopped gracefully
        if not await self.supervisor.is_running():
            stale.append(self.settings.socket_path)
        remove_files(stale)
        self.session = None
