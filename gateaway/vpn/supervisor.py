"""Launching, detecting and terminating the OpenVPN process."""

import asyncio
import shutil
from pathlib import Path
from typing import Optional

import psutil

from .command_factory import PROCESS_NAME, VPNCommandFactory
from .control_channel import ControlChannel
from .credentials import CredentialProvider
from .exceptions import (
    CommandFailed,
    ConnectionFailed,
    NotInstalled,
    VPNError,
)
from .utils import read_log_tail, wait_for_path
from ..logging_utility import logger
from ..settings import Settings

AUTH_FAILED_MARKER = "AUTH_FAILED"
AUTH_FAILED_REASON = "Authentication Failed"
GENERIC_FAILURE_REASON = "Connection failed - check log"


def is_client_process(name: Optional[str], cmdline: Optional[list[str]]) -> bool:
    """Match ``openvpn --config ...`` processes."""
    if cmdline:
        executable = Path(cmdline[0]).name
        return executable == PROCESS_NAME and "--config" in cmdline
    return name == PROCESS_NAME


def count_client_processes() -> int:
    count = 0
    for proc in psutil.process_iter(["name", "cmdline"], ad_value=None):
        try:
            if is_client_process(proc.info["name"], proc.info["cmdline"]):
                count += 1
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            continue
    return count


class ProcessSupervisor:
    """Keeps at most one OpenVPN client running."""

    def __init__(self, settings: Settings, credentials: CredentialProvider, channel: ControlChannel):
        self.settings = settings
        self.credentials = credentials
        self.channel = channel

    @property
    def binary(self) -> Optional[Path]:
        for candidate in self.settings.openvpn_paths:
            if Path(candidate).exists():
                return Path(candidate)
        found = shutil.which(PROCESS_NAME)
        return Path(found) if found else None

    def is_installed(self) -> bool:
        return self.binary is not None

    async def process_count(self) -> int:
        """Number of running clients; 0 if the process table query times out."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(count_client_processes),
                self.settings.process_query_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Process table query timed out")
        except psutil.Error as e:
            logger.warning(f"Failed to get process count: {e}")
        return 0

    async def is_running(self) -> bool:
        count = await self.process_count()
        if count:
            logger.debug(f"Process check: {count} process(es) running")
        return count > 0

    async def launch(self, config_path: Path) -> None:
        """
        Start OpenVPN with the given config and wait for its socket.

        Raises:
            NotInstalled: If no OpenVPN binary is found
            PermissionDenied: If sudo rejects the password
            AuthenticationCancelled: If the user cancels the password prompt
            ConnectionFailed: If the process or its socket never comes up
        """
        # Only one client may run at a time
        if await self.process_count() > 0:
            logger.warning("Stopping existing process before new connection")
            if self.channel.exists():
                await self.channel.signal_terminate()
            await asyncio.sleep(self.settings.stale_process_wait)

        binary = self.binary
        if binary is None:
            raise NotInstalled()

        logger.debug("Requesting admin privileges...")
        try:
            await self.credentials.run(VPNCommandFactory.start_vpn(binary, config_path), privileged=True)
        except CommandFailed as e:
            logger.error(f"Failed to start OpenVPN: {e}")
            raise ConnectionFailed(f"Failed to start OpenVPN: {e.reason}")

        await asyncio.sleep(self.settings.startup_delay)
        await self._verify_started()

    async def _verify_started(self) -> None:
        if not await self.is_running():
            logger.error("Process failed to start")
            logger.debug(f"Log: {' | '.join(self.tail_log(3))}")
            raise ConnectionFailed(self.diagnose_failure("Process failed to start"))

        logger.info("Process confirmed running")
        ready = await wait_for_path(
            self.channel.socket_path,
            self.settings.socket_wait,
            self.settings.socket_wait_interval,
        )
        if not ready:
            logger.warning("Management socket not created")
            raise ConnectionFailed("Management socket not available")
        logger.info("Management socket ready")

    def tail_log(self, lines: int = 5) -> list[str]:
        return read_log_tail(self.settings.log_file, lines)

    def diagnose_failure(self, default: str = GENERIC_FAILURE_REASON) -> str:
        """Best-effort failure reason from the end of the client log."""
        last_lines = " | ".join(self.tail_log(5))
        logger.debug(f"Log: {last_lines}")
        if AUTH_FAILED_MARKER in last_lines:
            return AUTH_FAILED_REASON
        if last_lines:
            return GENERIC_FAILURE_REASON
        return default

    async def force_terminate(self) -> None:
        """Kill every remaining client; failures are only logged."""
        logger.warning("Force-terminating OpenVPN")
        try:
            await self.credentials.run(VPNCommandFactory.force_kill_vpn(), privileged=True)
        except VPNError as e:
            logger.warning(f"Kill command failed: {e}")
            return
        await asyncio.sleep(self.settings.stale_process_wait)

    async def stop(self) -> bool:
        """
        Stop the client gracefully, force-killing it if it lingers.

        Returns:
            bool: True if no client is left running
        """
        if self.channel.exists():
            if await self.channel.signal_terminate():
                await asyncio.sleep(self.settings.disconnect_grace)
            else:
                logger.warning("Management socket failed, will try killall")

        remaining = await self.process_count()
        if remaining > 0:
            logger.warning(f"{remaining} process(es) still running, using killall...")
            await self.force_terminate()
            remaining = await self.process_count()
        return remaining == 0
