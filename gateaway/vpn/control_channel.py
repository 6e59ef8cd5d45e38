"""Client for the OpenVPN management socket."""

import asyncio
from pathlib import Path
from typing import Optional

from .exceptions import ProtocolParseError
from .protocol import (
    StateReport,
    StatusReport,
    is_terminal,
    parse_command_result,
    parse_state,
    parse_status,
)
from ..logging_utility import logger


class ControlChannel:
    """Sends single-line commands to the management socket.

    Every command uses a fresh connection. A missing socket file means no
    client is running yet; queries then return ``None`` instead of raising.
    """

    def __init__(self, socket_path: Path, timeout: float = 5.0):
        """Initialize channel.

        Args:
            socket_path: Path of the Unix socket given to ``management``
            timeout: Seconds to wait for a complete reply
        """
        self.socket_path = Path(socket_path)
        self._timeout = timeout

    def exists(self) -> bool:
        return self.socket_path.exists()

    async def send(self, command: str) -> Optional[str]:
        """Send a command and return the raw reply.

        Returns ``None`` when there is no socket, the connection fails, or
        nothing arrived before the timeout. A partial reply received before
        the timeout is returned as is.
        """
        if not self.exists():
            logger.debug(f"Management socket not found, skipping '{command}'")
            return None

        received: list[str] = []
        try:
            await asyncio.wait_for(self._exchange(command, received), self._timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Timeout waiting for reply to '{command}'")
        except OSError as e:
            logger.warning(f"Management socket error on '{command}': {e}")
            return None

        if not received:
            return None
        return "".join(received)

    async def _exchange(self, command: str, received: list[str]) -> None:
        reader, writer = await asyncio.open_unix_connection(str(self.socket_path))
        try:
            writer.write(f"{command}\n".encode())
            await writer.drain()

            while True:
                raw = await reader.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace")
                received.append(line)
                if is_terminal(line):
                    break
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def query_state(self) -> Optional[StateReport]:
        response = await self.send("state")
        if response is None:
            return None
        try:
            report = parse_state(response)
        except ProtocolParseError as e:
            logger.debug(f"Unparseable state reply: {e}")
            return None
        logger.debug(f"OpenVPN state: {report.token}")
        return report

    async def query_status(self) -> Optional[StatusReport]:
        response = await self.send("status")
        if response is None:
            return None
        try:
            return parse_status(response)
        except ProtocolParseError as e:
            logger.debug(f"Unparseable status reply: {e}")
            return None

    async def signal_terminate(self) -> bool:
        """Ask the client to shut down gracefully."""
        response = await self.send("signal SIGTERM")
        if response is None or not parse_command_result(response):
            logger.warning("Failed to send SIGTERM via management socket")
            return False
        logger.info("Sent 'signal SIGTERM' via management socket")
        return True

    async def set_state_notifications(self, enabled: bool) -> bool:
        response = await self.send("state on" if enabled else "state off")
        return response is not None and parse_command_result(response)
