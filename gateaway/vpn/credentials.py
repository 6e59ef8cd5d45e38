"""Privilege escalation for the OpenVPN process."""

import asyncio
import getpass
from abc import ABC, abstractmethod
from typing import Callable, Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from .command_factory import VPNCommandFactory
from .exceptions import (
    AuthenticationCancelled,
    AuthenticationFailed,
    CommandFailed,
    PermissionDenied,
)
from .utils import run_command
from ..logging_utility import logger

PasswordPrompt = Callable[[], Optional[str]]

_SUDO_REJECTIONS = ("incorrect password", "Sorry, try again", "no password was provided")


class CredentialProvider(ABC):
    """Runs shell commands, optionally with administrator privileges."""

    @abstractmethod
    async def ensure_authenticated(self) -> None:
        """Make sure a privileged run will not need to prompt.

        Raises:
            AuthenticationCancelled: If the user dismisses the prompt
        """

    @abstractmethod
    async def run(self, command: str, privileged: bool = False) -> str:
        """Run a shell command and return its stdout."""


def console_prompt() -> Optional[str]:
    try:
        password = getpass.getpass("Administrator password: ")
    except (EOFError, KeyboardInterrupt):
        return None
    return password or None


class SudoCredentialProvider(CredentialProvider):
    """Feeds a cached administrator password to ``sudo -S``.

    The password comes from the system keyring when one is stored, and from
    ``prompt`` otherwise. Prompted passwords are checked with ``sudo -v``
    before they are cached. The cache lives until ``clear_credentials``.
    """

    def __init__(
            self,
            prompt: PasswordPrompt = console_prompt,
            service: str = "GateAway",
            account: str = "admin",
            max_prompts: int = 3,
            command_timeout: float = 60.0,
    ):
        self._prompt = prompt
        self._service = service
        self._account = account
        self._max_prompts = max_prompts
        self._command_timeout = command_timeout
        self._password: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def has_credentials(self) -> bool:
        return self._password is not None

    def clear_credentials(self) -> None:
        self._password = None
        logger.debug("Credentials cleared")

    def store_password(self, password: str) -> None:
        """Save the administrator password in the system keyring."""
        keyring.set_password(self._service, self._account, password)
        self._password = password
        logger.info("Administrator password stored in keyring")

    def forget_password(self) -> None:
        try:
            keyring.delete_password(self._service, self._account)
        except PasswordDeleteError:
            logger.debug("No stored password to forget")
        self.clear_credentials()

    async def ensure_authenticated(self) -> None:
        async with self._lock:
            if self._password is not None:
                logger.debug("Credentials already cached")
                return

            stored = self._stored_password()
            if stored is not None:
                self._password = stored
                logger.info("Pre-authentication successful (keyring)")
                return

            for attempt in range(self._max_prompts):
                logger.debug("Pre-authenticating via password prompt...")
                password = await asyncio.to_thread(self._prompt)
                if password is None:
                    logger.info("Password prompt cancelled")
                    raise AuthenticationCancelled()

                if await self.validate_password(password):
                    self._password = password
                    logger.info("Pre-authentication successful (password validated)")
                    return
                logger.warning(f"Password validation failed ({attempt + 1}/{self._max_prompts})")

            raise AuthenticationFailed("Incorrect administrator password")

    def _stored_password(self) -> Optional[str]:
        try:
            return keyring.get_password(self._service, self._account)
        except KeyringError as e:
            logger.warning(f"Keyring lookup failed: {e}")
            return None

    async def validate_password(self, password: str) -> bool:
        try:
            await run_command(
                VPNCommandFactory.validate_sudo(),
                input_text=f"{password}\n",
                timeout=self._command_timeout,
            )
        except CommandFailed:
            return False
        return True

    async def run(self, command: str, privileged: bool = False) -> str:
        if not privileged:
            stdout, _ = await run_command(VPNCommandFactory.shell(command), timeout=self._command_timeout)
            return stdout

        await self.ensure_authenticated()
        try:
            stdout, _ = await run_command(
                VPNCommandFactory.privileged(command),
                input_text=f"{self._password}\n",
                timeout=self._command_timeout,
            )
        except CommandFailed as e:
            if any(marker in e.stderr for marker in _SUDO_REJECTIONS):
                logger.warning("sudo rejected the cached password")
                self.clear_credentials()
                raise PermissionDenied()
            raise
        return stdout
