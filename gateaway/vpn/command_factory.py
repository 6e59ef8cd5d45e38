"""Factory for creating OpenVPN-related commands."""

from pathlib import Path
from .commands import (
    Command,
    OPENVPN_OPTIONS,
    KILLALL,
    KILLALL_FORCE,
    SUDO_VALIDATE,
)

PROCESS_NAME = "openvpn"


class VPNCommandFactory:
    """Factory for creating VPN management commands."""

    @staticmethod
    def start_vpn(binary: Path, config_path: Path) -> str:
        """Create the privileged OpenVPN start script.

        Any leftover instance is stopped first so only one client survives.
        """
        cmd = Command.for_executable(binary, OPENVPN_OPTIONS).with_options(config=str(config_path))
        return f"{VPNCommandFactory.kill_vpn()} 2>/dev/null || true; sleep 1; {cmd.as_shell()}"

    @staticmethod
    def kill_vpn(force: bool = False) -> str:
        """Create VPN kill command."""
        base = KILLALL_FORCE if force else KILLALL
        return base.with_arg(PROCESS_NAME).as_shell()

    @staticmethod
    def force_kill_vpn() -> str:
        """Create a kill command that never fails when nothing is running."""
        return f"{VPNCommandFactory.kill_vpn(force=True)} 2>/dev/null || true"

    @staticmethod
    def validate_sudo() -> list[str]:
        """Command that checks a sudo password read from stdin."""
        return SUDO_VALIDATE.build()

    @staticmethod
    def privileged(script: str) -> list[str]:
        """Wrap a shell script so sudo reads the password from stdin."""
        return ["sudo", "-S", "-p", "", "/bin/sh", "-c", script]

    @staticmethod
    def shell(script: str) -> list[str]:
        """Wrap a shell script for unprivileged execution."""
        return ["/bin/sh", "-c", script]
