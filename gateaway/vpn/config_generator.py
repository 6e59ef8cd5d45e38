"""Builds ready-to-launch OpenVPN client configurations."""

import base64
import binascii
import os
import time
from pathlib import Path
from typing import Optional, Tuple

from .exceptions import ConfigurationCreationFailed
from .models import ServerDescriptor, ServerInfo
from ..logging_utility import logger
from ..settings import Settings

DEFAULT_PORT = 1194
DEFAULT_CIPHER = "AES-128-CBC"

# Directives owned by the controller, dropped even when commented out
_OWNED_DIRECTIVES = ("auth-user-pass", "management")
# Directives the managed block sets itself
_OVERRIDDEN_DIRECTIVES = ("daemon", "log", "log-append", "writepid")


def decode_config(server: ServerDescriptor) -> str:
    """Decode the server's embedded config blob."""
    try:
        data = base64.b64decode(server.config_base64, validate=False)
        return data.decode("utf-8")
    except (binascii.Error, ValueError) as e:
        logger.error(f"Config for {server.hostname} could not be decoded: {e}")
        raise ConfigurationCreationFailed()


def _directive(line: str) -> str:
    parts = line.split()
    return parts[0] if parts else ""


def is_controller_owned(line: str) -> bool:
    stripped = line.strip()
    uncommented = stripped.lstrip("#;").strip()
    if _directive(uncommented) in _OWNED_DIRECTIVES:
        return True
    return _directive(stripped) in _OVERRIDDEN_DIRECTIVES


def filter_config(text: str) -> list[str]:
    return [line.rstrip("\r") for line in text.split("\n") if not is_controller_owned(line)]


def parse_endpoint(text: str) -> Tuple[str, int]:
    """Return ``(protocol, port)`` from ``proto`` / ``remote`` directives."""
    protocol = "udp"
    port = DEFAULT_PORT
    for line in text.splitlines():
        parts = line.split()
        if not parts:
            continue
        if parts[0] == "proto" and len(parts) > 1:
            protocol = parts[1]
        elif parts[0] == "remote" and len(parts) > 2 and parts[2].isdigit():
            port = int(parts[2])
    return protocol, port


class ConfigGenerator:
    """Turns a server descriptor into a config file plus an auth file.

    The generated config pins ciphers, enables the management socket, forces
    daemon mode and sends the log and pid files to the config directory.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.config_dir = settings.config_dir

    def managed_block(self) -> list[str]:
        s = self.settings
        return [
            "",
            "# GateAway Configuration",
            f"auth-user-pass {s.auth_file}",
            "auth-nocache",
            "auth-retry nointeract",
            # Standard ciphers
            "data-ciphers AES-128-CBC:AES-256-GCM:AES-128-GCM:CHACHA20-POLY1305",
            "data-ciphers-fallback AES-128-CBC",
            f"cipher {DEFAULT_CIPHER}",
            # Full-tunnel routing
            "redirect-gateway def1",
            "dhcp-option DNS 8.8.8.8",
            "dhcp-option DNS 8.8.4.4",
            # Management and process control
            "script-security 2",
            f"management {s.socket_path} unix",
            "daemon",
            f"log {s.log_file}",
            f"writepid {s.pid_file}",
            "persist-tun",
            "persist-key",
            "verb 3",
            "",
        ]

    def write_auth_file(self, username: str, password: str) -> Path:
        path = self.settings.auth_file
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"{username}\n{password}\n")
        # O_CREAT leaves an existing file's mode untouched
        os.chmod(path, 0o600)
        return path

    def config_name(self, server: ServerDescriptor) -> str:
        return f"vpngate_{server.country_short}_{int(time.time())}.ovpn".replace(" ", "_")

    def generate(
            self,
            server: ServerDescriptor,
            username: Optional[str] = None,
            password: Optional[str] = None,
    ) -> Path:
        """
        Write the config and auth files for a server.

        Args:
            server: Target relay
            username: VPN username, defaults to the settings value
            password: VPN password, defaults to the settings value

        Returns:
            Path of the generated config file
        """
        source = decode_config(server)
        lines = filter_config(source) + self.managed_block()

        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            self.write_auth_file(username or self.settings.username,
                                 password or self.settings.password)
            config_path = self.config_dir / self.config_name(server)
            config_path.write_text("\n".join(lines), encoding="utf-8")
        except OSError as e:
            logger.error(f"Failed to write configuration: {e}")
            raise ConfigurationCreationFailed()

        logger.debug(f"Created config: {config_path}")
        return config_path

    def describe(self, server: ServerDescriptor) -> ServerInfo:
        """Static metadata for the statistics view."""
        try:
            protocol, port = parse_endpoint(decode_config(server))
        except ConfigurationCreationFailed:
            protocol, port = "udp", DEFAULT_PORT
        return ServerInfo(
            country=server.country_long,
            country_short=server.country_short,
            server_name=server.hostname,
            protocol=f"OpenVPN/{protocol.upper()}",
            port=port,
            cipher=DEFAULT_CIPHER,
        )

    def generated_configs(self) -> list[Path]:
        if not self.config_dir.exists():
            return []
        return sorted(self.config_dir.glob("*.ovpn"))
