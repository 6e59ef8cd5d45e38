"""Application settings loaded from an INI file."""

import configparser
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, Tuple

from .logging_utility import logger

DEFAULT_CONFIG_FILE = 'config/gateaway.conf'

DEFAULT_OPENVPN_PATHS = (
    '/opt/homebrew/sbin/openvpn',
    '/usr/local/sbin/openvpn',
    '/usr/sbin/openvpn',
)

VPNGATE_URL = 'https://www.vpngate.net/api/iphone/'


@dataclass(frozen=True)
class Settings:
    """Runtime settings. Every timing value is in seconds."""
    config_dir: Path = field(default_factory=lambda: Path.home() / '.gateaway')
    openvpn_paths: Tuple[str, ...] = DEFAULT_OPENVPN_PATHS

    # VPNGate relays accept the same well-known pair
    username: str = 'vpn'
    password: str = 'vpn'

    connection_timeout: int = 30
    poll_interval: float = 1.0
    command_timeout: float = 5.0
    process_query_timeout: float = 5.0
    startup_delay: float = 2.0
    socket_wait: int = 5
    socket_wait_interval: float = 0.5
    stale_process_wait: float = 0.5
    disconnect_grace: float = 1.5
    retry_preset: str = 'default'

    catalog_url: str = VPNGATE_URL
    api_timeout: float = 20.0
    cache_ttl: int = 30 * 60

    keyring_service: str = 'GateAway'
    keyring_account: str = 'admin'

    @property
    def pid_file(self) -> Path:
        return self.config_dir / 'openvpn.pid'

    @property
    def log_file(self) -> Path:
        return self.config_dir / 'openvpn.log'

    @property
    def socket_path(self) -> Path:
        return self.config_dir / 'openvpn.sock'

    @property
    def auth_file(self) -> Path:
        return self.config_dir / 'auth.txt'

    def with_overrides(self, **kwargs) -> 'Settings':
        return replace(self, **kwargs)


_FLOAT_KEYS = (
    'poll_interval', 'command_timeout', 'process_query_timeout', 'startup_delay',
    'socket_wait_interval', 'stale_process_wait', 'disconnect_grace', 'api_timeout',
)
_INT_KEYS = ('connection_timeout', 'socket_wait', 'cache_ttl')
_STR_KEYS = (
    'username', 'password', 'retry_preset', 'catalog_url',
    'keyring_service', 'keyring_account',
)


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Read ``[gateaway]`` from the INI file; missing keys keep their defaults.

    ``GATEAWAY_CONFIG`` overrides the file location.
    """
    config_file = config_file or os.environ.get('GATEAWAY_CONFIG', DEFAULT_CONFIG_FILE)
    config = configparser.ConfigParser()
    read = config.read(config_file)
    if not read:
        logger.info(f"No settings file at {config_file}, using defaults")
        return Settings()

    if not config.has_section('gateaway'):
        logger.warning(f"Settings file {config_file} has no [gateaway] section")
        return Settings()

    section = config['gateaway']
    overrides = {}
    try:
        for key in _FLOAT_KEYS:
            if key in section:
                overrides[key] = section.getfloat(key)
        for key in _INT_KEYS:
            if key in section:
                overrides[key] = section.getint(key)
    except ValueError as e:
        raise ValueError(f"Invalid value in {config_file}: {e}")
    for key in _STR_KEYS:
        if key in section:
            overrides[key] = section.get(key)

    if 'config_dir' in section:
        overrides['config_dir'] = Path(section.get('config_dir')).expanduser()
    if 'openvpn_paths' in section:
        paths = [p.strip() for p in section.get('openvpn_paths').split(',')]
        overrides['openvpn_paths'] = tuple(p for p in paths if p)

    logger.info(f"Loaded settings from {config_file}")
    return Settings(**overrides)
