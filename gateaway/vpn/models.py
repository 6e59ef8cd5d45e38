"""Data models for VPN session management."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional


class ConnectionStatus(Enum):
    """VPN connection status"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    RECONNECTING = "reconnecting"
    ERROR = "error"


@dataclass(frozen=True)
class ConnectionState:
    """The one connection state the rest of the application reads.

    ``reason`` is only set for ``ERROR``.
    """
    status: ConnectionStatus
    reason: Optional[str] = None

    @classmethod
    def error(cls, reason: str) -> 'ConnectionState':
        return cls(ConnectionStatus.ERROR, reason)

    @property
    def is_error(self) -> bool:
        return self.status is ConnectionStatus.ERROR

    def __str__(self) -> str:
        if self.reason:
            return f"{self.status.value}({self.reason})"
        return self.status.value


ConnectionState.DISCONNECTED = ConnectionState(ConnectionStatus.DISCONNECTED)
ConnectionState.CONNECTING = ConnectionState(ConnectionStatus.CONNECTING)
ConnectionState.CONNECTED = ConnectionState(ConnectionStatus.CONNECTED)
ConnectionState.DISCONNECTING = ConnectionState(ConnectionStatus.DISCONNECTING)
ConnectionState.RECONNECTING = ConnectionState(ConnectionStatus.RECONNECTING)


class ManagementState(Enum):
    """State tokens reported by the OpenVPN management interface"""
    CONNECTING = "CONNECTING"
    RESOLVE = "RESOLVE"
    TCP_CONNECT = "TCP_CONNECT"
    WAIT = "WAIT"
    AUTH = "AUTH"
    GET_CONFIG = "GET_CONFIG"
    ASSIGN_IP = "ASSIGN_IP"
    ADD_ROUTES = "ADD_ROUTES"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    EXITING = "EXITING"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_token(cls, token: str) -> 'ManagementState':
        try:
            return cls(token.strip())
        except ValueError:
            return cls.UNKNOWN

    @property
    def connection_status(self) -> ConnectionStatus:
        if self is ManagementState.CONNECTED:
            return ConnectionStatus.CONNECTED
        if self in _CONNECTING_STATES:
            return ConnectionStatus.CONNECTING
        if self is ManagementState.RECONNECTING:
            return ConnectionStatus.RECONNECTING
        return ConnectionStatus.DISCONNECTED


_CONNECTING_STATES = frozenset({
    ManagementState.CONNECTING,
    ManagementState.RESOLVE,
    ManagementState.TCP_CONNECT,
    ManagementState.WAIT,
    ManagementState.AUTH,
    ManagementState.GET_CONFIG,
    ManagementState.ASSIGN_IP,
    ManagementState.ADD_ROUTES,
})


@dataclass(frozen=True)
class ServerDescriptor:
    """A relay server as published by the server catalog"""
    id: str
    hostname: str
    ip: str
    country_long: str
    country_short: str
    score: int
    config_base64: str = field(repr=False)
    ping_ms: Optional[int] = None
    speed_bps: Optional[int] = None

    @property
    def speed_mbps(self) -> Optional[int]:
        if not self.speed_bps or self.speed_bps <= 0:
            return None
        return int(self.speed_bps / 1_000_000)


@dataclass(frozen=True)
class ServerInfo:
    """Static connection metadata attached when a session starts"""
    country: Optional[str] = None
    country_short: Optional[str] = None
    server_name: Optional[str] = None
    protocol: Optional[str] = None
    port: Optional[int] = None
    cipher: Optional[str] = None


@dataclass(frozen=True)
class StatisticsSnapshot:
    """Live statistics, rebuilt on every poll"""
    connected_since: Optional[datetime] = None
    tunnel_ip: Optional[str] = None
    public_ip: Optional[str] = None
    bytes_received: int = 0
    bytes_sent: int = 0
    received_delta: int = 0
    sent_delta: int = 0
    download_speed: float = 0.0
    upload_speed: float = 0.0
    protocol: Optional[str] = None
    port: Optional[int] = None
    cipher: Optional[str] = None
    management_state: Optional[str] = None
    sampled_at: Optional[float] = None


StatisticsSnapshot.EMPTY = StatisticsSnapshot()


@dataclass
class Session:
    """The current connection attempt and the files it owns"""
    server: ServerDescriptor
    config_path: Path
    auth_path: Path
    socket_path: Path
    pid_path: Path
    log_path: Path
    started_at: datetime = field(default_factory=datetime.now)
