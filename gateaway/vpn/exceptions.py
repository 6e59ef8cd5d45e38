"""Custom exceptions for VPN session management."""

from typing import Optional


class VPNError(Exception):
    """Base exception for VPN-related errors.

    ``reason`` is the short, user-facing text that ends up in
    ``ConnectionState.error(reason)``.
    """
    default_reason = "VPN error"

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or self.default_reason
        super().__init__(self.describe())

    def describe(self) -> str:
        return self.reason


class NotInstalled(VPNError):
    """Raised when the OpenVPN binary cannot be found on any known path"""
    default_reason = "OpenVPN is not installed"

    def describe(self) -> str:
        return f"{self.reason}. Please install it (e.g. brew install openvpn)."


class ConfigurationCreationFailed(VPNError):
    """Raised when the client configuration cannot be decoded or written"""
    default_reason = "Failed to create OpenVPN configuration file"


class ConnectionFailed(VPNError):
    """Raised when a VPN connection attempt fails"""
    default_reason = "Connection failed"

    def describe(self) -> str:
        return f"VPN connection failed: {self.reason}"


class DisconnectionFailed(VPNError):
    """Raised when the VPN process cannot be stopped"""
    default_reason = "Disconnection failed"

    def describe(self) -> str:
        return f"VPN disconnection failed: {self.reason}"


class PermissionDenied(VPNError):
    """Raised when privilege escalation is refused"""
    default_reason = "Permission denied. OpenVPN requires administrator privileges."


class Timeout(VPNError):
    """Raised when the client does not reach CONNECTED in time"""
    default_reason = "Connection timed out"


class AuthenticationCancelled(VPNError):
    """Raised when the user dismisses the credential prompt"""
    default_reason = "Authentication cancelled"


class AuthenticationFailed(VPNError):
    """Raised when the supplied credentials are rejected"""
    default_reason = "Authentication failed"


class CommandFailed(VPNError):
    """Raised when a shell command exits with a non-zero status"""
    default_reason = "Command failed"

    def __init__(self, reason: Optional[str] = None, returncode: Optional[int] = None, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(reason)


class ProtocolParseError(VPNError):
    """Raised when a management-socket reply does not have the expected shape"""
    default_reason = "Malformed management response"


class CatalogError(VPNError):
    """Raised when the server list cannot be fetched"""
    default_reason = "Failed to fetch server list"
