"""VPNGate server list."""

import csv
import time
from typing import Optional

import requests

from .exceptions import CatalogError
from .models import ServerDescriptor
from ..logging_utility import logger


def _to_int(value: str) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_servers(text: str) -> list[ServerDescriptor]:
    """
    Parse the VPNGate CSV feed.

    The header is the first ``#`` line containing commas; a line starting
    with ``*`` ends the data. Rows without host, IP or config are skipped.
    """
    lines = text.splitlines()
    header_index = next(
        (i for i, line in enumerate(lines) if line.startswith("#") and "," in line),
        None,
    )
    if header_index is None:
        logger.error("CSV Parser: No header found!")
        return []

    header = next(csv.reader([lines[header_index][1:]]))
    rows = []
    for line in lines[header_index + 1:]:
        if line.startswith("*"):
            break
        if line.startswith("#") or not line.strip():
            continue
        rows.append(line)

    servers = []
    skipped = 0
    for row in csv.DictReader(rows, fieldnames=header):
        host = (row.get("HostName") or "").strip()
        ip = (row.get("IP") or "").strip()
        config = (row.get("OpenVPN_ConfigData_Base64") or "").strip()
        if not host or not ip or not config:
            skipped += 1
            continue
        country_short = (row.get("CountryShort") or "").strip()
        servers.append(ServerDescriptor(
            id=f"{ip}|{host}|{country_short}",
            hostname=host,
            ip=ip,
            country_long=(row.get("CountryLong") or "").strip(),
            country_short=country_short,
            score=_to_int(row.get("Score")) or 0,
            ping_ms=_to_int(row.get("Ping")),
            speed_bps=_to_int(row.get("Speed")),
            config_base64=config,
        ))

    logger.debug(f"CSV Parser: Created {len(servers)} servers, skipped {skipped}")
    return servers


class ServerCatalog:
    """Fetches and caches the relay list."""

    def __init__(self, url: str, timeout: float = 20.0, ttl: int = 1800,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.ttl = ttl
        self._session = session or requests.Session()
        self._servers: list[ServerDescriptor] = []
        self._fetched_at: Optional[float] = None

    @property
    def is_fresh(self) -> bool:
        return self._fetched_at is not None and time.monotonic() - self._fetched_at < self.ttl

    def fetch_servers(self) -> list[ServerDescriptor]:
        logger.info(f"Fetching from {self.url}")
        try:
            response = self._session.get(self.url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise CatalogError(f"Failed to fetch server list: {e}")

        logger.debug(f"Received {len(response.content)} bytes")
        servers = parse_servers(response.content.decode("utf-8", errors="replace"))
        logger.info(f"Parsed {len(servers)} servers")
        return servers

    def servers(self, refresh: bool = False) -> list[ServerDescriptor]:
        if refresh or not self.is_fresh:
            self._servers = sorted(self.fetch_servers(), key=lambda s: s.score, reverse=True)
            self._fetched_at = time.monotonic()
        return list(self._servers)

    def get(self, server_id: str) -> Optional[ServerDescriptor]:
        return next((s for s in self.servers() if s.id == server_id), None)
