import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from .logging_utility import logger
from .settings import Settings, load_settings
from .vpn.catalog import ServerCatalog
from .vpn.credentials import SudoCredentialProvider
from .vpn.exceptions import CatalogError, VPNError
from .vpn.models import ConnectionStatus
from .vpn.session import SessionController, build_controller


class ConnectRequest(BaseModel):
    server_id: str
    enable_retry: bool = True


class StateResponse(BaseModel):
    status: str
    reason: Optional[str] = None
    server_id: Optional[str] = None


class StatisticsResponse(BaseModel):
    connected_since: Optional[datetime] = None
    tunnel_ip: Optional[str] = None
    public_ip: Optional[str] = None
    bytes_received: int = 0
    bytes_sent: int = 0
    download_speed: float = 0.0
    upload_speed: float = 0.0
    protocol: Optional[str] = None
    port: Optional[int] = None
    cipher: Optional[str] = None
    management_state: Optional[str] = None


class ServerResponse(BaseModel):
    id: str
    hostname: str
    ip: str
    country: str
    country_short: str
    score: int
    ping_ms: Optional[int] = None
    speed_mbps: Optional[int] = None
    reliability: Optional[float] = None


def _state_response(controller: SessionController) -> StateResponse:
    state = controller.state
    server = controller.current_server
    return StateResponse(
        status=state.status.value,
        reason=state.reason,
        server_id=server.id if server else None,
    )


def create_app(
        settings: Optional[Settings] = None,
        controller: Optional[SessionController] = None,
        catalog: Optional[ServerCatalog] = None,
) -> FastAPI:
    """Build the API around one session controller."""
    settings = settings or load_settings()
    if controller is None:
        credentials = SudoCredentialProvider(
            service=settings.keyring_service,
            account=settings.keyring_account,
        )
        controller = build_controller(settings, credentials)
    if catalog is None:
        catalog = ServerCatalog(settings.catalog_url, settings.api_timeout, settings.cache_ttl)

    # Keeps background connection tasks referenced until they finish
    pending: set[asyncio.Task] = set()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if controller.is_busy:
            await controller.cancel_connection()
        if controller.state.status in (ConnectionStatus.CONNECTED, ConnectionStatus.RECONNECTING):
            logger.info("Shutting down, disconnecting VPN")
            try:
                await controller.disconnect()
            except VPNError as e:
                logger.error(f"Error disconnecting on shutdown: {e}")

    app = FastAPI(title="GateAway", lifespan=lifespan)
    app.state.settings = settings
    app.state.controller = controller
    app.state.catalog = catalog

    def _connection_done(task: asyncio.Task) -> None:
        pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Connection attempt failed: {error}")

    @app.get("/state", response_model=StateResponse)
    async def get_state():
        """Current connection state"""
        return _state_response(controller)

    @app.get("/stats", response_model=StatisticsResponse)
    async def get_stats():
        """Latest statistics snapshot"""
        snapshot = controller.statistics
        return StatisticsResponse(
            connected_since=snapshot.connected_since,
            tunnel_ip=snapshot.tunnel_ip,
            public_ip=snapshot.public_ip,
            bytes_received=snapshot.bytes_received,
            bytes_sent=snapshot.bytes_sent,
            download_speed=snapshot.download_speed,
            upload_speed=snapshot.upload_speed,
            protocol=snapshot.protocol,
            port=snapshot.port,
            cipher=snapshot.cipher,
            management_state=snapshot.management_state,
        )

    @app.get("/servers", response_model=list[ServerResponse])
    async def get_servers(refresh: bool = False):
        """Relay list, best score first"""
        try:
            servers = await asyncio.to_thread(catalog.servers, refresh)
        except CatalogError as e:
            logger.error(f"Error fetching servers: {e}")
            raise HTTPException(status_code=502, detail=str(e))

        stats = controller.telemetry.stats()
        return [
            ServerResponse(
                id=s.id,
                hostname=s.hostname,
                ip=s.ip,
                country=s.country_long,
                country_short=s.country_short,
                score=s.score,
                ping_ms=s.ping_ms,
                speed_mbps=s.speed_mbps,
                reliability=stats[s.id].reliability_score if s.id in stats else None,
            )
            for s in servers
        ]

    @app.post("/connect", status_code=202, response_model=StateResponse)
    async def connect(request: ConnectRequest):
        """Start connecting in the background; poll /state for the outcome"""
        try:
            server = await asyncio.to_thread(catalog.get, request.server_id)
        except CatalogError as e:
            logger.error(f"Error fetching servers: {e}")
            raise HTTPException(status_code=502, detail=str(e))
        if server is None:
            raise HTTPException(status_code=404, detail=f"Unknown server: {request.server_id}")

        task = asyncio.create_task(controller.connect(server, enable_retry=request.enable_retry))
        pending.add(task)
        task.add_done_callback(_connection_done)
        return StateResponse(status=ConnectionStatus.CONNECTING.value, server_id=server.id)

    @app.post("/disconnect", response_model=StateResponse)
    async def disconnect():
        """Stop the tunnel"""
        try:
            await controller.disconnect()
        except VPNError as e:
            logger.error(f"Error disconnecting: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        return _state_response(controller)

    @app.post("/cancel", response_model=StateResponse)
    async def cancel():
        """Abandon the connection attempt in flight"""
        await controller.cancel_connection()
        return _state_response(controller)

    return app
