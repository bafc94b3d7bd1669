"""
Server API

Server configuration, stats, activity log, saved configurations and
network address helpers.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

from fastapi import APIRouter, Depends, HTTPException
import logging

from ..models import MAX_CHANNELS, NetworkInterface, PartialServerConfig, ServerConfig
from ..services.config_store import DEFAULT_CONFIG_NAME
from ..services.core import SyncServer
from ..services.errors import SrtSyncError
from ..services.network import detect_local_address, fetch_public_address, list_interfaces
from .deps import get_server, http_error

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/config", response_model=ServerConfig)
async def get_server_config(server: SyncServer = Depends(get_server)):
    """Get server configuration."""
    return server.registry.server


@router.put("/config", response_model=ServerConfig)
async def update_server_config(
    update: PartialServerConfig,
    server: SyncServer = Depends(get_server)
):
    """
    Update server configuration.

    Port, latency or encryption changes restart every running channel;
    a channel count change only stops the channels that are removed.
    """
    try:
        return await server.channels.update_server_config(update)
    except SrtSyncError as e:
        raise http_error(e)


@router.put("/channel-count/{count}")
async def set_channel_count(count: int, server: SyncServer = Depends(get_server)):
    """Set the number of channels (1-MAX_CHANNELS)."""
    try:
        await server.channels.set_channel_count(count)
    except SrtSyncError as e:
        raise http_error(e)
    return {"channel_count": len(server.registry), "max_channels": MAX_CHANNELS}


@router.get("/stats")
async def get_stats(server: SyncServer = Depends(get_server)):
    """Latest aggregate stats snapshot."""
    return server.stats.latest


@router.get("/logs")
async def get_logs(server: SyncServer = Depends(get_server)):
    """Activity log, newest first."""
    return server.log.entries()


@router.delete("/logs")
async def clear_logs(server: SyncServer = Depends(get_server)):
    server.log.clear()
    return {"message": "Logs cleared"}


@router.get("/configs")
async def list_configs(server: SyncServer = Depends(get_server)):
    """List saved configuration names."""
    try:
        return {"configs": server.channels.list_configs()}
    except SrtSyncError as e:
        raise http_error(e)


@router.post("/configs/save")
async def save_config(name: str = DEFAULT_CONFIG_NAME, server: SyncServer = Depends(get_server)):
    """Save the current server, sync and channel configuration."""
    try:
        document = server.channels.save_config(name)
    except SrtSyncError as e:
        raise http_error(e)
    return {"message": f"Configuration saved as {name}", "config": document}


@router.post("/configs/load")
async def load_config(name: str = DEFAULT_CONFIG_NAME, server: SyncServer = Depends(get_server)):
    """Load and apply a saved configuration."""
    try:
        document = await server.channels.load_config(name)
    except SrtSyncError as e:
        raise http_error(e)
    return {"message": f"Configuration {name} loaded", "config": document}


@router.get("/network/interfaces", response_model=list[NetworkInterface])
async def get_network_interfaces():
    """List the host's non-loopback IPv4 interfaces."""
    return list_interfaces()


@router.get("/network/local-ip")
async def get_local_ip():
    address = detect_local_address()
    if address is None:
        raise HTTPException(status_code=503, detail="Unable to detect local address")
    return {"ip": address}


@router.get("/network/public-ip")
async def get_public_ip():
    """Detect this host's public address via an external lookup."""
    address = await fetch_public_address()
    if address is None:
        raise HTTPException(status_code=503, detail="Unable to detect public IP")
    return {"ip": address}
