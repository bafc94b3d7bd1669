"""
Timecode Sync API

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

from fastapi import APIRouter, Depends
import logging

from ..models import PartialSyncConfig, ReferenceRequest, SyncConfig
from ..services.core import SyncServer
from ..services.errors import SrtSyncError
from .deps import get_server, http_error

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/")
async def get_sync_state(server: SyncServer = Depends(get_server)):
    """Current sync time and per-channel offsets."""
    return server.sync.snapshot()


@router.get("/config", response_model=SyncConfig)
async def get_sync_config(server: SyncServer = Depends(get_server)):
    return server.sync.config


@router.put("/config", response_model=SyncConfig)
async def update_sync_config(update: PartialSyncConfig, server: SyncServer = Depends(get_server)):
    """Update shift, default timecode source or enabled state."""
    return server.sync.update_config(update)


@router.post("/enable")
async def enable_sync(server: SyncServer = Depends(get_server)):
    server.sync.enable()
    return {"message": "Sync checking enabled"}


@router.post("/disable")
async def disable_sync(server: SyncServer = Depends(get_server)):
    server.sync.disable()
    return {"message": "Sync checking disabled"}


@router.put("/reference")
async def set_reference_channel(request: ReferenceRequest, server: SyncServer = Depends(get_server)):
    """Flag a channel as the visual reference (null clears it)."""
    try:
        server.sync.set_reference_channel(request.channel_id)
    except SrtSyncError as e:
        raise http_error(e)
    return {"reference_channel_id": server.registry.reference_channel_id}
