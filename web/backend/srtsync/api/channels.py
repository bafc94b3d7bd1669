"""
Channel API

List, configure and control ingest channels.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

from fastapi import APIRouter, Depends
import logging

from ..models import Channel, PartialChannelConfig, RecordingRequest
from ..services.core import SyncServer
from ..services.errors import SrtSyncError
from ..services.network import advertised_address, channel_srt_url
from .deps import get_server, http_error

logger = logging.getLogger(__name__)

router = APIRouter()


def _channel_view(channel: Channel, server: SyncServer, host: str = None) -> dict:
    data = channel.model_dump(mode="json")
    data["srt_url"] = channel_srt_url(channel, server.registry.server, host)
    return data


def _get_channel(server: SyncServer, channel_id: str) -> Channel:
    try:
        return server.registry.get(channel_id)
    except SrtSyncError as e:
        raise http_error(e)


@router.get("/")
async def list_channels(server: SyncServer = Depends(get_server)):
    """List all channels with their sender URLs."""
    host = advertised_address(server.registry.server)
    return [_channel_view(c, server, host) for c in server.registry.channels()]


@router.post("/start-all")
async def start_all_channels(server: SyncServer = Depends(get_server)):
    """Start every channel that is not already running."""
    started = await server.channels.start_all()
    return {"message": f"Started {len(started)} channels", "started": started}


@router.post("/stop-all")
async def stop_all_channels(server: SyncServer = Depends(get_server)):
    """Stop all channels."""
    stopped = await server.channels.stop_all()
    return {"message": f"Stopped {len(stopped)} channels", "stopped": stopped}


@router.get("/{channel_id}")
async def get_channel(channel_id: str, server: SyncServer = Depends(get_server)):
    """Get a specific channel."""
    return _channel_view(_get_channel(server, channel_id), server)


@router.put("/{channel_id}")
async def update_channel(
    channel_id: str,
    update: PartialChannelConfig,
    server: SyncServer = Depends(get_server)
):
    """Update channel configuration (restarts the channel if it is active)."""
    try:
        channel = await server.channels.update_channel(channel_id, update)
    except SrtSyncError as e:
        raise http_error(e)
    return {"message": "Configuration updated", "channel": _channel_view(channel, server)}


@router.post("/{channel_id}/start")
async def start_channel(channel_id: str, server: SyncServer = Depends(get_server)):
    """Start a channel."""
    try:
        channel = await server.channels.start_channel(channel_id)
    except SrtSyncError as e:
        raise http_error(e)
    return {"message": "Channel started", "channel": _channel_view(channel, server)}


@router.post("/{channel_id}/stop")
async def stop_channel(channel_id: str, server: SyncServer = Depends(get_server)):
    """Stop a channel."""
    try:
        channel = await server.channels.stop_channel(channel_id)
    except SrtSyncError as e:
        raise http_error(e)
    return {"message": "Channel stopped", "channel": _channel_view(channel, server)}


@router.post("/{channel_id}/disconnect")
async def disconnect_channel(channel_id: str, server: SyncServer = Depends(get_server)):
    """Drop the connected sender; the channel restarts and waits for a new one."""
    try:
        await server.channels.disconnect_channel(channel_id)
    except SrtSyncError as e:
        raise http_error(e)
    return {"message": "Source disconnected"}


@router.post("/{channel_id}/reset-buffer")
async def reset_buffer(channel_id: str, server: SyncServer = Depends(get_server)):
    """Cycle the channel, resuming any active recording."""
    try:
        await server.channels.reset_buffer(channel_id)
    except SrtSyncError as e:
        raise http_error(e)
    return {"message": "Buffer reset"}


@router.post("/{channel_id}/recording/start")
async def start_recording(
    channel_id: str,
    request: RecordingRequest = RecordingRequest(),
    server: SyncServer = Depends(get_server)
):
    """Start recording a receiving channel."""
    try:
        result = await server.recordings.start_recording(channel_id, request.format)
    except SrtSyncError as e:
        raise http_error(e)
    return {"message": "Recording started", **result}


@router.post("/{channel_id}/recording/stop")
async def stop_recording(channel_id: str, server: SyncServer = Depends(get_server)):
    """Stop a channel's recording."""
    try:
        await server.recordings.stop_recording(channel_id)
    except SrtSyncError as e:
        raise http_error(e)
    return {"message": "Recording stopped"}
