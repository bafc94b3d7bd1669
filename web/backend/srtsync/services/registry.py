"""
Channel Registry

Owns the channel set, server configuration and sync configuration.
Pure data and accessors; process management lives in the channel manager.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

import logging
import uuid
from typing import Optional

from ..models import (
    Channel, ChannelConfig, ServerConfig, SyncConfig, TimecodeSource, ChannelStatus
)
from .errors import ChannelNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_DESTINATION_PORT = 5004


def default_destination(number: int) -> str:
    """Default multicast group for a channel ordinal."""
    return f"239.255.0.{number}"


class ChannelRegistry:
    """Holds channels keyed by id, kept dense by ordinal number from 1."""

    def __init__(self, server: Optional[ServerConfig] = None, sync: Optional[SyncConfig] = None):
        self.server = server or ServerConfig()
        self.sync = sync or SyncConfig()
        self.reference_channel_id: Optional[str] = None
        self._channels: dict[str, Channel] = {}
        self.resize(self.server.channel_count)

    def create_channel(self, number: int, source: Optional[TimecodeSource] = None) -> Channel:
        """Create a default channel for ordinal `number` and add it."""
        channel = Channel(
            id=str(uuid.uuid4()),
            number=number,
            name=f"Channel {number}",
            stream_id=f"channel{number}",
            srt_port=self.server.srt_port + number - 1,
            destination_address=default_destination(number),
            destination_port=DEFAULT_DESTINATION_PORT,
            timecode_source=source or self.sync.default_timecode_source,
        )
        self._channels[channel.id] = channel
        return channel

    def resize(self, count: int) -> list[Channel]:
        """
        Grow or shrink the channel set to `count`.

        Shrinking removes only the highest-ordinal channels. Returns the
        removed channels; callers must stop them first.
        """
        current = self.channels()
        removed = []

        for channel in current[count:]:
            del self._channels[channel.id]
            if channel.id == self.reference_channel_id:
                self.reference_channel_id = None
            removed.append(channel)

        for number in range(len(current) + 1, count + 1):
            self.create_channel(number)

        self.server.channel_count = count
        if removed:
            logger.debug(f"Removed channels {[c.number for c in removed]}")
        return removed

    def reassign_ports(self):
        """Re-derive listen ports from the server base port (custom ports kept)."""
        for channel in self._channels.values():
            if not channel.custom_port:
                channel.srt_port = self.server.srt_port + channel.number - 1

    def apply_channel_config(self, config: ChannelConfig):
        """Apply a persisted channel config to the channel with the same number."""
        channel = self.get_by_number(config.number)
        if channel is None:
            return
        channel.name = config.name
        channel.stream_id = config.stream_id
        channel.destination_address = config.destination_address
        channel.destination_port = config.destination_port
        channel.latency = config.latency
        channel.input_fps = config.input_fps
        channel.timecode_source = config.timecode_source
        if config.srt_port is not None:
            channel.srt_port = config.srt_port
            channel.custom_port = True
        else:
            channel.custom_port = False
            channel.srt_port = self.server.srt_port + channel.number - 1

    def export_channel_configs(self) -> list[ChannelConfig]:
        return [
            ChannelConfig(
                number=c.number,
                name=c.name,
                stream_id=c.stream_id,
                srt_port=c.srt_port if c.custom_port else None,
                destination_address=c.destination_address,
                destination_port=c.destination_port,
                latency=c.latency,
                input_fps=c.input_fps,
                timecode_source=c.timecode_source,
            )
            for c in self.channels()
        ]

    def set_reference(self, channel_id: Optional[str]):
        if channel_id is not None:
            self.get(channel_id)
        self.reference_channel_id = channel_id
        for channel in self._channels.values():
            channel.is_reference = channel.id == channel_id

    def get(self, channel_id: str) -> Channel:
        """Get a channel by id or raise ChannelNotFoundError."""
        channel = self._channels.get(channel_id)
        if channel is None:
            raise ChannelNotFoundError(channel_id)
        return channel

    def find(self, channel_id: str) -> Optional[Channel]:
        """Get a channel by id, or None (for background handlers)."""
        return self._channels.get(channel_id)

    def get_by_number(self, number: int) -> Optional[Channel]:
        return next((c for c in self._channels.values() if c.number == number), None)

    def channels(self) -> list[Channel]:
        return sorted(self._channels.values(), key=lambda c: c.number)

    def with_status(self, *statuses: ChannelStatus) -> list[Channel]:
        return [c for c in self.channels() if c.status in statuses]

    def snapshot(self) -> list[dict]:
        return [c.model_dump(mode="json") for c in self.channels()]

    def __len__(self) -> int:
        return len(self._channels)

    def __contains__(self, channel_id: str) -> bool:
        return channel_id in self._channels
