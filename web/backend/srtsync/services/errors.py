"""
Service Errors

Exceptions raised by the channel services. Validation and spawn errors
reject the originating command; everything asynchronous is absorbed into
the activity log instead.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""


class SrtSyncError(Exception):
    """Base class for all service errors."""


class ChannelNotFoundError(SrtSyncError):
    def __init__(self, channel_id: str):
        super().__init__(f"Channel {channel_id} not found")
        self.channel_id = channel_id


class ChannelStateError(SrtSyncError):
    """Command not valid for the channel's current state."""


class SpawnError(SrtSyncError):
    """External process could not be created."""


class ConfigApplyError(SrtSyncError):
    """Configuration was rejected; nothing was changed."""
