"""
SRT Sync Server

Composition root: builds the registry, event bus and every supervisor,
and owns their start/shutdown order.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

import logging
from typing import Optional

from ..models import ServerConfig, SyncConfig
from .channel_manager import ChannelManager
from .config_store import ConfigStore
from .events import ActivityLog, EventBus
from .process import Spawner, spawn_process
from .recording import RecordingManager
from .registry import ChannelRegistry
from .stats import StatsBroadcaster
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncServer:
    """All core services for one process, wired together."""

    def __init__(
        self,
        server: Optional[ServerConfig] = None,
        sync: Optional[SyncConfig] = None,
        spawner: Spawner = spawn_process,
        store: Optional[ConfigStore] = None,
        recordings_dir: str = None,
    ):
        self.bus = EventBus()
        self.log = ActivityLog(self.bus)
        self.registry = ChannelRegistry(server, sync)
        self.store = store

        self.recordings = RecordingManager(
            self.registry, self.bus, self.log, spawner=spawner, recordings_dir=recordings_dir
        )
        self.sync = SyncEngine(self.registry, self.bus, self.log, spawner=spawner)
        self.channels = ChannelManager(
            self.registry, self.bus, self.log, self.recordings, self.sync,
            spawner=spawner, store=store
        )
        self.stats = StatsBroadcaster(self.registry, self.bus)

    def start(self):
        """Start the periodic timers (stats sampler and sync tick)."""
        self.stats.start()
        self.sync.start()
        self.log.info(
            f"SRT sync server ready: {len(self.registry)} channels from port {self.registry.server.srt_port}"
        )

    async def shutdown(self):
        logger.info("Shutting down SRT sync server...")
        await self.stats.stop()
        await self.channels.shutdown()
        await self.recordings.shutdown()
        await self.sync.shutdown()
        logger.info("SRT sync server stopped")
