"""
Aggregate Stats Broadcaster

Samples channel state once a second and publishes an aggregate snapshot.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from ..models import AggregateStats, Channel, ChannelStatus, ServerConfig
from . import events
from .events import EventBus
from .registry import ChannelRegistry

logger = logging.getLogger(__name__)

STATS_INTERVAL = 1.0


def compute_stats(channels: list[Channel], server: ServerConfig) -> AggregateStats:
    """Aggregate counters across all channels (read-only)."""
    return AggregateStats(
        total_channels=len(channels),
        receiving_channels=sum(1 for c in channels if c.status == ChannelStatus.RECEIVING),
        waiting_channels=sum(1 for c in channels if c.status == ChannelStatus.WAITING),
        total_bytes_received=sum(c.bytes_received for c in channels),
        total_bytes_sent=sum(c.bytes_sent for c in channels),
        total_bitrate=sum(c.bitrate for c in channels),
        srt_port=server.srt_port,
    )


def uptime_seconds(channel: Channel, now: datetime) -> int:
    if channel.status != ChannelStatus.RECEIVING or channel.started_at is None:
        return 0
    return max(0, int((now - channel.started_at).total_seconds()))


class StatsBroadcaster:
    """Fixed-period sampler publishing `stats` and refreshed `channels` events."""

    def __init__(
        self,
        registry: ChannelRegistry,
        bus: EventBus,
        interval: float = STATS_INTERVAL,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._registry = registry
        self._bus = bus
        self.interval = interval
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self.latest = AggregateStats(srt_port=registry.server.srt_port)

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def sample(self, now: Optional[datetime] = None) -> AggregateStats:
        now = now or self._clock()
        channels = self._registry.channels()
        for channel in channels:
            channel.uptime = uptime_seconds(channel, now)

        self.latest = compute_stats(channels, self._registry.server)
        self._bus.emit(events.STATS, self.latest.model_dump(mode="json"))
        self._bus.emit(events.CHANNELS, self._registry.snapshot())
        return self.latest

    async def _loop(self):
        while True:
            try:
                self.sample()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Stats sampler error: {e}")
                await asyncio.sleep(self.interval)
