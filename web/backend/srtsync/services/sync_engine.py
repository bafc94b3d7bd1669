"""
Timecode Sync Engine

Compares each receiving channel's last observed embedded timecode with a
wall-clock derived sync time and classifies the drift. Optionally runs
one timecode worker process per channel that reads the republished
stream back and extracts timecode from its output.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from ..models import (
    ChannelStatus, PartialSyncConfig, SyncConfig, SyncStatus, TimecodeSource
)
from . import events
from .events import ActivityLog, EventBus
from .process import (
    CLEAN_EXIT_CODES, FFPROBE_BIN, READ_CHUNK_SIZE, ScheduledTasks, Spawner, spawn_process
)
from .recording import republish_input_url
from .registry import ChannelRegistry
from .timecode import (
    SyncTime, classify_offset, frame_offset, pts_to_timecode, sync_time, timecode_to_frames
)

logger = logging.getLogger(__name__)

TICK_INTERVAL = 0.033  # ~one frame at 30fps

# Worker output patterns, in order of preference
_EXPLICIT_TC_RE = re.compile(r"\btimecode\s*[=:]\s*(\d{2}:\d{2}:\d{2}[:;]\d{2})", re.IGNORECASE)
_SEI_TC_RE = re.compile(r"\bSEI\b[\s\S]{0,200}?(\d{2}:\d{2}:\d{2}[:;]\d{2})")
_PTS_RE = re.compile(r"\bpts_time\s*[=:]\s*(\d+(?:\.\d+)?)")

MAX_WORKER_BUFFER = 4096


def extract_timecode(text: str, fps: Optional[float] = None) -> tuple[Optional[str], int]:
    """
    Find the most recent timecode in accumulated worker output.

    Tries an explicit timecode field, then a timecode near an SEI marker,
    then converts the last presentation timestamp. Returns the timecode
    (or None) and the index up to which the text was consumed.
    """
    for pattern in (_EXPLICIT_TC_RE, _SEI_TC_RE):
        matches = list(pattern.finditer(text))
        if matches:
            return matches[-1].group(1), matches[-1].end()

    matches = list(_PTS_RE.finditer(text))
    if matches:
        return pts_to_timecode(float(matches[-1].group(1)), fps), matches[-1].end()

    return None, 0


@dataclass
class TimecodeWorker:
    """Tracks a running timecode worker process."""
    channel_id: str
    process: asyncio.subprocess.Process
    buffer: str = ""
    tasks: list[asyncio.Task] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    """Periodic drift classifier plus per-channel timecode workers."""

    def __init__(
        self,
        registry: ChannelRegistry,
        bus: EventBus,
        log: ActivityLog,
        spawner: Spawner = spawn_process,
        clock: Callable[[], datetime] = _utcnow,
        tick_interval: float = TICK_INTERVAL,
        restart_delay: float = 1.0,
        kill_grace: float = 2.0,
    ):
        self._registry = registry
        self._bus = bus
        self._log = log
        self._spawner = spawner
        self._clock = clock
        self.tick_interval = tick_interval
        self.restart_delay = restart_delay
        self.kill_grace = kill_grace

        self._workers: dict[str, TimecodeWorker] = {}
        self._failed: set[str] = set()
        self._tasks = ScheduledTasks()
        self._loop_task: Optional[asyncio.Task] = None
        self.last_sync_time: Optional[SyncTime] = None

    @property
    def config(self) -> SyncConfig:
        return self._registry.sync

    # ---- lifecycle ----

    def start(self):
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self._tick_loop())

    async def shutdown(self):
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        self._tasks.cancel_all()
        for channel_id in list(self._workers):
            self.stop_worker(channel_id)
        await self._tasks.drain()

    async def _tick_loop(self):
        while True:
            try:
                await self.tick()
                await asyncio.sleep(self.tick_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Sync tick error: {e}")
                await asyncio.sleep(1)

    # ---- classification ----

    def set_channel_timecode(self, channel_id: str, timecode: str):
        """Record the latest embedded timecode seen on a receiving channel."""
        channel = self._registry.find(channel_id)
        if channel is None or channel.status != ChannelStatus.RECEIVING:
            return
        frames = timecode_to_frames(timecode, channel.fps or channel.input_fps)
        if frames is None:
            return
        channel.timecode = timecode
        channel.timecode_frames = frames

    async def tick(self, now: Optional[datetime] = None) -> Optional[SyncTime]:
        """One classification pass over all channels."""
        receiving = []
        for channel in self._registry.channels():
            if channel.status == ChannelStatus.RECEIVING:
                receiving.append(channel)
            else:
                channel.clear_sync()
                self._failed.discard(channel.id)

        if not self.config.enabled:
            for channel in receiving:
                channel.sync_status = SyncStatus.UNKNOWN
                channel.sync_offset = 0
            for channel_id in list(self._workers):
                self.stop_worker(channel_id)
            self.last_sync_time = None
            return None

        reference = sync_time(now or self._clock(), self.config.shift_ms)
        self.last_sync_time = reference

        for channel in receiving:
            if channel.timecode_frames is None:
                channel.sync_offset = 0
                channel.sync_status = classify_offset(None)
            else:
                channel.sync_offset = frame_offset(channel.timecode_frames, reference.total_frames)
                channel.sync_status = classify_offset(channel.sync_offset)

        await self._reconcile_workers()
        self._bus.emit(events.TIMECODE, self.snapshot())
        return reference

    def snapshot(self) -> dict:
        reference = self.last_sync_time
        return {
            "enabled": self.config.enabled,
            "shift_ms": self.config.shift_ms,
            "sync_time": reference.timecode if reference else None,
            "sync_frames": reference.total_frames if reference else None,
            "reference_channel_id": self._registry.reference_channel_id,
            "channels": [
                {
                    "id": c.id,
                    "number": c.number,
                    "status": c.status.value,
                    "timecode": c.timecode,
                    "timecode_frames": c.timecode_frames,
                    "sync_offset": c.sync_offset,
                    "sync_status": c.sync_status.value,
                    "is_reference": c.is_reference,
                }
                for c in self._registry.channels()
            ],
        }

    # ---- operator commands ----

    def set_reference_channel(self, channel_id: Optional[str]):
        self._registry.set_reference(channel_id)
        if channel_id is not None:
            channel = self._registry.get(channel_id)
            self._log.info(f"Reference channel set to channel {channel.number}")
        self._bus.emit(events.CHANNELS, self._registry.snapshot())

    def enable(self):
        if self.config.enabled:
            return
        self.config.enabled = True
        self._failed.clear()
        self._log.info("Timecode sync checking enabled")

    def disable(self):
        if not self.config.enabled:
            return
        self.config.enabled = False
        self._tasks.cancel_all()
        for channel_id in list(self._workers):
            self.stop_worker(channel_id)
        for channel in self._registry.channels():
            channel.sync_status = SyncStatus.UNKNOWN
            channel.sync_offset = 0
        self.last_sync_time = None
        self._log.info("Timecode sync checking disabled")
        self._bus.emit(events.TIMECODE, self.snapshot())

    def update_config(self, update: PartialSyncConfig) -> SyncConfig:
        changes = update.model_dump(exclude_none=True)
        if "shift_ms" in changes and changes["shift_ms"] != self.config.shift_ms:
            self.config.shift_ms = changes["shift_ms"]
            self._log.info(f"Sync time shift set to {self.config.shift_ms} ms")
        if "default_timecode_source" in changes:
            self.config.default_timecode_source = changes["default_timecode_source"]
        if changes.get("enabled") is True:
            self.enable()
        elif changes.get("enabled") is False:
            self.disable()
        return self.config

    def apply_config(self, config: SyncConfig):
        """Replace the whole sync config (saved-config load)."""
        self.update_config(PartialSyncConfig(**config.model_dump()))

    # ---- timecode workers ----

    def _build_worker_command(self, address: str, port: int, source: TimecodeSource) -> list[str]:
        stream = "a:0" if source == TimecodeSource.AUDIO else "v:0"
        return [
            FFPROBE_BIN,
            "-hide_banner",
            "-loglevel", "info",
            "-select_streams", stream,
            "-show_frames",
            "-show_entries", "frame=pts_time:frame_tags=timecode:side_data=timecode",
            "-of", "default=noprint_wrappers=1",
            republish_input_url(address, port)
        ]

    def _wants_worker(self, channel) -> bool:
        return (
            self.config.enabled
            and channel.status == ChannelStatus.RECEIVING
            and channel.timecode_source != TimecodeSource.NONE
            and bool(channel.destination_address)
        )

    def has_worker(self, channel_id: str) -> bool:
        return channel_id in self._workers

    async def _reconcile_workers(self):
        for channel in self._registry.channels():
            wanted = self._wants_worker(channel)
            running = channel.id in self._workers
            if running and not wanted:
                self.stop_worker(channel.id)
            elif wanted and not running:
                if channel.id in self._failed or self._tasks.pending(channel.id):
                    continue
                await self.start_worker(channel.id)

    async def start_worker(self, channel_id: str) -> bool:
        """Spawn the timecode worker for a channel (at most one)."""
        if channel_id in self._workers:
            return True
        channel = self._registry.find(channel_id)
        if channel is None or not self._wants_worker(channel):
            return False

        cmd = self._build_worker_command(
            channel.destination_address, channel.destination_port, channel.timecode_source
        )
        logger.info(f"Starting timecode worker for channel {channel.number}: {' '.join(cmd)}")

        try:
            process = await self._spawner(cmd)
        except Exception as e:
            self._failed.add(channel_id)
            self._log.error(f"Failed to start timecode worker for channel {channel.number}: {e}")
            return False

        worker = TimecodeWorker(channel_id=channel_id, process=process)
        self._workers[channel_id] = worker
        worker.tasks = [
            asyncio.create_task(self._read_worker(worker, process.stdout, final=True)),
            asyncio.create_task(self._read_worker(worker, process.stderr, final=False)),
        ]
        return True

    def stop_worker(self, channel_id: str):
        self._tasks.cancel(channel_id)
        worker = self._workers.pop(channel_id, None)
        if worker:
            self._tasks.terminate(worker.process, self.kill_grace)
            logger.info(f"Stopped timecode worker for channel {channel_id}")

    async def _read_worker(self, worker: TimecodeWorker, stream, final: bool):
        """Feed worker output into the accumulator; `final` also handles exit."""
        try:
            if stream is not None:
                while True:
                    chunk = await stream.read(READ_CHUNK_SIZE)
                    if not chunk:
                        break
                    self._handle_worker_output(worker, chunk.decode(errors="replace"))

            if final:
                code = await worker.process.wait()
                self._on_worker_exit(worker, code)

        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Timecode worker reader error for {worker.channel_id}: {e}")

    def _handle_worker_output(self, worker: TimecodeWorker, text: str):
        if self._workers.get(worker.channel_id) is not worker:
            return
        channel = self._registry.find(worker.channel_id)
        if channel is None:
            return

        worker.buffer = (worker.buffer + text)[-MAX_WORKER_BUFFER:]
        timecode, consumed = extract_timecode(worker.buffer, channel.fps or channel.input_fps)
        if timecode:
            worker.buffer = worker.buffer[consumed:]
            self.set_channel_timecode(worker.channel_id, timecode)

    def _on_worker_exit(self, worker: TimecodeWorker, code: Optional[int]):
        if self._workers.get(worker.channel_id) is not worker:
            return
        del self._workers[worker.channel_id]

        channel = self._registry.find(worker.channel_id)
        if channel is None:
            return
        if code not in CLEAN_EXIT_CODES:
            self._log.warning(f"Timecode worker for channel {channel.number} exited with code {code}")

        if self._wants_worker(channel):
            logger.info(f"Restarting timecode worker for channel {channel.number} in {self.restart_delay}s")
            self._tasks.schedule(
                worker.channel_id, self.restart_delay, lambda: self._restart_worker(worker.channel_id)
            )

    async def _restart_worker(self, channel_id: str):
        channel = self._registry.find(channel_id)
        if channel is None or channel_id in self._workers or not self._wants_worker(channel):
            return
        await self.start_worker(channel_id)
