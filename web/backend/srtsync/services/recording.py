"""
Recording Manager

Records a channel's republished stream to disk with one engine process
per recording.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..models import ChannelStatus, RecordingFormat
from . import events
from .errors import ChannelStateError, SpawnError
from .events import ActivityLog, EventBus
from .process import CLEAN_EXIT_CODES, FFMPEG_BIN, ScheduledTasks, Spawner, spawn_process
from .registry import ChannelRegistry

logger = logging.getLogger(__name__)

RECORDINGS_DIR = os.getenv("SRTSYNC_RECORDINGS_DIR", os.path.expanduser("~/srtsync-recordings"))

_MUXERS = {
    RecordingFormat.TS: ("mpegts", []),
    RecordingFormat.MKV: ("matroska", []),
    RecordingFormat.MP4: ("mp4", ["-movflags", "+frag_keyframe+empty_moov"]),
}


def republish_input_url(address: str, port: int) -> str:
    """UDP URL for reading back a channel's republished output."""
    return f"udp://{address}:{port}?fifo_size=1000000&overrun_nonfatal=1"


@dataclass
class RecordingProcess:
    """Tracks a running recording process."""
    channel_id: str
    process: asyncio.subprocess.Process
    path: Path
    format: RecordingFormat
    started_at: datetime
    monitor_task: Optional[asyncio.Task] = None


class RecordingManager:
    """At most one recording process per channel."""

    def __init__(
        self,
        registry: ChannelRegistry,
        bus: EventBus,
        log: ActivityLog,
        spawner: Spawner = spawn_process,
        recordings_dir: str = None,
        kill_grace: float = 2.0,
    ):
        self._registry = registry
        self._bus = bus
        self._log = log
        self._spawner = spawner
        self.recordings_dir = Path(recordings_dir or RECORDINGS_DIR)
        self.kill_grace = kill_grace
        self._processes: dict[str, RecordingProcess] = {}
        self._tasks = ScheduledTasks()

    def _build_command(self, address: str, port: int, path: Path, fmt: RecordingFormat) -> list[str]:
        muxer, extra = _MUXERS[fmt]
        return [
            FFMPEG_BIN,
            "-hide_banner",
            "-loglevel", "warning",
            "-i", republish_input_url(address, port),
            "-c", "copy",
            *extra,
            "-f", muxer,
            "-y",
            str(path)
        ]

    def _target_path(self, name: str, fmt: RecordingFormat) -> Path:
        safe_name = re.sub(r"[^A-Za-z0-9_-]+", "_", name).strip("_") or "channel"
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return self.recordings_dir / f"{safe_name}_{timestamp}.{fmt.value}"

    def is_recording(self, channel_id: str) -> bool:
        return channel_id in self._processes

    async def start_recording(self, channel_id: str, fmt: RecordingFormat = RecordingFormat.TS) -> dict:
        """Start recording a receiving channel."""
        channel = self._registry.get(channel_id)
        fmt = RecordingFormat(fmt)

        if channel.status != ChannelStatus.RECEIVING:
            raise ChannelStateError(f"Channel {channel.number} is not receiving")
        if channel.is_recording or channel_id in self._processes:
            raise ChannelStateError(f"Channel {channel.number} is already recording")
        if not channel.destination_address:
            raise ChannelStateError(f"Channel {channel.number} has no destination to record from")

        self.recordings_dir.mkdir(parents=True, exist_ok=True)
        path = self._target_path(channel.name, fmt)
        cmd = self._build_command(channel.destination_address, channel.destination_port, path, fmt)
        logger.info(f"Starting recording for channel {channel.number}: {' '.join(cmd)}")

        try:
            process = await self._spawner(cmd)
        except Exception as e:
            self._log.error(f"Failed to start recording on channel {channel.number}: {e}")
            raise SpawnError(f"Failed to start recording: {e}") from e

        recording = RecordingProcess(
            channel_id=channel_id,
            process=process,
            path=path,
            format=fmt,
            started_at=datetime.now()
        )
        recording.monitor_task = asyncio.create_task(self._monitor(recording))
        self._processes[channel_id] = recording

        channel.is_recording = True
        channel.recording_file = str(path)
        channel.recording_format = fmt
        self._log.success(f"Recording channel {channel.number} to {path.name}")
        self._bus.emit(events.CHANNELS, self._registry.snapshot())

        return {"file": str(path), "format": fmt.value}

    async def stop_recording(self, channel_id: str):
        """Stop a channel's recording (validation error if none)."""
        channel = self._registry.get(channel_id)
        if channel_id not in self._processes and not channel.is_recording:
            raise ChannelStateError(f"Channel {channel.number} is not recording")
        self.stop_if_recording(channel_id)
        self._bus.emit(events.CHANNELS, self._registry.snapshot())

    def stop_if_recording(self, channel_id: str) -> Optional[RecordingFormat]:
        """Stop any recording for the channel; returns its format if one ran."""
        recording = self._processes.pop(channel_id, None)
        channel = self._registry.find(channel_id)

        fmt = None
        if recording:
            fmt = recording.format
            self._tasks.terminate(recording.process, self.kill_grace)
            if channel:
                self._log.info(f"Recording stopped on channel {channel.number}: {recording.path.name}")
        elif channel and channel.is_recording:
            fmt = channel.recording_format

        if channel:
            channel.is_recording = False
            channel.recording_file = None
            channel.recording_format = None
        return fmt

    async def _monitor(self, recording: RecordingProcess):
        """Drain engine output and clean up when the recording process ends."""
        process = recording.process
        try:
            if process.stderr:
                while True:
                    line = await process.stderr.readline()
                    if not line:
                        break
                    logger.debug(f"Recording {recording.channel_id}: {line.decode(errors='replace').strip()}")

            code = await process.wait()
            self._on_exit(recording, code)

        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Monitor error for recording {recording.channel_id}: {e}")

    def _on_exit(self, recording: RecordingProcess, code: Optional[int]):
        if self._processes.get(recording.channel_id) is not recording:
            return
        del self._processes[recording.channel_id]

        channel = self._registry.find(recording.channel_id)
        if channel is None:
            return

        channel.is_recording = False
        channel.recording_file = None
        channel.recording_format = None
        if code in CLEAN_EXIT_CODES:
            self._log.info(f"Recording on channel {channel.number} ended")
        else:
            self._log.warning(f"Recording on channel {channel.number} ended with code {code}")
        self._bus.emit(events.CHANNELS, self._registry.snapshot())

    async def shutdown(self):
        for channel_id in list(self._processes):
            self.stop_if_recording(channel_id)
        await self._tasks.drain()
