"""
Channel Manager Service

Supervises one ingest engine process per active channel: start, stop,
automatic restart after unexpected exits, operator-forced cycles, and
configuration changes that have to stop and restart channels.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode

from pydantic import ValidationError

from ..models import (
    ChannelStatus, EncryptionMode, PartialChannelConfig, PartialServerConfig,
    RecordingFormat, SavedConfig, ServerConfig, MAX_CHANNELS
)
from . import events
from .config_store import ConfigStore, DEFAULT_CONFIG_NAME
from .errors import ChannelStateError, ConfigApplyError, SpawnError, SrtSyncError
from .events import ActivityLog, EventBus
from .process import (
    CLEAN_EXIT_CODES, FFMPEG_BIN, READ_CHUNK_SIZE, ScheduledTasks, Spawner, spawn_process
)
from .recording import RecordingManager
from .registry import ChannelRegistry
from .sync_engine import SyncEngine
from .telemetry import apply_telemetry, scan

logger = logging.getLogger(__name__)

# Server config fields baked into the engine command line
ENGINE_FIELDS = {"srt_port", "latency", "encryption", "passphrase"}

_KEY_LENGTHS = {
    EncryptionMode.AES_128: 16,
    EncryptionMode.AES_192: 24,
    EncryptionMode.AES_256: 32,
}


@dataclass
class IngestProcess:
    """Tracks a running ingest engine process."""
    channel_id: str
    process: asyncio.subprocess.Process
    byte_offset: int = 0
    stdout_bytes: int = 0
    started: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    tasks: list[asyncio.Task] = field(default_factory=list)


class ChannelManager:
    """Manages the ingest engine processes of all channels."""

    def __init__(
        self,
        registry: ChannelRegistry,
        bus: EventBus,
        log: ActivityLog,
        recordings: RecordingManager,
        sync: SyncEngine,
        spawner: Spawner = spawn_process,
        store: Optional[ConfigStore] = None,
        restart_delay: float = 1.0,
        kill_grace: float = 2.0,
        cycle_delay: float = 0.5,
        resume_delay: float = 2.0,
    ):
        self._registry = registry
        self._bus = bus
        self._log = log
        self._recordings = recordings
        self._sync = sync
        self._spawner = spawner
        self._store = store
        self.restart_delay = restart_delay
        self.kill_grace = kill_grace
        self.cycle_delay = cycle_delay
        self.resume_delay = resume_delay

        self._processes: dict[str, IngestProcess] = {}
        self._tasks = ScheduledTasks()
        self._lock = asyncio.Lock()

    def _emit_channels(self):
        self._bus.emit(events.CHANNELS, self._registry.snapshot())

    def _build_command(self, channel) -> list[str]:
        """Build the engine command line for a channel."""
        server = self._registry.server
        latency_ms = channel.latency if channel.latency is not None else server.latency

        params = {"mode": "listener", "latency": latency_ms * 1000}
        if channel.stream_id:
            params["streamid"] = channel.stream_id
        if server.encryption != EncryptionMode.NONE:
            params["passphrase"] = server.passphrase
            params["pbkeylen"] = _KEY_LENGTHS[server.encryption]
        srt_input = f"srt://0.0.0.0:{channel.srt_port}?{urlencode(params)}"

        # No destination: republish to stdout and count the bytes there
        if channel.destination_address:
            output = f"udp://{channel.destination_address}:{channel.destination_port}?pkt_size=1316"
        else:
            output = "pipe:1"

        return [
            FFMPEG_BIN,
            "-hide_banner",
            "-nostdin",
            "-loglevel", "info",
            "-stats",
            "-i", srt_input,
            "-c", "copy",
            "-f", "mpegts",
            output
        ]

    @staticmethod
    def _resume_key(channel_id: str) -> str:
        return f"{channel_id}:resume"

    def is_running(self, channel_id: str) -> bool:
        """Check if an ingest process is tracked for a channel."""
        return channel_id in self._processes

    def get_process_info(self, channel_id: str) -> Optional[dict]:
        ingest = self._processes.get(channel_id)
        if ingest is None:
            return None
        return {
            "pid": ingest.process.pid,
            "start_time": ingest.started.isoformat(),
            "running": ingest.process.returncode is None
        }

    # ---- lifecycle ----

    async def start_channel(self, channel_id: str):
        """Start a channel's ingest process; no-op if one is already tracked."""
        channel = self._registry.get(channel_id)

        async with self._lock:
            if channel_id in self._processes:
                return channel

            cmd = self._build_command(channel)
            logger.info(f"Starting channel {channel.number}: {' '.join(cmd)}")

            try:
                process = await self._spawner(cmd)
            except Exception as e:
                channel.status = ChannelStatus.ERROR
                channel.pid = None
                self._log.error(f"Failed to start channel {channel.number}: {e}")
                self._emit_channels()
                raise SpawnError(f"Failed to start channel {channel.number}: {e}") from e

            ingest = IngestProcess(
                channel_id=channel_id,
                process=process,
                byte_offset=channel.bytes_received
            )
            self._processes[channel_id] = ingest
            ingest.tasks = [
                asyncio.create_task(self._read_telemetry(ingest)),
                asyncio.create_task(self._read_output(ingest)),
            ]
            for task in ingest.tasks:
                self._tasks.track(task)

            channel.pid = process.pid
            channel.status = ChannelStatus.STARTING

        self._log.info(f"Channel {channel.number} starting on SRT port {channel.srt_port}")
        self._emit_channels()
        return channel

    async def stop_channel(self, channel_id: str):
        """
        Stop a channel and reset it to the stopped baseline.

        Cancels any pending restart, terminates the ingest process (forced
        kill after the grace window) and stops its recording. The reset
        happens even if no process was tracked.
        """
        channel = self._registry.get(channel_id)
        self._tasks.cancel(channel_id)
        self._tasks.cancel(self._resume_key(channel_id))

        async with self._lock:
            ingest = self._processes.pop(channel_id, None)
            if ingest:
                self._tasks.terminate(ingest.process, self.kill_grace)

            self._recordings.stop_if_recording(channel_id)
            self._sync.stop_worker(channel_id)
            channel.reset_runtime()

        if ingest:
            self._log.info(f"Channel {channel.number} stopped")
        self._emit_channels()
        return channel

    async def start_all(self) -> list[int]:
        """Start every channel that is not already active."""
        started = []
        for channel in self._registry.channels():
            if channel.id in self._processes:
                continue
            try:
                await self.start_channel(channel.id)
                started.append(channel.number)
            except SpawnError:
                continue
        self._log.info(f"Started {len(started)} channels")
        return started

    async def stop_all(self) -> list[int]:
        """Stop every active or failed channel."""
        stopped = []
        for channel in self._registry.channels():
            if channel.id in self._processes or channel.status != ChannelStatus.STOPPED or self._tasks.pending(channel.id):
                await self.stop_channel(channel.id)
                stopped.append(channel.number)
        if stopped:
            self._log.info(f"Stopped {len(stopped)} channels")
        return stopped

    async def disconnect_channel(self, channel_id: str):
        """Drop the current sender by cycling the channel's engine."""
        channel = self._require_receiving(channel_id)
        self._log.info(f"Disconnecting source from channel {channel.number}")
        await self.stop_channel(channel_id)
        self._tasks.schedule(channel_id, self.cycle_delay, lambda: self._cycle_restart(channel_id, None))

    async def reset_buffer(self, channel_id: str):
        """Cycle the channel's engine, resuming any active recording afterwards."""
        channel = self._require_receiving(channel_id)
        resume_format = channel.recording_format if channel.is_recording else None
        self._log.info(f"Resetting buffer on channel {channel.number}")
        await self.stop_channel(channel_id)
        self._tasks.schedule(channel_id, self.cycle_delay, lambda: self._cycle_restart(channel_id, resume_format))

    def _require_receiving(self, channel_id: str):
        channel = self._registry.get(channel_id)
        if channel.status != ChannelStatus.RECEIVING:
            raise ChannelStateError(f"Channel {channel.number} is not receiving")
        return channel

    async def _cycle_restart(self, channel_id: str, resume_format: Optional[RecordingFormat]):
        channel = self._registry.find(channel_id)
        if channel is None or channel.status != ChannelStatus.STOPPED:
            return
        try:
            await self.start_channel(channel_id)
        except SpawnError:
            return

        if resume_format is not None:
            self._tasks.schedule(
                self._resume_key(channel_id), self.resume_delay,
                lambda: self._resume_recording(channel_id, resume_format)
            )

    async def _resume_recording(self, channel_id: str, resume_format: RecordingFormat):
        channel = self._registry.find(channel_id)
        if channel is None:
            return
        try:
            await self._recordings.start_recording(channel_id, resume_format)
        except SrtSyncError as e:
            self._log.warning(f"Could not resume recording on channel {channel.number}: {e}")

    # ---- engine output ----

    async def _read_telemetry(self, ingest: IngestProcess):
        """Parse stderr chunks as they arrive, then handle the exit."""
        process = ingest.process
        try:
            if process.stderr:
                while True:
                    chunk = await process.stderr.read(READ_CHUNK_SIZE)
                    if not chunk:
                        break
                    self._handle_telemetry(ingest, chunk.decode(errors="replace"))

            code = await process.wait()
            self._on_exit(ingest, code)

        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Telemetry reader error for channel {ingest.channel_id}: {e}")

    def _handle_telemetry(self, ingest: IngestProcess, text: str):
        if self._processes.get(ingest.channel_id) is not ingest:
            return
        channel = self._registry.find(ingest.channel_id)
        if channel is None:
            return

        result = apply_telemetry(channel, scan(text), byte_offset=ingest.byte_offset)
        for level, message in result.logs:
            self._log.add(level, message)
        if result.timecode:
            self._sync.set_channel_timecode(channel.id, result.timecode)
        if result.status_changed:
            self._emit_channels()

    async def _read_output(self, ingest: IngestProcess):
        """Drain stdout; with no destination it carries the republished stream."""
        process = ingest.process
        try:
            if process.stdout is None:
                return
            while True:
                chunk = await process.stdout.read(65536)
                if not chunk:
                    break
                if self._processes.get(ingest.channel_id) is not ingest:
                    continue
                channel = self._registry.find(ingest.channel_id)
                if channel is None or channel.destination_address:
                    continue
                ingest.stdout_bytes += len(chunk)
                total = ingest.byte_offset + ingest.stdout_bytes
                if total > channel.bytes_received:
                    channel.bytes_received = total
                    channel.bytes_sent = total

        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Output reader error for channel {ingest.channel_id}: {e}")

    def _on_exit(self, ingest: IngestProcess, code: Optional[int]):
        """Engine exited on its own: schedule a restart if it was serving."""
        if self._processes.get(ingest.channel_id) is not ingest:
            # Explicitly stopped or superseded
            return
        del self._processes[ingest.channel_id]

        channel = self._registry.find(ingest.channel_id)
        if channel is None:
            return

        if code not in CLEAN_EXIT_CODES:
            self._log.warning(f"Channel {channel.number} engine exited with code {code}")

        channel.pid = None
        if channel.status in (ChannelStatus.RECEIVING, ChannelStatus.WAITING):
            channel.status = ChannelStatus.WAITING
            channel.connected_clients = 0
            channel.bitrate = 0
            channel.encoder_ip = None
            channel.timecode = None
            channel.timecode_frames = None
            self._log.info(
                f"Channel {channel.number} engine exited unexpectedly, restarting in {self.restart_delay}s"
            )
            self._tasks.schedule(channel.id, self.restart_delay, lambda: self._restart(ingest.channel_id))
        elif channel.status == ChannelStatus.STARTING:
            channel.status = ChannelStatus.ERROR
            self._log.error(f"Channel {channel.number} engine exited during startup (code {code})")

        self._emit_channels()

    async def _restart(self, channel_id: str):
        channel = self._registry.find(channel_id)
        if channel is None or channel.status != ChannelStatus.WAITING or channel_id in self._processes:
            return
        try:
            await self.start_channel(channel_id)
        except SpawnError:
            self._log.warning(f"Restart of channel {channel.number} failed; waiting for operator")

    # ---- configuration apply ----

    async def update_channel(self, channel_id: str, update: PartialChannelConfig):
        """Apply a channel config change, cycling the channel if it is active."""
        channel = self._registry.get(channel_id)
        changes = update.model_dump(exclude_none=True)
        if not changes:
            return channel

        was_active = channel_id in self._processes or channel.is_active
        if was_active:
            await self.stop_channel(channel_id)

        for key, value in changes.items():
            setattr(channel, key, value)
        if "srt_port" in changes:
            channel.custom_port = True

        self._log.info(f"Channel {channel.number} configuration updated")
        if was_active:
            await self.start_channel(channel_id)
        else:
            self._emit_channels()
        return channel

    async def set_channel_count(self, count: int):
        """Grow or shrink the channel set; only removed channels are stopped."""
        if not 1 <= count <= MAX_CHANNELS:
            raise ConfigApplyError(f"Channel count must be between 1 and {MAX_CHANNELS}")
        if self._registry.server.srt_port + count - 1 > 65535:
            raise ConfigApplyError("Channel count exceeds the available port range")

        previous = len(self._registry)
        for channel in self._registry.channels():
            if channel.number > count:
                await self.stop_channel(channel.id)

        self._registry.resize(count)
        if count != previous:
            self._log.info(f"Channel count changed from {previous} to {count}")
        self._bus.emit(events.SERVER_CONFIG, self._registry.server.model_dump(mode="json"))
        self._emit_channels()

    async def update_server_config(self, update: PartialServerConfig) -> ServerConfig:
        """
        Validate and apply a server config change.

        Changes to engine-affecting fields stop every channel, apply, and
        restart the channels that were running. A count-only change
        resizes without touching surviving channels.
        """
        current = self._registry.server
        merged = {**current.model_dump(), **update.model_dump(exclude_none=True)}
        try:
            new_config = ServerConfig(**merged)
        except ValidationError as e:
            raise ConfigApplyError(str(e)) from e

        changed = {k for k in merged if getattr(current, k) != getattr(new_config, k)}
        if not changed:
            return current

        if changed & ENGINE_FIELDS:
            running = self._running_numbers()
            await self.stop_all()
            self._registry.server = new_config.model_copy(update={"channel_count": len(self._registry)})
            self._registry.reassign_ports()
            self._registry.resize(new_config.channel_count)
            self._log.info(f"Server configuration updated ({', '.join(sorted(changed))})")
            await self._restart_numbers(running)
        else:
            self._registry.server = new_config.model_copy(update={"channel_count": len(self._registry)})
            if "channel_count" in changed:
                await self.set_channel_count(new_config.channel_count)
            self._log.info(f"Server configuration updated ({', '.join(sorted(changed))})")

        self._bus.emit(events.SERVER_CONFIG, self._registry.server.model_dump(mode="json"))
        self._emit_channels()
        return self._registry.server

    def _running_numbers(self) -> list[int]:
        """Channels that are serving or due back: tracked, active or awaiting a restart."""
        return [
            c.number for c in self._registry.channels()
            if c.id in self._processes or c.is_active or self._tasks.pending(c.id)
        ]

    async def _restart_numbers(self, numbers: list[int]):
        for number in numbers:
            channel = self._registry.get_by_number(number)
            if channel is None:
                continue
            try:
                await self.start_channel(channel.id)
            except SpawnError:
                continue

    # ---- saved configurations ----

    def _require_store(self) -> ConfigStore:
        if self._store is None:
            raise ConfigApplyError("No configuration store available")
        return self._store

    def save_config(self, name: str = DEFAULT_CONFIG_NAME) -> SavedConfig:
        store = self._require_store()
        document = SavedConfig(
            server=self._registry.server,
            sync=self._registry.sync,
            channels=self._registry.export_channel_configs(),
            saved_at=datetime.now(timezone.utc)
        )
        try:
            store.save(name, document.model_dump(mode="json"))
        except (OSError, ValueError) as e:
            raise ConfigApplyError(f"Failed to save config {name}: {e}") from e
        self._log.info(f"Configuration saved as {name}")
        return document

    async def load_config(self, name: str = DEFAULT_CONFIG_NAME) -> SavedConfig:
        """Load and apply a saved configuration; state is untouched on error."""
        store = self._require_store()
        try:
            data = store.load(name)
        except (OSError, ValueError) as e:
            raise ConfigApplyError(f"Failed to read config {name}: {e}") from e
        if data is None:
            raise ConfigApplyError(f"Config {name} not found")
        try:
            document = SavedConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigApplyError(f"Invalid config {name}: {e}") from e

        running = self._running_numbers()
        await self.stop_all()

        self._registry.server = document.server.model_copy(update={"channel_count": len(self._registry)})
        self._registry.resize(document.server.channel_count)
        self._registry.reassign_ports()
        for channel_config in document.channels:
            self._registry.apply_channel_config(channel_config)
        self._sync.apply_config(document.sync)

        self._log.info(f"Configuration {name} loaded")
        await self._restart_numbers(running)

        self._bus.emit(events.SERVER_CONFIG, self._registry.server.model_dump(mode="json"))
        self._emit_channels()
        return document

    def list_configs(self) -> list[str]:
        return self._require_store().list()

    async def shutdown(self):
        """Stop all channels and wait for their processes to be reaped."""
        self._tasks.cancel_all()
        for channel_id in list(self._processes):
            await self.stop_channel(channel_id)
        await self._tasks.drain()
        logger.info("ChannelManager shutdown complete")
