"""
SRT Sync - Data Models

Channel, server and sync configuration models.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional
from enum import Enum
from datetime import datetime
import os


MAX_CHANNELS = int(os.getenv("SRTSYNC_MAX_CHANNELS", "64"))
MAX_PORT = 65535
MIN_PORT = 1024


class ChannelStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    WAITING = "waiting"
    RECEIVING = "receiving"
    ERROR = "error"


class SyncStatus(str, Enum):
    UNKNOWN = "unknown"
    NO_TIMECODE = "no_timecode"
    SYNCED = "synced"
    WARNING = "warning"
    OUT_OF_SYNC = "out_of_sync"


class TimecodeSource(str, Enum):
    NONE = "none"
    EMBEDDED = "embedded"
    AUDIO = "audio"
    VIDEO_EMBEDDED = "video-embedded"


class EncryptionMode(str, Enum):
    NONE = "none"
    AES_128 = "aes-128"
    AES_192 = "aes-192"
    AES_256 = "aes-256"


class AddressMode(str, Enum):
    LOCAL = "local"
    PUBLIC = "public"


class RecordingFormat(str, Enum):
    TS = "ts"
    MKV = "mkv"
    MP4 = "mp4"


class LogLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Channel(BaseModel):
    """A single ingest channel: operator config plus runtime state."""
    id: str
    number: int

    # Operator config
    name: str
    stream_id: str = ""
    srt_port: int
    custom_port: bool = False
    destination_address: str = ""
    destination_port: int = 5004
    latency: Optional[int] = None  # ms, None = server default
    input_fps: Optional[float] = None  # None = auto
    timecode_source: TimecodeSource = TimecodeSource.EMBEDDED

    # Runtime state (supervisor / telemetry only)
    status: ChannelStatus = ChannelStatus.STOPPED
    pid: Optional[int] = None
    connected_clients: int = 0
    bytes_received: int = 0
    bytes_sent: int = 0
    bitrate: int = 0  # kbps
    fps: float = 0.0
    started_at: Optional[datetime] = None
    uptime: int = 0  # seconds
    packets_lost: int = 0
    packets_dropped: int = 0
    encoder_ip: Optional[str] = None
    is_recording: bool = False
    recording_file: Optional[str] = None
    recording_format: Optional[RecordingFormat] = None

    # Sync state (sync engine only)
    timecode: Optional[str] = None
    timecode_frames: Optional[int] = None
    sync_offset: int = 0
    sync_status: SyncStatus = SyncStatus.UNKNOWN
    is_reference: bool = False

    def reset_runtime(self):
        """Return runtime and sync fields to the stopped baseline."""
        self.status = ChannelStatus.STOPPED
        self.pid = None
        self.connected_clients = 0
        self.bytes_received = 0
        self.bytes_sent = 0
        self.bitrate = 0
        self.fps = 0.0
        self.started_at = None
        self.uptime = 0
        self.packets_lost = 0
        self.packets_dropped = 0
        self.encoder_ip = None
        self.is_recording = False
        self.recording_file = None
        self.recording_format = None
        self.clear_sync()

    def clear_sync(self):
        self.timecode = None
        self.timecode_frames = None
        self.sync_offset = 0
        self.sync_status = SyncStatus.UNKNOWN

    @property
    def is_active(self) -> bool:
        return self.status in (ChannelStatus.STARTING, ChannelStatus.WAITING, ChannelStatus.RECEIVING)


class ChannelConfig(BaseModel):
    """Persisted, operator-settable part of a channel."""
    number: int = Field(ge=1)
    name: str
    stream_id: str = ""
    srt_port: Optional[int] = Field(default=None, ge=MIN_PORT, le=MAX_PORT)
    destination_address: str = ""
    destination_port: int = Field(default=5004, ge=1, le=MAX_PORT)
    latency: Optional[int] = Field(default=None, ge=0, le=10000)
    input_fps: Optional[float] = Field(default=None, gt=0, le=240)
    timecode_source: TimecodeSource = TimecodeSource.EMBEDDED


class PartialChannelConfig(BaseModel):
    """Channel config update (all fields optional)."""
    name: Optional[str] = None
    stream_id: Optional[str] = None
    srt_port: Optional[int] = Field(default=None, ge=MIN_PORT, le=MAX_PORT)
    destination_address: Optional[str] = None
    destination_port: Optional[int] = Field(default=None, ge=1, le=MAX_PORT)
    latency: Optional[int] = Field(default=None, ge=0, le=10000)
    input_fps: Optional[float] = Field(default=None, gt=0, le=240)
    timecode_source: Optional[TimecodeSource] = None


class ServerConfig(BaseModel):
    """Process-wide server configuration."""
    srt_port: int = Field(default=9000, ge=MIN_PORT, le=MAX_PORT)
    latency: int = Field(default=200, ge=0, le=10000)
    encryption: EncryptionMode = EncryptionMode.NONE
    passphrase: str = ""
    address_mode: AddressMode = AddressMode.LOCAL
    public_address: Optional[str] = None
    public_port: Optional[int] = Field(default=None, ge=1, le=MAX_PORT)
    local_address: Optional[str] = None
    channel_count: int = Field(default=16, ge=1, le=MAX_CHANNELS)

    @model_validator(mode="after")
    def _check_consistency(self):
        if self.srt_port + self.channel_count - 1 > MAX_PORT:
            raise ValueError(
                f"Port range {self.srt_port}-{self.srt_port + self.channel_count - 1} exceeds {MAX_PORT}"
            )
        if self.encryption != EncryptionMode.NONE and not 10 <= len(self.passphrase) <= 79:
            raise ValueError("Passphrase must be 10-79 characters when encryption is enabled")
        return self


class PartialServerConfig(BaseModel):
    """Server config update (all fields optional)."""
    srt_port: Optional[int] = None
    latency: Optional[int] = None
    encryption: Optional[EncryptionMode] = None
    passphrase: Optional[str] = None
    address_mode: Optional[AddressMode] = None
    public_address: Optional[str] = None
    public_port: Optional[int] = None
    local_address: Optional[str] = None
    channel_count: Optional[int] = None


class SyncConfig(BaseModel):
    """Cross-channel timecode sync settings."""
    enabled: bool = False
    shift_ms: int = 0
    default_timecode_source: TimecodeSource = TimecodeSource.EMBEDDED


class PartialSyncConfig(BaseModel):
    enabled: Optional[bool] = None
    shift_ms: Optional[int] = None
    default_timecode_source: Optional[TimecodeSource] = None


class LogEntry(BaseModel):
    """Immutable activity log entry."""
    model_config = {"frozen": True}

    id: str
    level: LogLevel
    message: str
    timestamp: datetime


class AggregateStats(BaseModel):
    """Periodic snapshot across all channels."""
    total_channels: int = 0
    receiving_channels: int = 0
    waiting_channels: int = 0
    total_bytes_received: int = 0
    total_bytes_sent: int = 0
    total_bitrate: int = 0
    srt_port: int = 9000


class SavedConfig(BaseModel):
    """Document written by the config store."""
    server: ServerConfig
    sync: SyncConfig = SyncConfig()
    channels: list[ChannelConfig] = []
    saved_at: Optional[datetime] = None

    @field_validator("channels")
    @classmethod
    def _unique_numbers(cls, channels: list[ChannelConfig]) -> list[ChannelConfig]:
        numbers = [c.number for c in channels]
        if len(numbers) != len(set(numbers)):
            raise ValueError("Duplicate channel numbers")
        return channels


class NetworkInterface(BaseModel):
    """A non-loopback IPv4 address on a host interface."""
    name: str
    address: str
    netmask: Optional[str] = None


class RecordingRequest(BaseModel):
    format: RecordingFormat = RecordingFormat.TS


class ReferenceRequest(BaseModel):
    channel_id: Optional[str] = None
