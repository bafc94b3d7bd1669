"""
Telemetry Parser

Scrapes structured metrics out of the ingest engine's diagnostic text.

`scan()` is a pure function over one chunk of text (chunks arrive at
arbitrary boundaries, not lines). `apply_telemetry()` folds the result
into a channel. Unmatched or garbled numbers are skipped, never zeroed.

The trigger phrases are ffmpeg's; they are loose substring matches and
should be re-validated when the engine version changes.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

import ipaddress
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from ..models import Channel, ChannelStatus, LogLevel

# Status signals
LISTENING = "listening"
ESTABLISHED = "established"
LOST = "lost"

_SIGNAL_PATTERNS = [
    (LISTENING, re.compile(r"Opening '?srt://|\blistening\b", re.IGNORECASE)),
    (ESTABLISHED, re.compile(r"Input #0|Stream #0")),
    (LOST, re.compile(
        r"Connection (?:reset|timed out|refused|was broken|lost)",
        re.IGNORECASE,
    )),
]

# A counter at the very end of a chunk may be cut off, so each needs trailing whitespace
_SIZE_RE = re.compile(r"\bsize=\s*(\d+)\s*(kib|kb|mib|mb|gib|gb|bytes|b)(?=\s)", re.IGNORECASE)
_BITRATE_RE = re.compile(r"\bbitrate=\s*(\d+(?:\.\d+)?)\s*([kmg])?bits?/s", re.IGNORECASE)
_FPS_RE = re.compile(r"\bfps=\s*(\d+(?:\.\d+)?)(?=\s)")
_DROP_RE = re.compile(r"\bdrop=\s*(\d+)(?=\s)")
_DUP_RE = re.compile(r"\bdup=\s*(\d+)(?=\s)")
_IPV4_RE = re.compile(r"(?<![\d.])(\d{1,3}(?:\.\d{1,3}){3})(?![\d.])")
_TIMECODE_RE = re.compile(
    r"(?:timecode|\bSEI\b)[^\n]{0,64}?(\d{2}:\d{2}:\d{2}[:;]\d{2})",
    re.IGNORECASE,
)

_SIZE_UNITS = {
    "b": 1,
    "bytes": 1,
    "kb": 1024,
    "kib": 1024,
    "mb": 1024 ** 2,
    "mib": 1024 ** 2,
    "gb": 1024 ** 3,
    "gib": 1024 ** 3,
}

_BITRATE_UNITS = {"k": 1, "m": 1000, "g": 1_000_000}

MAX_ERROR_LINE = 200


@dataclass
class Telemetry:
    """Partial field updates extracted from one chunk."""
    signals: list[str] = field(default_factory=list)
    remote_address: Optional[str] = None
    size_bytes: Optional[int] = None
    bitrate_kbps: Optional[int] = None
    fps: Optional[float] = None
    drops: Optional[int] = None
    dups: Optional[int] = None
    timecode: Optional[str] = None
    error_lines: list[str] = field(default_factory=list)


@dataclass
class TelemetryResult:
    """What apply_telemetry changed and what the caller should log."""
    status_changed: bool = False
    logs: list[tuple[LogLevel, str]] = field(default_factory=list)
    timecode: Optional[str] = None


def _last(pattern: re.Pattern, text: str) -> Optional[re.Match]:
    match = None
    for match in pattern.finditer(text):
        pass
    return match


def _remote_address(text: str) -> Optional[str]:
    """First unicast, non-wildcard IPv4 literal in text."""
    for match in _IPV4_RE.finditer(text):
        try:
            addr = ipaddress.IPv4Address(match.group(1))
        except ValueError:
            continue
        if addr.is_unspecified or addr.is_multicast or addr.is_loopback:
            continue
        return str(addr)
    return None


def parse_size(text: str) -> Optional[int]:
    match = _last(_SIZE_RE, text)
    if not match:
        return None
    unit = match.group(2).lower()
    return int(match.group(1)) * _SIZE_UNITS[unit]


def parse_bitrate(text: str) -> Optional[int]:
    """Bitrate normalised to kbps."""
    match = _last(_BITRATE_RE, text)
    if not match:
        return None
    value = float(match.group(1))
    unit = (match.group(2) or "").lower()
    if unit:
        value *= _BITRATE_UNITS[unit]
    else:
        value /= 1000
    return int(round(value))


def parse_fps(text: str) -> Optional[float]:
    match = _last(_FPS_RE, text)
    return float(match.group(1)) if match else None


def parse_timecode(text: str) -> Optional[str]:
    match = _last(_TIMECODE_RE, text)
    return match.group(1) if match else None


def scan(text: str) -> Telemetry:
    """Extract every recognised signal and counter from a chunk of text."""
    telemetry = Telemetry()

    found = []
    for kind, pattern in _SIGNAL_PATTERNS:
        for match in pattern.finditer(text):
            found.append((match.start(), kind))
    telemetry.signals = [kind for _, kind in sorted(found)]

    if ESTABLISHED in telemetry.signals:
        telemetry.remote_address = _remote_address(text)

    telemetry.size_bytes = parse_size(text)
    telemetry.bitrate_kbps = parse_bitrate(text)
    telemetry.fps = parse_fps(text)

    drop = _last(_DROP_RE, text)
    if drop:
        telemetry.drops = int(drop.group(1))
    dup = _last(_DUP_RE, text)
    if dup:
        telemetry.dups = int(dup.group(1))

    telemetry.timecode = parse_timecode(text)

    for line in text.splitlines():
        stripped = line.strip()
        if stripped and "error" in stripped.lower():
            telemetry.error_lines.append(stripped[:MAX_ERROR_LINE])

    return telemetry


def apply_telemetry(
    channel: Channel,
    telemetry: Telemetry,
    now: Optional[datetime] = None,
    byte_offset: int = 0,
) -> TelemetryResult:
    """
    Fold one chunk's telemetry into the channel, in text order.

    byte_offset is the byte count carried over from earlier engine runs of
    this channel, so the cumulative counter survives restarts.
    """
    result = TelemetryResult()
    now = now or datetime.now(timezone.utc)

    for signal in telemetry.signals:
        if signal == LISTENING:
            if channel.status == ChannelStatus.STARTING:
                channel.status = ChannelStatus.WAITING
                result.status_changed = True
                result.logs.append((
                    LogLevel.INFO,
                    f"Channel {channel.number} waiting for SRT connection on port {channel.srt_port}",
                ))

        elif signal == ESTABLISHED:
            if channel.status != ChannelStatus.RECEIVING:
                channel.status = ChannelStatus.RECEIVING
                channel.connected_clients = 1
                channel.encoder_ip = telemetry.remote_address
                if channel.started_at is None:
                    channel.started_at = now
                result.status_changed = True
                source = f" from {channel.encoder_ip}" if channel.encoder_ip else ""
                result.logs.append((
                    LogLevel.SUCCESS,
                    f"SRT source connected to channel {channel.number}{source}",
                ))

        elif signal == LOST:
            if channel.status == ChannelStatus.RECEIVING:
                channel.status = ChannelStatus.WAITING
                channel.connected_clients = 0
                channel.encoder_ip = None
                channel.bitrate = 0
                channel.timecode = None
                channel.timecode_frames = None
                result.status_changed = True
                result.logs.append((
                    LogLevel.WARNING,
                    f"SRT source disconnected from channel {channel.number}",
                ))

    # Republishing is a byte-identical copy, so sent mirrors received.
    if telemetry.size_bytes is not None:
        total = byte_offset + telemetry.size_bytes
        if total >= channel.bytes_received:
            channel.bytes_received = total
            channel.bytes_sent = total

    if telemetry.bitrate_kbps is not None:
        channel.bitrate = telemetry.bitrate_kbps
    if telemetry.fps is not None:
        channel.fps = telemetry.fps
    if telemetry.dups is not None:
        channel.packets_lost = telemetry.dups
    if telemetry.drops is not None:
        channel.packets_dropped = telemetry.drops

    if telemetry.timecode and channel.status == ChannelStatus.RECEIVING:
        result.timecode = telemetry.timecode

    for line in telemetry.error_lines:
        result.logs.append((LogLevel.ERROR, f"Channel {channel.number} engine: {line}"))

    return result
