"""
Timecode Arithmetic

Conversions between SMPTE-style timecode strings, frame counts and
presentation timestamps, plus the wall-clock derived sync time and
offset classification.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..models import SyncStatus

SYNC_FPS = 30
DEFAULT_FPS = 30

FRAMES_PER_DAY = 24 * 3600 * SYNC_FPS

SYNCED_MAX_FRAMES = 2
WARNING_MAX_FRAMES = 5

TIMECODE_RE = re.compile(r"^(\d{1,2}):(\d{2}):(\d{2})[:;.](\d{2})$")


def nominal_fps(fps: Optional[float]) -> int:
    """Integer frame rate used for timecode counting (29.97 counts as 30)."""
    if not fps or fps <= 0:
        return DEFAULT_FPS
    return max(1, int(round(fps)))


def timecode_to_frames(timecode: str, fps: Optional[float] = None) -> Optional[int]:
    """
    Convert HH:MM:SS:FF (or HH:MM:SS;FF) to a total frame count.

    Returns None for malformed input. The drop-frame separator is accepted
    but not specially interpreted.
    """
    match = TIMECODE_RE.match(timecode.strip()) if timecode else None
    if not match:
        return None
    hours, minutes, seconds, frames = (int(g) for g in match.groups())
    rate = nominal_fps(fps)
    return (hours * 3600 + minutes * 60 + seconds) * rate + frames


def frames_to_timecode(total_frames: int, fps: Optional[float] = None) -> str:
    """Convert a frame count to zero-padded HH:MM:SS:FF."""
    rate = nominal_fps(fps)
    total_frames = max(0, int(total_frames))
    frames = total_frames % rate
    total_seconds = total_frames // rate
    hours = (total_seconds // 3600) % 24
    minutes = (total_seconds // 60) % 60
    seconds = total_seconds % 60
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}:{frames:02d}"


def pts_to_timecode(pts_seconds: float, fps: Optional[float] = None) -> str:
    """Convert a presentation timestamp in seconds to a timecode."""
    rate = nominal_fps(fps)
    return frames_to_timecode(int(pts_seconds * rate), rate)


@dataclass
class SyncTime:
    timecode: str
    total_frames: int


def sync_time(now: Optional[datetime] = None, shift_ms: int = 0) -> SyncTime:
    """Wall-clock reference timecode at SYNC_FPS, shifted by shift_ms."""
    now = now or datetime.now(timezone.utc)
    shifted = now - timedelta(milliseconds=shift_ms)
    seconds_of_day = shifted.hour * 3600 + shifted.minute * 60 + shifted.second
    frames = int(shifted.microsecond * SYNC_FPS / 1_000_000)
    total = seconds_of_day * SYNC_FPS + frames
    return SyncTime(timecode=frames_to_timecode(total, SYNC_FPS), total_frames=total)


def frame_offset(channel_frames: int, reference_frames: int) -> int:
    """Signed channel minus reference offset, wrapped at midnight to within half a day."""
    half_day = FRAMES_PER_DAY // 2
    return (channel_frames - reference_frames + half_day) % FRAMES_PER_DAY - half_day


def classify_offset(offset_frames: Optional[int]) -> SyncStatus:
    """Classify a signed frame offset; None means no timecode observed."""
    if offset_frames is None:
        return SyncStatus.NO_TIMECODE
    drift = abs(offset_frames)
    if drift <= SYNCED_MAX_FRAMES:
        return SyncStatus.SYNCED
    if drift <= WARNING_MAX_FRAMES:
        return SyncStatus.WARNING
    return SyncStatus.OUT_OF_SYNC
