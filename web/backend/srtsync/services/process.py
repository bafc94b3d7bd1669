"""
Engine Process Helpers

Spawning, graceful termination and keyed delayed tasks shared by the
ingest, recording and timecode supervisors.

Copyright: (c) 2026 B. Wynne
License: GPLv2 or later
"""

import asyncio
import logging
import os
import signal
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

FFMPEG_BIN = os.getenv("SRTSYNC_FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = os.getenv("SRTSYNC_FFPROBE_BIN", "ffprobe")

# ffmpeg exits 255 when interrupted; asyncio reports signal deaths as -signum
CLEAN_EXIT_CODES = {0, None, 255, -signal.SIGTERM, -signal.SIGKILL, -signal.SIGINT}

READ_CHUNK_SIZE = 4096

Spawner = Callable[[list[str]], Awaitable[asyncio.subprocess.Process]]


async def spawn_process(cmd: list[str]) -> asyncio.subprocess.Process:
    """Start an engine process with piped stdout/stderr."""
    return await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE
    )


async def _reap(process: asyncio.subprocess.Process, grace: float):
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
    except asyncio.TimeoutError:
        logger.warning(f"Process {process.pid} didn't stop gracefully, killing")
        try:
            process.kill()
        except ProcessLookupError:
            pass


class ScheduledTasks:
    """
    Cancellable delayed tasks keyed by channel id.

    At most one task per key; scheduling again replaces (cancels) the
    previous one. Untracked background tasks (reapers) are also kept here
    so they are not garbage collected mid-flight.
    """

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()

    def schedule(self, key: str, delay: float, callback: Callable[[], Awaitable[None]]) -> asyncio.Task:
        self.cancel(key)
        task = asyncio.create_task(self._run_later(key, delay, callback))
        self._tasks[key] = task
        return task

    async def _run_later(self, key: str, delay: float, callback: Callable[[], Awaitable[None]]):
        try:
            await asyncio.sleep(delay)
            await callback()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Scheduled task for {key} failed: {e}")
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                del self._tasks[key]

    def cancel(self, key: str):
        """Cancel the pending task for key (never the calling task itself)."""
        task = self._tasks.get(key)
        if task is None or task is asyncio.current_task():
            return
        del self._tasks[key]
        task.cancel()

    def pending(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def track(self, task: asyncio.Task):
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def terminate(self, process: asyncio.subprocess.Process, grace: float) -> Optional[asyncio.Task]:
        """SIGTERM now, SIGKILL after `grace` seconds if still running."""
        if process.returncode is not None:
            return None
        try:
            process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return None
        task = asyncio.create_task(_reap(process, grace))
        self.track(task)
        return task

    def cancel_all(self):
        for key in list(self._tasks):
            self.cancel(key)

    async def drain(self):
        """Wait for outstanding reapers (used at shutdown)."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
