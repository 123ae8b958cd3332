"""
Transcode Service

Runs one ffmpeg process per request: video is copied untouched, audio is
re-encoded to AAC, and the result is written to stdout as fragmented MP4 so
the browser can start rendering immediately. The process lives exactly as long
as the client connection that asked for it.
"""

import asyncio
import logging
import signal
from collections import deque
from typing import List, Optional, Set

from config import settings
from responses import ClosingStreamingResponse

logger = logging.getLogger(__name__)

TRANSCODE_CONTENT_TYPE = "video/mp4"

# How long ffmpeg gets to exit after closing stdout before it is killed
EXIT_GRACE_SECONDS = 5.0

# ffmpeg exits with 255 when it is signalled; asyncio reports a negative signal
# number for children killed by a signal, shells report 128 + signal.
FORCED_EXIT_CODES = {
    255,
    -signal.SIGKILL,
    -signal.SIGTERM,
    128 + signal.SIGKILL,
    128 + signal.SIGTERM,
}


class TranscodeStartError(Exception):
    """ffmpeg could not be started or exited before producing any output"""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class TranscodeRejected(Exception):
    """Too many transcodes are already running"""


def build_transcode_command(url: str, ffmpeg_path: Optional[str] = None,
                            user_agent: Optional[str] = None) -> List[str]:
    """Build the ffmpeg command: copy video, AAC audio, fragmented MP4 on stdout."""
    cmd = [
        ffmpeg_path or settings.FFMPEG_PATH,
        "-hide_banner",
        "-loglevel", "warning",
        "-fflags", "+genpts",
    ]
    if user_agent:
        cmd.extend(["-user_agent", user_agent])
    cmd.extend([
        "-i", url,
        # Video passthrough
        "-c:v", "copy",
        # Audio to browser-safe AAC with drift correction
        "-c:a", "aac",
        "-ar", "48000",
        "-b:a", "256k",
        "-af", "aresample=48000:async=1",
        # Fragmented MP4, no trailing index needed
        "-f", "mp4",
        "-movflags", "frag_keyframe+empty_moov+default_base_moof",
        "pipe:1",
    ])
    return cmd


def is_forced_exit(returncode: Optional[int]) -> bool:
    return returncode in FORCED_EXIT_CODES


class TranscodeProcess:
    """A single ffmpeg process owned by one client request"""

    def __init__(self, url: str, command: List[str]):
        self.url = url
        self.command = command
        self.process: Optional[asyncio.subprocess.Process] = None
        self.bytes_sent = 0
        self.stderr_tail = deque(maxlen=settings.TRANSCODE_STDERR_LINES)
        self._stderr_task: Optional[asyncio.Task] = None
        self._killed = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process else None

    async def spawn(self):
        logger.info(f"Starting transcode for {self.url}")
        logger.debug(f"FFmpeg command: {' '.join(self.command)}")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            # Missing binary, permissions, resource limits
            logger.error(f"Failed to spawn ffmpeg for {self.url}: {e}")
            raise TranscodeStartError(f"Failed to start transcoder: {e}") from e

        logger.info(f"FFmpeg started with PID {self.process.pid} for {self.url}")
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def read(self, size: int) -> bytes:
        return await self.process.stdout.read(size)

    def kill(self) -> bool:
        """Kill the process. Only the first call sends a signal."""
        if self._killed or self.process is None:
            return False
        self._killed = True
        if self.process.returncode is not None:
            return False
        try:
            self.process.kill()
        except ProcessLookupError:
            return False
        logger.info(f"Killed ffmpeg PID {self.process.pid} for {self.url}")
        return True

    async def wait(self, timeout: float = 5.0) -> Optional[int]:
        if self.process is None:
            return None
        try:
            return await asyncio.wait_for(self.process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"FFmpeg PID {self.process.pid} did not exit within {timeout}s")
            return None

    def stderr_excerpt(self) -> str:
        return "\n".join(self.stderr_tail)

    def log_exit(self, returncode: Optional[int]):
        if returncode is None:
            return
        if returncode == 0 or is_forced_exit(returncode):
            logger.info(
                f"FFmpeg for {self.url} exited with code {returncode}, {self.bytes_sent} bytes sent")
        else:
            logger.error(
                f"FFmpeg for {self.url} exited with code {returncode} after {self.bytes_sent} bytes: "
                f"{self.stderr_excerpt()}")

    async def _drain_stderr(self):
        """Keep the tail of ffmpeg's stderr for diagnostics"""
        stderr = self.process.stderr
        if stderr is None:
            return

        # Read in chunks and split lines ourselves so a very long line without
        # a newline can't raise LimitOverrunError and stop the reader.
        buf = b""
        chunk_size = 4096
        max_line = settings.TRANSCODE_STDERR_LINE_LENGTH
        try:
            while True:
                chunk = await stderr.read(chunk_size)
                if not chunk:
                    break
                buf += chunk
                while b"\n" in buf:
                    line, buf = buf.split(b"\n", 1)
                    self._record_stderr(line, max_line)
                if len(buf) > max_line:
                    self._record_stderr(buf, max_line)
                    buf = b""
            if buf:
                self._record_stderr(buf, max_line)
        except Exception as e:
            logger.error(f"Error reading FFmpeg stderr for {self.url}: {e}")

    def _record_stderr(self, line: bytes, max_line: int):
        line_str = line.decode('utf-8', errors='ignore').strip()
        if not line_str:
            return
        line_str = line_str[:max_line]
        self.stderr_tail.append(line_str)
        logger.debug(f"FFmpeg [{self.pid}]: {line_str}")


class TranscodeManager:
    def __init__(self, ffmpeg_path: Optional[str] = None, max_concurrent: Optional[int] = None,
                 start_timeout: Optional[float] = None):
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.max_concurrent = settings.MAX_CONCURRENT_TRANSCODES if max_concurrent is None else max_concurrent
        self.start_timeout = settings.TRANSCODE_START_TIMEOUT if start_timeout is None else start_timeout
        self.processes: Set[TranscodeProcess] = set()
        self._reapers: Set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        return len(self.processes)

    async def open_transcode(self, url: str) -> ClosingStreamingResponse:
        """
        Start a transcode for one client and return its streaming response.

        Fails before any bytes are sent if ffmpeg cannot be spawned, exits
        without output, or produces nothing within the start timeout.
        """
        if self.max_concurrent and self.active_count >= self.max_concurrent:
            logger.warning(
                f"Rejecting transcode for {url}: {self.active_count}/{self.max_concurrent} running")
            raise TranscodeRejected(
                f"Transcode limit reached ({self.max_concurrent})")

        process = TranscodeProcess(
            url, build_transcode_command(url, self.ffmpeg_path, settings.DEFAULT_USER_AGENT))
        await process.spawn()
        self.processes.add(process)

        try:
            first_chunk = await asyncio.wait_for(
                process.read(settings.TRANSCODE_CHUNK_SIZE), timeout=self.start_timeout)
        except asyncio.TimeoutError:
            self.release(process)
            raise TranscodeStartError(
                f"Transcoder produced no output within {self.start_timeout}s", status_code=504)
        except BaseException:
            self.release(process)
            raise

        if not first_chunk:
            returncode = await process.wait()
            self.release(process)
            logger.error(
                f"FFmpeg exited with code {returncode} before producing output for {url}: "
                f"{process.stderr_excerpt()}")
            raise TranscodeStartError(
                f"Transcoder exited with code {returncode} before producing output", status_code=502)

        headers = {
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
            "Access-Control-Allow-Origin": "*",
            # Progressive output; ranges would spawn duplicate transcodes
            "Accept-Ranges": "none",
        }
        return ClosingStreamingResponse(
            self._stream(process, first_chunk),
            media_type=TRANSCODE_CONTENT_TYPE,
            headers=headers,
            on_close=lambda: self.release(process),
        )

    async def _stream(self, process: TranscodeProcess, first_chunk: bytes):
        try:
            process.bytes_sent += len(first_chunk)
            yield first_chunk
            while True:
                chunk = await process.read(settings.TRANSCODE_CHUNK_SIZE)
                if not chunk:
                    logger.info(f"Transcoder output ended for {process.url}")
                    # Let ffmpeg exit on its own so its real exit code is kept
                    await process.wait(timeout=EXIT_GRACE_SECONDS)
                    break
                process.bytes_sent += len(chunk)
                yield chunk
        finally:
            self.release(process)

    def release(self, process: TranscodeProcess):
        """
        Kill the process and drop it from the active set. Safe to call more
        than once; reaping and exit logging happen on a separate task.
        """
        process.kill()
        if process not in self.processes:
            return
        self.processes.discard(process)
        reaper = asyncio.get_running_loop().create_task(self._reap(process))
        self._reapers.add(reaper)
        reaper.add_done_callback(self._reapers.discard)

    async def _reap(self, process: TranscodeProcess):
        returncode = await process.wait()
        process.log_exit(returncode)
        if process._stderr_task is not None:
            try:
                await asyncio.wait_for(process._stderr_task, timeout=1.0)
            except asyncio.TimeoutError:
                process._stderr_task.cancel()

    async def stop(self):
        """Kill every running transcode (service shutdown)"""
        for process in list(self.processes):
            self.release(process)
        if self._reapers:
            await asyncio.gather(*self._reapers, return_exceptions=True)
        logger.info("Transcode manager stopped")
