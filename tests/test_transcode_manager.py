import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import asyncio
import logging
import pytest
from unittest.mock import Mock, AsyncMock, patch

from transcode_manager import (
    TranscodeManager,
    TranscodeProcess,
    TranscodeRejected,
    TranscodeStartError,
    build_transcode_command,
    is_forced_exit,
)

SOURCE_URL = "http://provider.example/live/u/p/42.ts"


class FakeProcess:
    """Stands in for asyncio.subprocess.Process"""

    def __init__(self, returncode_on_exit=-9, pid=4242):
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode = None
        self.pid = pid
        self._returncode_on_exit = returncode_on_exit
        # Exit code reported once the process is waited on
        self.pending_exit = None
        self.kill = Mock(side_effect=self._on_kill)

    def _on_kill(self):
        self.returncode = self._returncode_on_exit
        self.stdout.feed_eof()
        self.stderr.feed_eof()

    def exit(self, returncode):
        self.returncode = returncode
        self.stdout.feed_eof()
        self.stderr.feed_eof()

    async def wait(self):
        if self.returncode is None and self.pending_exit is not None:
            self.returncode = self.pending_exit
        return self.returncode


def spawn_returning(process):
    return patch('transcode_manager.asyncio.create_subprocess_exec',
                 new=AsyncMock(return_value=process))


class TestCommand:
    def test_fixed_argument_contract(self):
        cmd = build_transcode_command(SOURCE_URL, ffmpeg_path="ffmpeg", user_agent="UA/1.0")

        assert cmd == [
            "ffmpeg", "-hide_banner", "-loglevel", "warning", "-fflags", "+genpts",
            "-user_agent", "UA/1.0",
            "-i", SOURCE_URL,
            "-c:v", "copy",
            "-c:a", "aac", "-ar", "48000", "-b:a", "256k",
            "-af", "aresample=48000:async=1",
            "-f", "mp4", "-movflags", "frag_keyframe+empty_moov+default_base_moof",
            "pipe:1",
        ]

    def test_video_is_never_reencoded(self):
        cmd = build_transcode_command(SOURCE_URL, ffmpeg_path="ffmpeg")
        assert cmd[cmd.index("-c:v") + 1] == "copy"
        assert "-user_agent" not in cmd

    def test_forced_exit_codes(self):
        for code in (255, -9, -15, 137, 143):
            assert is_forced_exit(code)
        assert not is_forced_exit(1)
        assert not is_forced_exit(0)


class TestTranscodeProcess:
    @pytest.mark.asyncio
    async def test_stderr_tail_is_bounded(self):
        process = TranscodeProcess(SOURCE_URL, ["ffmpeg"])
        process.process = FakeProcess()
        process.stderr_tail = type(process.stderr_tail)(maxlen=3)

        lines = b"".join(f"warning {i}\n".encode() for i in range(10))
        process.process.stderr.feed_data(lines + b"x" * 5000)
        process.process.stderr.feed_eof()
        await process._drain_stderr()

        assert len(process.stderr_tail) == 3
        assert process.stderr_tail[0] == "warning 9"
        assert all(len(line) <= 1024 for line in process.stderr_tail)

    @pytest.mark.asyncio
    async def test_kill_is_idempotent(self):
        process = TranscodeProcess(SOURCE_URL, ["ffmpeg"])
        process.process = FakeProcess()

        assert process.kill() is True
        assert process.kill() is False
        process.process.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_kill_after_exit_is_noop(self):
        process = TranscodeProcess(SOURCE_URL, ["ffmpeg"])
        process.process = FakeProcess()
        process.process.exit(0)

        assert process.kill() is False
        process.process.kill.assert_not_called()


class TestTranscodeManager:
    @pytest.mark.asyncio
    async def test_streams_first_chunk_and_headers(self):
        fake = FakeProcess()
        fake.stdout.feed_data(b"ftypmoov")
        manager = TranscodeManager(ffmpeg_path="ffmpeg", max_concurrent=0, start_timeout=1.0)

        with spawn_returning(fake):
            response = await manager.open_transcode(SOURCE_URL)

        assert response.media_type == "video/mp4"
        assert response.headers["accept-ranges"] == "none"
        assert "no-cache" in response.headers["cache-control"]
        assert await response.body_iterator.__anext__() == b"ftypmoov"
        assert manager.active_count == 1

        await response.close()
        await manager.stop()

    @pytest.mark.asyncio
    async def test_disconnect_kills_exactly_once(self):
        fake = FakeProcess()
        fake.stdout.feed_data(b"chunk-1")
        manager = TranscodeManager(ffmpeg_path="ffmpeg", max_concurrent=0, start_timeout=1.0)

        with spawn_returning(fake):
            response = await manager.open_transcode(SOURCE_URL)

        assert await response.body_iterator.__anext__() == b"chunk-1"
        # Client goes away while ffmpeg is still producing
        fake.stdout.feed_data(b"chunk-2")
        await response.close()
        await response.close()

        fake.kill.assert_called_once()
        assert manager.active_count == 0
        with pytest.raises(StopAsyncIteration):
            await response.body_iterator.__anext__()
        await manager.stop()

    @pytest.mark.asyncio
    async def test_disconnect_through_asgi_kills_once(self):
        fake = FakeProcess()
        fake.stdout.feed_data(b"chunk-1")
        manager = TranscodeManager(ffmpeg_path="ffmpeg", max_concurrent=0, start_timeout=1.0)

        with spawn_returning(fake):
            response = await manager.open_transcode(SOURCE_URL)

        sent = []

        async def send(message):
            sent.append(message)

        async def receive():
            # Disconnect once the first body chunk is out
            while not any(m.get("body") for m in sent):
                await asyncio.sleep(0.01)
            return {"type": "http.disconnect"}

        scope = {"type": "http", "asgi": {"spec_version": "2.0"}}
        await asyncio.wait_for(response(scope, receive, send), timeout=5)

        fake.kill.assert_called_once()
        assert manager.active_count == 0
        await manager.stop()

    @pytest.mark.asyncio
    async def test_normal_end_releases_process(self):
        fake = FakeProcess()
        fake.stdout.feed_data(b"all of it")
        manager = TranscodeManager(ffmpeg_path="ffmpeg", max_concurrent=0, start_timeout=1.0)

        with spawn_returning(fake):
            response = await manager.open_transcode(SOURCE_URL)

        fake.exit(0)
        body = b""
        async for chunk in response.body_iterator:
            body += chunk
        await response.close()

        assert body == b"all of it"
        fake.kill.assert_not_called()
        assert manager.active_count == 0
        await manager.stop()

    @pytest.mark.asyncio
    async def test_failure_after_output_keeps_real_exit_code(self, caplog):
        fake = FakeProcess()
        fake.stdout.feed_data(b"FRAGMENTDATA")
        manager = TranscodeManager(ffmpeg_path="ffmpeg", max_concurrent=0, start_timeout=1.0)

        with spawn_returning(fake):
            response = await manager.open_transcode(SOURCE_URL)

        # stdout closes before the process has been reaped
        fake.stdout.feed_eof()
        fake.stderr.feed_eof()
        fake.pending_exit = 1

        with caplog.at_level(logging.INFO, logger="transcode_manager"):
            body = b""
            async for chunk in response.body_iterator:
                body += chunk
            await response.close()
            await manager.stop()

        assert body == b"FRAGMENTDATA"
        fake.kill.assert_not_called()
        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert any("exited with code 1 after 12 bytes" in r.getMessage() for r in errors)
        assert not any("exited with code 255" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_spawn_failure_is_500(self):
        manager = TranscodeManager(ffmpeg_path="/missing/ffmpeg", max_concurrent=0)

        with patch('transcode_manager.asyncio.create_subprocess_exec',
                   new=AsyncMock(side_effect=FileNotFoundError("/missing/ffmpeg"))):
            with pytest.raises(TranscodeStartError) as exc_info:
                await manager.open_transcode(SOURCE_URL)

        assert exc_info.value.status_code == 500
        assert manager.active_count == 0

    @pytest.mark.asyncio
    async def test_exit_before_output_is_502(self):
        fake = FakeProcess()
        fake.stderr.feed_data(b"Connection refused\n")
        fake.exit(1)
        manager = TranscodeManager(ffmpeg_path="ffmpeg", max_concurrent=0, start_timeout=1.0)

        with spawn_returning(fake):
            with pytest.raises(TranscodeStartError) as exc_info:
                await manager.open_transcode(SOURCE_URL)

        assert exc_info.value.status_code == 502
        fake.kill.assert_not_called()
        assert manager.active_count == 0
        await manager.stop()

    @pytest.mark.asyncio
    async def test_no_output_before_timeout_is_504(self):
        fake = FakeProcess()
        manager = TranscodeManager(ffmpeg_path="ffmpeg", max_concurrent=0, start_timeout=0.05)

        with spawn_returning(fake):
            with pytest.raises(TranscodeStartError) as exc_info:
                await manager.open_transcode(SOURCE_URL)

        assert exc_info.value.status_code == 504
        fake.kill.assert_called_once()
        assert manager.active_count == 0
        await manager.stop()

    @pytest.mark.asyncio
    async def test_admission_limit(self):
        first = FakeProcess(pid=1)
        first.stdout.feed_data(b"data")
        manager = TranscodeManager(ffmpeg_path="ffmpeg", max_concurrent=1, start_timeout=1.0)

        with spawn_returning(first):
            response = await manager.open_transcode(SOURCE_URL)

        with pytest.raises(TranscodeRejected):
            await manager.open_transcode(SOURCE_URL)

        await response.close()
        assert manager.active_count == 0
        await manager.stop()

    @pytest.mark.asyncio
    async def test_stop_kills_running_transcodes(self):
        fake = FakeProcess()
        fake.stdout.feed_data(b"data")
        manager = TranscodeManager(ffmpeg_path="ffmpeg", max_concurrent=0, start_timeout=1.0)

        with spawn_returning(fake):
            await manager.open_transcode(SOURCE_URL)

        await manager.stop()
        fake.kill.assert_called_once()
        assert manager.active_count == 0
