"""Encoder invocation.

The encoder is a capability: an ``EncoderCommand`` turns an ``EncodeRequest``
into an argument list, and an ``EncoderRunner`` executes it. Swapping ffmpeg
for another encoder only needs another command builder.
"""

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from vodpipeline.core.logging import log_info
from vodpipeline.core.metrics import RENDITION_ENCODE_SECONDS
from vodpipeline.modules.transcoding.abr import Rendition
from vodpipeline.modules.transcoding.playlist import MEDIA_PLAYLIST_NAME, SEGMENT_PATTERN

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 2000


class TranscodeError(Exception):
    """Base exception for transcode errors."""


class EncodeFailure(TranscodeError):
    """The encoder did not produce a rendition."""

    def __init__(self, rendition: str, exit_reason: str):
        self.rendition = rendition
        self.exit_reason = exit_reason
        super().__init__(f"Encoding {rendition} failed: {exit_reason}")


class IncompleteOutputError(EncodeFailure):
    """The encoder exited cleanly but its output is missing or truncated."""


@dataclass
class EncodeRequest:
    """Everything needed to encode one rendition."""

    source_path: Path
    rendition: Rendition
    output_dir: Path

    @property
    def playlist_path(self) -> Path:
        return self.output_dir / MEDIA_PLAYLIST_NAME


class EncoderCommand(Protocol):
    """Builds the command line for one rendition encode."""

    def build_args(self, request: EncodeRequest) -> list[str]:
        ...


class EncoderRunner(Protocol):
    """Runs one rendition encode, raising ``EncodeFailure`` on failure."""

    async def run(self, request: EncodeRequest) -> None:
        ...


class FFmpegHLSEncoder:
    """Builds ffmpeg command lines producing a VOD HLS rendition."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        video_codec: str = "libx264",
        preset: str = "veryfast",
    ):
        """Initialize encoder.

        Args:
            ffmpeg_path: Path to ffmpeg binary
            video_codec: ffmpeg video encoder name (libx264, h264_nvenc, ...)
            preset: Encoder preset
        """
        self.ffmpeg_path = ffmpeg_path
        self.video_codec = video_codec
        self.preset = preset

    def build_args(self, request: EncodeRequest) -> list[str]:
        """Build FFmpeg command for one rendition.

        Args:
            request: Encode request

        Returns:
            FFmpeg command as list of arguments
        """
        rendition = request.rendition
        width, height = rendition.width, rendition.height

        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostats",
            "-loglevel", "error",
            "-y",  # Overwrite output
            "-i", str(request.source_path),
            "-map", "0:v:0",
            "-map", "0:a:0?",
            # Video settings
            "-c:v", self.video_codec,
            "-preset", self.preset,
            "-b:v", str(rendition.video_bitrate),
            "-maxrate", str(rendition.max_bitrate),
            "-bufsize", str(rendition.buffer_size),
            "-vf", f"scale={width}:{height}:force_original_aspect_ratio=decrease,pad={width}:{height}:(ow-iw)/2:(oh-ih)/2",
            # keyframes on segment boundaries
            "-force_key_frames", f"expr:gte(t,n_forced*{rendition.segment_duration})",
            # Audio settings
            "-c:a", "aac",
            "-b:a", str(rendition.audio_bitrate),
            "-ac", "2",
            # Output format
            "-f", "hls",
            "-hls_time", str(rendition.segment_duration),
            "-hls_list_size", "0",
            "-hls_playlist_type", "vod",
            "-hls_segment_filename", str(request.output_dir / SEGMENT_PATTERN),
            str(request.playlist_path),
        ]


class SubprocessEncoderRunner:
    """Runs an encoder command as a child process without blocking the loop."""

    def __init__(self, command: EncoderCommand, timeout: Optional[float] = None):
        self.command = command
        self.timeout = timeout

    async def run(self, request: EncodeRequest) -> None:
        rendition = request.rendition.name
        args = self.command.build_args(request)
        request.output_dir.mkdir(parents=True, exist_ok=True)

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EncodeFailure(rendition, f"encoder could not be started: {e}") from e

        start = time.perf_counter()
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            await _terminate(process)
            raise EncodeFailure(rendition, f"timed out after {self.timeout}s") from e
        except asyncio.CancelledError:
            await _terminate(process)
            raise

        elapsed = time.perf_counter() - start
        RENDITION_ENCODE_SECONDS.labels(rendition=rendition).observe(elapsed)

        if process.returncode != 0:
            tail = stderr.decode(errors="replace").strip()[-_STDERR_TAIL_CHARS:]
            reason = f"exit code {process.returncode}"
            if tail:
                reason = f"{reason}: {tail}"
            raise EncodeFailure(rendition, reason)

        log_info(
            logger,
            "Rendition encoded",
            rendition=rendition,
            duration_s=round(elapsed, 2),
        )


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        with suppress(ProcessLookupError):
            process.kill()
        await process.wait()
