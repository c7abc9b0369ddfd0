"""
Audio conversion utilities for the Twilio voice bridge.

Twilio Media Streams play 8kHz mono mu-law. Synthesized speech arrives in
whatever container the TTS vendor returns (mp3 by default), so every utterance
goes through ffmpeg once before it is chunked into outbound media frames.

Inbound caller audio is already mu-law 8kHz and is passed to Deepgram untouched.
"""

import asyncio
from typing import Generator, Optional

import structlog

logger = structlog.get_logger(__name__)

TWILIO_SAMPLE_RATE = 8000
TWILIO_CHANNELS = 1
OUTBOUND_FRAME_SIZE = 4000  # 500ms of mu-law at 8kHz

FFMPEG_ULAW_ARGS = (
    "-hide_banner",
    "-loglevel", "error",
    "-i", "pipe:0",
    "-ar", str(TWILIO_SAMPLE_RATE),
    "-ac", str(TWILIO_CHANNELS),
    "-f", "mulaw",
    "pipe:1",
)


class TranscodingError(Exception):
    """Raised when synthesized audio cannot be converted to Twilio mu-law."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


async def transcode_to_ulaw(audio_bytes: bytes, *, ffmpeg_path: str = "ffmpeg") -> bytes:
    """
    Convert an arbitrary encoded audio buffer to 8kHz mono mu-law.

    The whole buffer is piped through a single ffmpeg process. Output is only
    returned when ffmpeg exits cleanly, so callers never send partial audio.

    Args:
        audio_bytes: Encoded audio (mp3, wav, ...) as returned by the TTS service
        ffmpeg_path: ffmpeg executable

    Returns:
        Raw mu-law bytes at 8kHz

    Raises:
        TranscodingError: If ffmpeg cannot be started or exits non-zero
    """
    if not audio_bytes:
        return b""

    try:
        process = await asyncio.create_subprocess_exec(
            ffmpeg_path,
            *FFMPEG_ULAW_ARGS,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise TranscodingError(f"Failed to start ffmpeg: {e}") from e

    stdout, stderr = await process.communicate(audio_bytes)

    if process.returncode != 0:
        stderr_text = (stderr or b"").decode("utf-8", errors="replace").strip()
        raise TranscodingError(
            f"FFmpeg error {process.returncode}",
            returncode=process.returncode,
            stderr=stderr_text[-500:],
        )

    return stdout


def chunk_audio(audio_bytes: bytes, chunk_size: int = OUTBOUND_FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    The last frame keeps its natural length; concatenating the frames in order
    gives back the input exactly.

    Args:
        audio_bytes: Raw audio bytes
        chunk_size: Size of each chunk in bytes

    Yields:
        Audio chunks of at most `chunk_size` bytes
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    for i in range(0, len(audio_bytes), chunk_size):
        yield audio_bytes[i:i + chunk_size]


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE) -> float:
    """
    Calculate the playback duration of mu-law audio in milliseconds.

    Args:
        audio_bytes: Mu-law audio bytes (one byte per sample)
        sample_rate: Sample rate in Hz

    Returns:
        Duration in milliseconds
    """
    if not audio_bytes:
        return 0.0

    duration_seconds = len(audio_bytes) / sample_rate

    return duration_seconds * 1000
