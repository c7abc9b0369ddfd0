"""
Chunked outbound audio sender.

Slices a transcoded mu-law buffer into fixed-size frames and emits one Twilio
`media` message per frame, in order. Every frame is preceded by a continue
check so barge-in and hang-up stop playback between frames, never inside one.

Sending is best-effort against the WebSocket's own flow control. Real-time
pacing (sleeping each frame's playback duration) is opt-in.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from src.bridge.audio import OUTBOUND_FRAME_SIZE, chunk_audio, get_audio_duration_ms
from src.bridge.twilio_protocol import create_media_message

logger = structlog.get_logger(__name__)


class ChunkedAudioSender:
    """Sends mu-law audio to Twilio as a sequence of media frames."""

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        *,
        frame_size: int = OUTBOUND_FRAME_SIZE,
        pace: bool = False,
    ):
        if frame_size < 1:
            raise ValueError(f"frame_size must be positive, got {frame_size}")

        self._send_message = send_message
        self.frame_size = frame_size
        self.pace = pace
        self.frames_sent = 0

    def frame_count(self, audio_bytes: bytes) -> int:
        """Number of frames `audio_bytes` will be split into."""
        return -(-len(audio_bytes) // self.frame_size)

    async def send(
        self,
        stream_sid: str,
        audio_bytes: bytes,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> int:
        """
        Send an utterance as media frames.

        Args:
            stream_sid: Twilio stream SID to address the frames to
            audio_bytes: Raw mu-law 8kHz audio
            should_continue: Checked before each frame; returning False stops playback

        Returns:
            Number of frames sent for this utterance
        """
        sent = 0
        total = self.frame_count(audio_bytes)

        for frame in chunk_audio(audio_bytes, self.frame_size):
            if should_continue is not None and not should_continue():
                logger.info(
                    "Playback abandoned",
                    stream_sid=stream_sid,
                    frames_sent=sent,
                    frames_total=total,
                )
                break

            await self._send_message(create_media_message(stream_sid, frame))
            sent += 1
            self.frames_sent += 1

            if self.pace:
                await asyncio.sleep(get_audio_duration_ms(frame) / 1000)

        return sent
