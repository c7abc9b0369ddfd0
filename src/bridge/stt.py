"""
Deepgram Speech-to-Text streaming client.

One live connection per call:
- Accepts mu-law 8kHz directly from Twilio (no conversion needed)
- Interim results are off; silence-based endpointing closes each utterance
- Only results flagged both `is_final` and `speech_final` reach the session
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.bridge.audio import TWILIO_CHANNELS, TWILIO_SAMPLE_RATE
from src.bridge.config import get_config

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"
CLOSE_STREAM_MESSAGE = json.dumps({"type": "CloseStream"})


@dataclass
class TranscriptEvent:
    """Final transcript forwarded to the conversation session."""
    text: str
    is_final: bool
    speech_final: bool = False
    confidence: float = 0.0
    timestamp: float = field(default_factory=time.time)


def build_listen_url(config: Any) -> str:
    """Build the Deepgram live transcription URL for the configured call audio."""
    params = {
        "model": config.deepgram_model,
        "language": config.deepgram_language,
        "endpointing": config.deepgram_endpointing_ms,
        "interim_results": "false",
        "encoding": "mulaw",
        "sample_rate": TWILIO_SAMPLE_RATE,
        "channels": TWILIO_CHANNELS,
    }
    return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"


class DeepgramSTT:
    """
    Deepgram streaming STT client using raw WebSocket.

    `finish()` must be called when the call ends to release the upstream
    connection. If Deepgram closes the connection on its own, the close
    callback is awaited so the session can treat it as fatal.
    """

    def __init__(self, config: Optional[Any] = None):
        if config is None:
            config = get_config()

        self.config = config
        self._on_transcript: Optional[Callable[[TranscriptEvent], Awaitable[None]]] = None
        self._on_close: Optional[Callable[[], Awaitable[None]]] = None
        self._ws = None
        self._is_connected = False
        self._finishing = False
        self._receive_task: Optional[asyncio.Task] = None
        self._audio_bytes_sent = 0

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    def set_transcript_callback(
        self,
        callback: Callable[[TranscriptEvent], Awaitable[None]],
    ) -> None:
        self._on_transcript = callback

    def set_close_callback(self, callback: Callable[[], Awaitable[None]]) -> None:
        self._on_close = callback

    async def connect(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        url = build_listen_url(self.config)

        try:
            self._ws = await websockets.connect(
                url,
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            return False

        self._is_connected = True
        self._finishing = False
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info(
            "Deepgram STT connected",
            model=self.config.deepgram_model,
            language=self.config.deepgram_language,
        )
        return True

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Send audio data to Deepgram."""
        if not self._is_connected or not self._ws or not audio_bytes:
            return

        try:
            await self._ws.send(audio_bytes)
            self._audio_bytes_sent += len(audio_bytes)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def finish(self) -> None:
        """Flush the stream and close the Deepgram connection."""
        self._finishing = True
        was_connected = self._is_connected
        self._is_connected = False

        if self._ws and was_connected:
            try:
                await self._ws.send(CLOSE_STREAM_MESSAGE)
            except Exception as e:
                logger.debug("CloseStream not delivered", error=str(e))

        task = self._receive_task
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._receive_task = None

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info(
            "Deepgram STT finished",
            audio_seconds=round(self._audio_bytes_sent / TWILIO_SAMPLE_RATE, 2),
        )

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except (TypeError, json.JSONDecodeError):
                    logger.warning("Invalid JSON from Deepgram")
                    continue
                await self._handle_message(data)

        except websockets.exceptions.ConnectionClosed as e:
            logger.info("Deepgram connection closed", code=getattr(e, "code", None))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
        finally:
            self._is_connected = False

        if not self._finishing and self._on_close:
            logger.warning("Deepgram connection lost")
            await self._on_close()

    async def _handle_message(self, data: dict) -> None:
        """Handle a message from Deepgram."""
        msg_type = data.get("type", "")
        msg_type_norm = msg_type.lower() if isinstance(msg_type, str) else ""

        if msg_type_norm == "results":
            if not (data.get("is_final") and data.get("speech_final")):
                return

            alternatives = (data.get("channel") or {}).get("alternatives") or []
            if not alternatives:
                return

            transcript = alternatives[0].get("transcript", "")
            if not transcript:
                return

            event = TranscriptEvent(
                text=transcript,
                is_final=True,
                speech_final=True,
                confidence=alternatives[0].get("confidence", 0.0),
            )

            logger.info("Deepgram transcript", text=transcript)

            if self._on_transcript:
                await self._on_transcript(event)

        elif msg_type_norm == "error":
            logger.error(
                "Deepgram error",
                error=data.get("message") or data.get("description", "Unknown"),
                details=data,
            )
