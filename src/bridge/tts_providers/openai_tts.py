from __future__ import annotations

import time
from typing import Any, Optional

import structlog
from openai import AsyncOpenAI

from src.bridge.config import get_config
from src.bridge.tts_providers.base import SynthesisError, TTSProvider

logger = structlog.get_logger(__name__)


class OpenAITTS(TTSProvider):
    """
    OpenAI Text-to-Speech provider (non-streaming).

    The audio speech endpoint may stream internally, but the whole utterance
    is collected before it is returned.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[Any] = None):
        self.config = config or get_config()
        self._client = client or AsyncOpenAI(api_key=self.config.openai_api_key)

    async def synthesize(self, text: str) -> bytes:
        if not text or not text.strip():
            return b""

        started = time.time()
        try:
            resp = await self._client.audio.speech.create(
                model=self.config.openai_tts_model,
                voice=self.config.openai_tts_voice,
                input=text,
            )
        except Exception as e:
            raise SynthesisError(f"OpenAI TTS failed: {e}") from e

        # SDKs have varied over time; handle several shapes.
        data = getattr(resp, "content", None)
        if not isinstance(data, (bytes, bytearray)):
            read = getattr(resp, "aread", None) or getattr(resp, "read", None)
            if not callable(read):
                raise SynthesisError(f"Unexpected TTS response type: {type(resp).__name__}")
            data = read()
            if hasattr(data, "__await__"):
                data = await data

        audio = bytes(data)
        logger.debug(
            "OpenAI TTS synthesized",
            characters=len(text),
            audio_bytes=len(audio),
            total_ms=round((time.time() - started) * 1000, 1),
        )
        return audio

    async def close(self) -> None:
        await self._client.close()
