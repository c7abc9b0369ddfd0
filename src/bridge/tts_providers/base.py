from __future__ import annotations

from abc import ABC, abstractmethod


class SynthesisError(Exception):
    """Raised when a TTS provider fails to produce audio for an utterance."""


class TTSProvider(ABC):
    """
    Whole-utterance speech synthesis.

    Returns the encoded audio exactly as the vendor produced it; conversion to
    Twilio mu-law happens later in `src.bridge.audio`.
    """

    @abstractmethod
    async def synthesize(self, text: str) -> bytes:
        raise NotImplementedError

    async def close(self) -> None:
        return None
