"""
OpenAI chat completion wrapper for spoken replies.

Provides:
- Startup model validation
- Streaming response generation with early cancellation
- Rolling conversation history with a fixed opening scaffold
- Sentence-boundary buffering so speech can start before generation ends
"""

from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Dict, List, Optional
import time

import httpx
import structlog
from openai import AsyncOpenAI

from src.bridge.config import get_config

logger = structlog.get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"


@dataclass
class ConversationTurn:
    """A single entry in the conversation."""
    role: str  # "system", "assistant" or "user"
    content: str
    timestamp: float = field(default_factory=time.time)


class ConversationHistory:
    """
    Rolling conversation history.

    The history starts with the opening scaffold (system prompt + greeting).
    Entries only ever leave from the head, so the scaffold is dropped from the
    rolling window like any other entry but is re-derived in front of every
    generation request by `get_messages()`.

    Trimming policy lives in `_trim_after_user` and `_trim_before_reply`;
    subclass to substitute another bounded strategy.
    """

    SCAFFOLD_SIZE = 2

    def __init__(self, system_prompt: str, greeting: str, limit: int = 4):
        self.limit = limit
        self._scaffold = (
            ConversationTurn(role="system", content=system_prompt),
            ConversationTurn(role="assistant", content=greeting),
        )
        self._turns: List[ConversationTurn] = list(self._scaffold)
        self._dropped = 0

    def add_user_message(self, content: str) -> None:
        """Add a user message and truncate to the most recent `limit` entries."""
        self._turns.append(ConversationTurn(role="user", content=content))
        self._trim_after_user()

    def add_assistant_message(self, content: str) -> None:
        """Add a completed assistant reply."""
        self._trim_before_reply()
        self._turns.append(ConversationTurn(role="assistant", content=content))

    def _drop_oldest(self, count: int) -> None:
        if count <= 0:
            return
        count = min(count, len(self._turns))
        del self._turns[:count]
        self._dropped += count

    def _trim_after_user(self) -> None:
        self._drop_oldest(len(self._turns) - self.limit)

    def _trim_before_reply(self) -> None:
        if len(self._turns) > self.SCAFFOLD_SIZE:
            self._drop_oldest(self.SCAFFOLD_SIZE)

    @property
    def scaffold_retained(self) -> int:
        """Number of scaffold entries still at the head of the rolling window."""
        return max(0, self.SCAFFOLD_SIZE - self._dropped)

    @property
    def turns(self) -> List[ConversationTurn]:
        """The rolling window, oldest first."""
        return list(self._turns)

    def get_messages(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI format, always led by the full scaffold."""
        rolling = self._turns[self.scaffold_retained:]
        return [
            {"role": turn.role, "content": turn.content}
            for turn in (*self._scaffold, *rolling)
        ]

    def __len__(self) -> int:
        return len(self._turns)


class SentenceBuffer:
    """
    Accumulates generated tokens until a speakable fragment is ready.

    A fragment is released once the buffer contains a terminator character
    and is longer than `min_chars`. This is a heuristic, not real sentence
    segmentation: abbreviations with periods count as terminators too.
    """

    def __init__(self, terminators: str = ".!?", min_chars: int = 60):
        self.terminators = frozenset(terminators)
        self.min_chars = min_chars
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def push(self, token: str) -> Optional[str]:
        """Append a token; return the trimmed fragment when one is ready."""
        self._buffer += token
        if len(self._buffer) > self.min_chars and any(ch in self.terminators for ch in self._buffer):
            fragment = self._buffer.strip()
            self._buffer = ""
            return fragment or None
        return None

    def flush(self) -> Optional[str]:
        """Return whatever is left (trimmed), or None if only whitespace remains."""
        fragment = self._buffer.strip()
        self._buffer = ""
        return fragment or None


async def validate_openai_model(api_key: str, model_name: str) -> bool:
    """
    Validate that the configured OpenAI model is available to this key.

    Args:
        api_key: OpenAI API key
        model_name: Model name to validate

    Returns:
        True if model exists

    Raises:
        SystemExit: If model doesn't exist or the API can't be reached (fail fast)
    """
    logger.info("Validating OpenAI model", model=model_name)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{OPENAI_BASE_URL}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to OpenAI API", error=str(e))
            raise SystemExit(
                f"Failed to connect to OpenAI API: {e}\n"
                "Check your network connection and OPENAI_API_KEY."
            )

    if response.status_code != 200:
        logger.error(
            "Failed to fetch OpenAI models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise SystemExit(
            f"Failed to validate OpenAI model. API returned status {response.status_code}. "
            "Check your OPENAI_API_KEY."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        available = ", ".join(sorted(m for m in model_ids if m)[:10])
        logger.error(
            "OpenAI model not found",
            requested_model=model_name,
            available_models=available,
        )
        raise SystemExit(
            f"OPENAI_MODEL '{model_name}' not found in available models.\n"
            f"Available models include: {available}\n"
            "Please update OPENAI_MODEL in your .env file."
        )

    logger.info("OpenAI model validated successfully", model=model_name)
    return True


class ResponseGenerator:
    """
    Streaming reply generator.

    `stream()` is an async generator: closing it early (e.g. leaving an
    `aclosing()` block after a barge-in) closes the upstream HTTP stream
    without raising.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[Any] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.openai_model
        self._client = client or AsyncOpenAI(api_key=config.openai_api_key)

    async def stream(self, messages: List[Dict[str, str]]) -> AsyncGenerator[str, None]:
        """
        Generate a streaming response.

        Args:
            messages: Full message history in OpenAI format

        Yields:
            Text tokens in stream order
        """
        started = time.time()
        first_token_ms: Optional[float] = None
        tokens = 0

        stream = await self._client.chat.completions.create(
            model=self.model,
            temperature=self.config.openai_temperature,
            top_p=self.config.openai_top_p,
            frequency_penalty=self.config.openai_frequency_penalty,
            presence_penalty=self.config.openai_presence_penalty,
            max_tokens=self.config.openai_max_tokens,
            messages=messages,
            stream=True,
        )

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                text = chunk.choices[0].delta.content
                if not text:
                    continue
                if first_token_ms is None:
                    first_token_ms = (time.time() - started) * 1000
                tokens += 1
                yield text
        finally:
            await stream.close()
            logger.debug(
                "LLM stream closed",
                model=self.model,
                tokens=tokens,
                first_token_ms=round(first_token_ms, 1) if first_token_ms is not None else None,
                total_ms=round((time.time() - started) * 1000, 1),
            )

    async def close(self) -> None:
        """Release the HTTP connection pool of the OpenAI client."""
        await self._client.close()
