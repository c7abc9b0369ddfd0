"""
Tests for response generation, history and sentence buffering.
"""

from contextlib import aclosing
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from src.bridge.config import get_config
from src.bridge.llm import (
    ConversationHistory,
    ResponseGenerator,
    SentenceBuffer,
    validate_openai_model,
)


def make_history(limit=4):
    return ConversationHistory(system_prompt="sys", greeting="hello", limit=limit)


class TestConversationHistory:
    """Tests for the rolling history window."""

    def test_starts_with_scaffold(self):
        history = make_history()

        assert history.get_messages() == [
            {"role": "system", "content": "sys"},
            {"role": "assistant", "content": "hello"},
        ]
        assert len(history) == 2
        assert history.scaffold_retained == 2

    def test_reply_drops_two_oldest_entries(self):
        history = make_history()
        history.add_user_message("u1")
        history.add_assistant_message("a1")

        assert [t.content for t in history.turns] == ["u1", "a1"]
        assert history.scaffold_retained == 0

    def test_scaffold_always_leads_messages(self):
        history = make_history()
        history.add_user_message("u1")
        history.add_assistant_message("a1")
        history.add_user_message("u2")

        messages = history.get_messages()
        assert [m["content"] for m in messages] == ["sys", "hello", "u1", "a1", "u2"]

    def test_user_messages_truncate_to_limit(self):
        history = make_history()
        for text in ("u1", "u2", "u3"):
            history.add_user_message(text)

        assert len(history) == 4
        assert [t.content for t in history.turns] == ["hello", "u1", "u2", "u3"]
        assert history.scaffold_retained == 1
        # The dropped system prompt is re-derived, the greeting is not duplicated.
        assert [m["content"] for m in history.get_messages()] == ["sys", "hello", "u1", "u2", "u3"]

    def test_length_bounded_over_long_conversation(self):
        history = make_history()
        for i in range(20):
            history.add_user_message(f"u{i}")
            assert len(history) <= history.limit
            history.add_assistant_message(f"a{i}")
            assert len(history) <= history.limit

            messages = history.get_messages()
            assert messages[0] == {"role": "system", "content": "sys"}
            assert messages[1] == {"role": "assistant", "content": "hello"}

        assert history.turns[-1].content == "a19"

    def test_reply_with_only_scaffold_keeps_scaffold(self):
        history = make_history()
        history.add_assistant_message("a0")

        assert [t.content for t in history.turns] == ["sys", "hello", "a0"]


class TestSentenceBuffer:
    """Tests for the fragment release heuristic."""

    def test_releases_after_terminator_past_threshold(self):
        buffer = SentenceBuffer(min_chars=60)
        tokens = [
            "Bonjour, je suis ravie de vous aider ",
            "avec votre demande de rendez-vous. ",
            "Quel",
        ]

        assert buffer.push(tokens[0]) is None
        fragment = buffer.push(tokens[1])
        assert fragment == "Bonjour, je suis ravie de vous aider avec votre demande de rendez-vous."
        assert buffer.pending == ""
        assert buffer.push(tokens[2]) is None
        assert buffer.pending == "Quel"

    def test_short_sentence_held_back(self):
        buffer = SentenceBuffer(min_chars=60)

        assert buffer.push("Oui. ") is None
        assert buffer.push("Bien sûr.") is None
        assert buffer.flush() == "Oui. Bien sûr."

    def test_long_text_without_terminator_held_back(self):
        buffer = SentenceBuffer(min_chars=10)

        assert buffer.push("a" * 50) is None

    def test_terminator_anywhere_in_buffer_counts(self):
        buffer = SentenceBuffer(min_chars=10)

        buffer.push("Ok. ")
        assert buffer.push("et ensuite nous verrons") == "Ok. et ensuite nous verrons"

    def test_flush_whitespace_returns_none(self):
        buffer = SentenceBuffer()
        buffer.push("   ")

        assert buffer.flush() is None
        assert buffer.pending == ""


class FakeCompletionStream:
    """Async-iterable stand-in for an OpenAI streaming response."""

    def __init__(self, contents):
        self._contents = contents
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for content in self._contents:
            if content is None:
                yield SimpleNamespace(choices=[])
            else:
                yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])

    async def close(self):
        self.closed = True


def make_client(stream):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=stream)
    return client


class TestResponseGenerator:
    """Tests for streaming generation."""

    @pytest.mark.asyncio
    async def test_stream_yields_tokens_in_order(self):
        stream = FakeCompletionStream(["Bon", None, "jour", "", " !"])
        generator = ResponseGenerator(get_config(), client=make_client(stream))

        tokens = [token async for token in generator.stream([{"role": "user", "content": "salut"}])]

        assert tokens == ["Bon", "jour", " !"]
        assert stream.closed is True

    @pytest.mark.asyncio
    async def test_request_uses_configured_sampling(self):
        stream = FakeCompletionStream([])
        client = make_client(stream)
        generator = ResponseGenerator(get_config(), client=client)
        messages = [{"role": "system", "content": "sys"}]

        async for _ in generator.stream(messages):
            pass

        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["temperature"] == 0.7
        assert kwargs["top_p"] == 0.85
        assert kwargs["frequency_penalty"] == 0.2
        assert kwargs["presence_penalty"] == 0.4
        assert kwargs["max_tokens"] == 200
        assert kwargs["messages"] == messages
        assert kwargs["stream"] is True

    @pytest.mark.asyncio
    async def test_early_exit_closes_upstream(self):
        stream = FakeCompletionStream(["un", "deux", "trois"])
        generator = ResponseGenerator(get_config(), client=make_client(stream))

        received = []
        async with aclosing(generator.stream([])) as tokens:
            async for token in tokens:
                received.append(token)
                break

        assert received == ["un"]
        assert stream.closed is True

    @pytest.mark.asyncio
    async def test_close_releases_client(self):
        client = make_client(FakeCompletionStream([]))
        client.close = AsyncMock()
        generator = ResponseGenerator(get_config(), client=client)

        await generator.close()

        client.close.assert_awaited_once()


class TestModelValidation:
    """Tests for startup model validation."""

    @pytest.mark.asyncio
    async def test_known_model_passes(self):
        response = httpx.Response(200, json={"data": [{"id": "gpt-4o"}, {"id": "tts-1-hd"}]})

        with patch("src.bridge.llm.httpx.AsyncClient") as client_cls:
            client_cls.return_value.__aenter__.return_value.get = AsyncMock(return_value=response)
            assert await validate_openai_model("key", "gpt-4o") is True

    @pytest.mark.asyncio
    async def test_unknown_model_exits(self):
        response = httpx.Response(200, json={"data": [{"id": "gpt-4o-mini"}]})

        with patch("src.bridge.llm.httpx.AsyncClient") as client_cls:
            client_cls.return_value.__aenter__.return_value.get = AsyncMock(return_value=response)
            with pytest.raises(SystemExit):
                await validate_openai_model("key", "gpt-4o")

    @pytest.mark.asyncio
    async def test_unauthorized_key_exits(self):
        response = httpx.Response(401, json={"error": {"message": "bad key"}})

        with patch("src.bridge.llm.httpx.AsyncClient") as client_cls:
            client_cls.return_value.__aenter__.return_value.get = AsyncMock(return_value=response)
            with pytest.raises(SystemExit):
                await validate_openai_model("key", "gpt-4o")
