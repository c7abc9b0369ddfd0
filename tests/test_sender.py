"""
Tests for chunked outbound audio.
"""

import base64
import json
from unittest.mock import AsyncMock, patch

import pytest

from src.bridge.sender import ChunkedAudioSender


def payloads(send_message):
    messages = [json.loads(c.args[0]) for c in send_message.await_args_list]
    return [base64.b64decode(m["media"]["payload"]) for m in messages]


class TestChunkedAudioSender:
    """Tests for ChunkedAudioSender."""

    @pytest.mark.asyncio
    async def test_frames_reassemble_to_input(self):
        send_message = AsyncMock()
        sender = ChunkedAudioSender(send_message)
        audio = bytes(range(256)) * 40

        sent = await sender.send("MZ123", audio)

        assert sent == 3
        frames = payloads(send_message)
        assert [len(f) for f in frames] == [4000, 4000, 2240]
        assert b"".join(frames) == audio
        assert sender.frames_sent == 3

    @pytest.mark.asyncio
    async def test_frames_addressed_to_stream(self):
        send_message = AsyncMock()
        sender = ChunkedAudioSender(send_message, frame_size=160)

        await sender.send("MZabc", b"\xff" * 320)

        for c in send_message.await_args_list:
            message = json.loads(c.args[0])
            assert message["event"] == "media"
            assert message["streamSid"] == "MZabc"

    @pytest.mark.asyncio
    async def test_stops_when_continue_check_fails(self):
        send_message = AsyncMock()
        sender = ChunkedAudioSender(send_message, frame_size=100)
        allowed = iter([True, True, False, True])

        sent = await sender.send("MZ123", b"\xff" * 1000, should_continue=lambda: next(allowed))

        assert sent == 2
        assert send_message.await_count == 2

    @pytest.mark.asyncio
    async def test_nothing_sent_when_interrupted_up_front(self):
        send_message = AsyncMock()
        sender = ChunkedAudioSender(send_message)

        sent = await sender.send("MZ123", b"\xff" * 100, should_continue=lambda: False)

        assert sent == 0
        send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_audio_sends_nothing(self):
        send_message = AsyncMock()
        sender = ChunkedAudioSender(send_message)

        assert await sender.send("MZ123", b"") == 0
        send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pacing_sleeps_frame_duration(self):
        send_message = AsyncMock()
        sender = ChunkedAudioSender(send_message, pace=True)

        with patch("src.bridge.sender.asyncio.sleep", new=AsyncMock()) as sleep:
            await sender.send("MZ123", b"\xff" * 6000)

        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 0.25]

    @pytest.mark.asyncio
    async def test_no_pacing_by_default(self):
        sender = ChunkedAudioSender(AsyncMock())

        with patch("src.bridge.sender.asyncio.sleep", new=AsyncMock()) as sleep:
            await sender.send("MZ123", b"\xff" * 6000)

        sleep.assert_not_awaited()

    def test_frame_count(self):
        sender = ChunkedAudioSender(AsyncMock(), frame_size=4000)

        assert sender.frame_count(b"") == 0
        assert sender.frame_count(b"\xff" * 4000) == 1
        assert sender.frame_count(b"\xff" * 4001) == 2

    def test_invalid_frame_size(self):
        with pytest.raises(ValueError):
            ChunkedAudioSender(AsyncMock(), frame_size=0)
