"""Conversation session orchestration.

One ConversationSession per call:
inbound Twilio mu-law -> Deepgram (mulaw/8000) -> final transcript ->
debounce -> OpenAI streaming reply -> sentence fragments -> OpenAI TTS ->
ffmpeg mu-law -> chunked media frames -> Twilio outbound

Turn taking:
- A final transcript raises the interrupt flag, waits a short grace window so
  in-flight playback stops cleanly, records the user turn and (re)arms the
  debounce timer. Rapid utterances coalesce into one generation request.
- When the timer fires the flag is cleared and the reply streams in; every
  fragment crossing the sentence heuristic is queued for playback while
  generation continues.
- Every accepted utterance bumps the turn id. Work belonging to an older turn
  treats that as an interrupt at its next checkpoint.

All state here is owned by the session; nothing is shared between calls.
"""

import asyncio
import random
from contextlib import aclosing
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Set
import time

import structlog

from src.bridge.audio import TranscodingError, transcode_to_ulaw
from src.bridge.config import Config, get_config
from src.bridge.llm import ConversationHistory, ResponseGenerator, SentenceBuffer
from src.bridge.sender import ChunkedAudioSender
from src.bridge.stt import DeepgramSTT, TranscriptEvent
from src.bridge.tts_providers.base import TTSProvider
from src.bridge.tts_providers.openai_tts import OpenAITTS
from src.bridge.twilio_protocol import (
    TwilioEventType,
    TwilioMediaEvent,
    TwilioProtocolHandler,
    TwilioStartEvent,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


class TurnState(str, Enum):
    """Current turn-taking state of a session."""
    IDLE = "idle"
    LISTENING = "listening"
    DEBOUNCING = "debouncing"
    GENERATING = "generating"
    SPEAKING = "speaking"


Transcoder = Callable[[bytes], Awaitable[bytes]]


class ConversationSession:
    """
    Per-call orchestrator.

    Owns the conversation history, the turn state machine and the barge-in
    logic, and coordinates recognition, generation, synthesis and playback
    against the call's media stream.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        config: Optional[Config] = None,
        *,
        stt: Optional[Any] = None,
        llm: Optional[ResponseGenerator] = None,
        tts: Optional[TTSProvider] = None,
        transcoder: Optional[Transcoder] = None,
    ):
        """
        Initialize the session.

        Args:
            send_message: Async function to send WebSocket messages to Twilio
            config: Optional configuration (uses default if not provided)
            stt: Speech recognition adapter (Deepgram by default)
            llm: Response generator (OpenAI by default)
            tts: Speech synthesis provider (OpenAI by default)
            transcoder: Async audio -> mu-law converter (ffmpeg by default)
        """
        if config is None:
            config = get_config()

        self.config = config
        self._send_message = send_message

        self._protocol = TwilioProtocolHandler()
        self._stt = stt or DeepgramSTT(config)
        self._llm = llm or ResponseGenerator(config)
        self._tts = tts or OpenAITTS(config)
        self._transcode = transcoder or self._ffmpeg_transcode
        self._sender = ChunkedAudioSender(
            send_message,
            frame_size=config.outbound_frame_bytes,
            pace=config.outbound_pacing,
        )

        self.history = ConversationHistory(
            system_prompt=config.system_prompt,
            greeting=config.greeting,
            limit=config.conversation_history_limit,
        )

        self.active = True
        self._state = TurnState.IDLE
        self.interrupt_requested = False
        self._turn_id = 0
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._started_at = time.time()
        self._turns_completed = 0
        self._interruptions = 0

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def session_id(self) -> str:
        return self._protocol.stream_sid

    @property
    def call_sid(self) -> str:
        return self._protocol.call_sid

    @property
    def turn_id(self) -> int:
        return self._turn_id

    @property
    def has_pending_debounce(self) -> bool:
        return self._debounce_handle is not None

    async def _ffmpeg_transcode(self, audio_bytes: bytes) -> bytes:
        return await transcode_to_ulaw(audio_bytes, ffmpeg_path=self.config.ffmpeg_path)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Open the recognition connection. A failure closes the session."""
        self._stt.set_transcript_callback(self._on_transcript)
        self._stt.set_close_callback(self._on_recognition_lost)

        ok = await self._stt.connect()
        if not ok:
            logger.error("Speech recognition unavailable, closing session")
            await self.close(reason="recognition_unavailable")
            return False

        logger.info("Conversation session started")
        return True

    async def close(self, reason: str = "channel_closed") -> None:
        """
        Terminal transition. Idempotent.

        In-flight work is not cancelled; it observes `active` at its next
        checkpoint and stops emitting.
        """
        if not self.active:
            return

        self.active = False
        self._state = TurnState.IDLE
        self._cancel_debounce()

        try:
            await self._stt.finish()
        except Exception as e:
            logger.warning("Error finishing speech recognition", error=str(e))

        try:
            await self._tts.close()
        except Exception as e:
            logger.warning("Error closing TTS provider", error=str(e))

        try:
            await self._llm.close()
        except Exception as e:
            logger.warning("Error closing response generator", error=str(e))

        logger.info(
            "Conversation session closed",
            reason=reason,
            stream_sid=self.session_id,
            call_sid=self.call_sid,
            duration_seconds=round(time.time() - self._started_at, 2),
            turns=self._turns_completed,
            interruptions=self._interruptions,
            frames_sent=self._sender.frames_sent,
            pending_tasks=len(self._tasks),
        )

    async def wait_idle(self) -> None:
        """Wait for background greeting/generation/playback tasks to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Session task failed",
                task=task.get_name(),
                error_type=type(exc).__name__,
                error=str(exc),
            )

    # ------------------------------------------------------------------
    # Inbound protocol
    # ------------------------------------------------------------------

    async def handle_message(self, raw_message: str) -> None:
        """
        Handle an incoming WebSocket message from Twilio.

        Malformed or unknown events are logged and ignored.
        """
        if not self.active:
            return

        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            logger.warning("Ignoring malformed Twilio message", error=str(e))
            return

        if event_type == TwilioEventType.START:
            await self._handle_start(event)

        elif event_type == TwilioEventType.MEDIA:
            await self._handle_media(event)

        elif event_type == TwilioEventType.STOP:
            self._protocol.handle_stop()
            await self.close(reason="stream_stopped")

        elif event_type == TwilioEventType.DTMF:
            logger.info("DTMF received", digit=event.digit)

        else:
            logger.debug("Twilio event ignored", event_type=event_type.value)

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        """Idle -> Listening, then greet after the channel settles."""
        self._protocol.handle_start(event)

        if self._state != TurnState.IDLE:
            logger.warning("Duplicate start event ignored", stream_sid=self.session_id)
            return

        self._state = TurnState.LISTENING
        self._spawn(
            self._speak_after(self.config.greeting, self.config.greeting_delay_seconds, self._turn_id),
            name="greeting",
        )

    async def _handle_media(self, event: TwilioMediaEvent) -> None:
        """Feed inbound caller audio to recognition; other tracks are ignored."""
        if not event.is_inbound:
            return

        self._protocol.handle_media(event)
        await self._stt.send_audio(event.payload)

    async def _on_transcript(self, event: TranscriptEvent) -> None:
        if event.is_final and event.speech_final:
            await self.handle_transcript(event.text)

    async def _on_recognition_lost(self) -> None:
        await self.close(reason="recognition_lost")

    # ------------------------------------------------------------------
    # Turn taking
    # ------------------------------------------------------------------

    async def handle_transcript(self, text: str) -> bool:
        """
        Accept a final transcript.

        Returns:
            True if the utterance was accepted (Listening -> Debouncing)
        """
        if not self.active:
            return False

        cleaned = (text or "").strip()
        if len(cleaned) < self.config.min_transcript_chars:
            logger.debug("Ignoring empty or too short transcript", text=cleaned)
            return False

        previous_state = self._state
        self._turn_id += 1
        self.interrupt_requested = True
        self._state = TurnState.DEBOUNCING
        self._cancel_debounce()

        if previous_state in (TurnState.GENERATING, TurnState.SPEAKING):
            self._interruptions += 1
            logger.info("Barge-in", previous_state=previous_state.value, turn_id=self._turn_id)
            if self.config.barge_in_clear:
                clear_msg = self._protocol.create_clear()
                if clear_msg:
                    await self._send_message(clear_msg)

        logger.info("User input received", text=cleaned, turn_id=self._turn_id)

        await asyncio.sleep(self.config.interrupt_grace_seconds)
        if not self.active:
            return False

        self.history.add_user_message(cleaned)
        logger.debug("Conversation history updated", entries=len(self.history))

        self._cancel_debounce()
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(
            self.config.debounce_seconds,
            self._on_debounce_elapsed,
            self._turn_id,
        )
        return True

    def _cancel_debounce(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

    def _on_debounce_elapsed(self, turn_id: int) -> None:
        """Debouncing -> Generating."""
        self._debounce_handle = None
        if not self.active or turn_id != self._turn_id:
            return

        self.interrupt_requested = False
        self._state = TurnState.GENERATING
        self._spawn(self._generate_response(turn_id), name=f"generation-{turn_id}")

    def _abandoned(self, turn_id: int) -> bool:
        """Checkpoint: True once this turn's work must stop emitting."""
        return not self.active or self.interrupt_requested or turn_id != self._turn_id

    def _finish_turn(self, turn_id: int) -> None:
        if self.active and turn_id == self._turn_id:
            self._state = TurnState.LISTENING

    async def _generate_response(self, turn_id: int) -> None:
        """Stream a reply, speaking fragments as they become ready."""
        if self._abandoned(turn_id):
            return

        messages = self.history.get_messages()
        sentences = SentenceBuffer(
            terminators=self.config.sentence_terminators,
            min_chars=self.config.sentence_min_chars,
        )
        playback: asyncio.Queue = asyncio.Queue()
        player = self._spawn(self._playback_worker(playback, turn_id), name=f"playback-{turn_id}")

        reply = ""
        failed = False

        try:
            lead_in_ms = random.uniform(
                self.config.generation_lead_in_min_ms,
                self.config.generation_lead_in_max_ms,
            )
            if lead_in_ms > 0:
                await asyncio.sleep(lead_in_ms / 1000)

            async with aclosing(self._llm.stream(messages)) as tokens:
                async for token in tokens:
                    if self._abandoned(turn_id):
                        break
                    reply += token
                    fragment = sentences.push(token)
                    if fragment:
                        self._state = TurnState.SPEAKING
                        playback.put_nowait((fragment, self.config.fragment_delay_seconds))

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("GPT error", error_type=type(e).__name__, error=str(e), turn_id=turn_id)
            failed = True

        if not failed and not self._abandoned(turn_id):
            tail = sentences.flush()
            if tail:
                self._state = TurnState.SPEAKING
                playback.put_nowait((tail, 0.0))

        playback.put_nowait(None)
        await player

        if self._abandoned(turn_id):
            logger.info("Reply abandoned", turn_id=turn_id, generated_chars=len(reply))
            return

        if failed:
            await self.speak(self.config.apology, turn_id=turn_id, apologize=False)
        elif reply.strip():
            self.history.add_assistant_message(reply)
            self._turns_completed += 1
            logger.info("Assistant response generated", text=reply.strip(), turn_id=turn_id)

        self._finish_turn(turn_id)

    async def _playback_worker(self, queue: asyncio.Queue, turn_id: int) -> None:
        """Speak fragments of one reply in dispatch order."""
        while True:
            item = await queue.get()
            if item is None:
                return
            if self._abandoned(turn_id):
                continue
            text, delay = item
            await self._speak_after(text, delay, turn_id)

    async def _speak_after(self, text: str, delay: float, turn_id: int) -> bool:
        if delay > 0:
            await asyncio.sleep(delay)
        return await self.speak(text, turn_id=turn_id)

    # ------------------------------------------------------------------
    # Synthesis dispatch
    # ------------------------------------------------------------------

    async def speak(self, text: str, *, turn_id: Optional[int] = None, apologize: bool = True) -> bool:
        """
        Synthesize, transcode and send one utterance.

        The interrupt checkpoint is checked after synthesis, after transcoding
        and before every outbound frame.

        Returns:
            True if the utterance was sent in full
        """
        if not self.active or not text:
            return False
        if turn_id is None:
            turn_id = self._turn_id

        try:
            audio = await self._tts.synthesize(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("TTS error", error_type=type(e).__name__, error=str(e), turn_id=turn_id)
            if apologize and not self._abandoned(turn_id):
                return await self.speak(self.config.apology, turn_id=turn_id, apologize=False)
            return False

        if self._abandoned(turn_id):
            logger.info("TTS abort triggered, skipping audio send", turn_id=turn_id)
            return False

        try:
            ulaw = await self._transcode(audio)
        except TranscodingError as e:
            logger.error(
                "Transcoding failed, utterance dropped",
                error=str(e),
                returncode=e.returncode,
                stderr=e.stderr,
                turn_id=turn_id,
            )
            return False

        if self._abandoned(turn_id):
            logger.info("TTS abort triggered, skipping audio send", turn_id=turn_id)
            return False

        frames_total = self._sender.frame_count(ulaw)
        sent = await self._sender.send(
            self.session_id,
            ulaw,
            should_continue=lambda: not self._abandoned(turn_id),
        )
        if sent < frames_total:
            return False

        logger.info("Spoken", text=text, frames=sent, turn_id=turn_id)
        return True


async def create_session(
    send_message: Callable[[str], Awaitable[None]],
    config: Optional[Config] = None,
    **components: Any,
) -> ConversationSession:
    """
    Create and start a conversation session.

    Args:
        send_message: Async function to send WebSocket messages
        config: Optional configuration
        **components: Collaborator overrides passed to ConversationSession

    Returns:
        Started session (inactive if speech recognition could not connect)
    """
    session = ConversationSession(send_message, config, **components)
    await session.start()
    return session
