"""
Twilio Media Streams WebSocket Protocol Handler.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid and callSid
- media: Audio data as base64 mu-law 8kHz, labelled with its track
- mark: Playback marker acknowledgment
- dtmf: DTMF tone detected
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- clear: Clear buffered audio (for interruption)
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import msgspec
import structlog

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()

INBOUND_TRACK = "inbound"


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str
    tracks: List[str]
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        """Parse from Twilio message."""
        start = message.get("start") or {}
        return cls(
            stream_sid=message.get("streamSid") or start.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=start.get("tracks", []),
            custom_parameters=start.get("customParameters", {}),
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @property
    def is_inbound(self) -> bool:
        return self.track == INBOUND_TRACK

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        """
        Parse from Twilio message.

        Raises:
            ValueError: If the media block or its payload is malformed
        """
        media = message.get("media")
        if not isinstance(media, dict):
            raise ValueError("Media event without media block")

        try:
            payload = base64.b64decode(media.get("payload", ""), validate=True)
        except (binascii.Error, TypeError) as e:
            raise ValueError(f"Invalid media payload: {e}")

        try:
            chunk = int(media.get("chunk", 0))
        except (TypeError, ValueError):
            chunk = 0

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", ""),
            chunk=chunk,
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class TwilioDTMFEvent:
    """Parsed Twilio DTMF event."""
    stream_sid: str
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioDTMFEvent":
        """Parse from Twilio message."""
        dtmf = message.get("dtmf") or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            digit=dtmf.get("digit", ""),
        )


@dataclass
class CallState:
    """Telephony-side identifiers of an active call."""
    stream_sid: str = ""
    call_sid: str = ""
    account_sid: str = ""


def parse_twilio_message(raw_message: str) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON string from Twilio

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Invalid message: expected a JSON object")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    elif event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    elif event_type == TwilioEventType.DTMF:
        return event_type, TwilioDTMFEvent.from_message(message)
    else:
        return event_type, message


def create_media_message(
    stream_sid: str,
    audio_payload: bytes,
) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        audio_payload: Raw mu-law audio bytes

    Returns:
        JSON string to send to Twilio
    """
    payload_b64 = base64.b64encode(audio_payload).decode("utf-8")

    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "payload": payload_b64
        }
    }

    return encoder.encode(message).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    """
    Create a Twilio clear message.

    This clears any buffered audio on Twilio's side, used for interruption.
    """
    message = {
        "event": "clear",
        "streamSid": stream_sid
    }

    return encoder.encode(message).decode("utf-8")


class TwilioProtocolHandler:
    """
    High-level handler for Twilio WebSocket protocol.

    Tracks the identifiers Twilio assigns to the call. The stream SID stays
    unset until the first inbound frame declares it.
    """

    def __init__(self):
        self.call_state: Optional[CallState] = None

    @property
    def stream_sid(self) -> str:
        """Get the current stream SID."""
        return self.call_state.stream_sid if self.call_state else ""

    @property
    def call_sid(self) -> str:
        """Get the current call SID."""
        return self.call_state.call_sid if self.call_state else ""

    def handle_start(self, event: TwilioStartEvent) -> None:
        """Handle a start event and initialize call state."""
        previous_sid = self.stream_sid
        self.call_state = CallState(
            stream_sid=event.stream_sid or previous_sid,
            call_sid=event.call_sid,
            account_sid=event.account_sid,
        )
        logger.info(
            "Call started",
            stream_sid=self.call_state.stream_sid,
            call_sid=event.call_sid,
        )

    def handle_media(self, event: TwilioMediaEvent) -> None:
        """Bind the stream SID from the first inbound media frame if still unset."""
        if not event.stream_sid or self.stream_sid:
            return
        if self.call_state is None:
            self.call_state = CallState()
        self.call_state.stream_sid = event.stream_sid
        logger.info("Stream bound from media", stream_sid=event.stream_sid)

    def handle_stop(self) -> None:
        """Handle a stop event."""
        if self.call_state:
            logger.info(
                "Call stopped",
                stream_sid=self.call_state.stream_sid,
                call_sid=self.call_state.call_sid,
            )

    def create_clear(self) -> str:
        """
        Create a clear message to flush buffered audio.

        Returns:
            JSON message to send, or "" when no stream is bound yet
        """
        if not self.stream_sid:
            return ""

        logger.info("Clearing Twilio audio buffer", stream_sid=self.stream_sid)
        return create_clear_message(self.stream_sid)
