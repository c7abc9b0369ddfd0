"""
Call initiation helpers.

- Renders the TwiML document that points Twilio at our media WebSocket
- Places outbound calls through the Twilio REST API
"""

import asyncio
from pathlib import Path
from typing import Any, Optional

import structlog
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client as TwilioClient

from src.bridge.config import Config

logger = structlog.get_logger(__name__)

HOST_PLACEHOLDER = "{{PUBLIC_HOST}}"
OUTBOUND_RING_TIMEOUT_SECONDS = 15


class OutboundCallError(Exception):
    """Raised when an outbound call cannot be placed."""

    def __init__(self, message: str, status: int = 500):
        super().__init__(message)
        self.status = status


def render_stream_document(template_path: Path, public_host: str) -> str:
    """
    Fill the connection-instruction template with the public host.

    The template has a single substitution point; everything else is static.
    """
    template = template_path.read_text(encoding="utf-8")
    host = public_host.split("://", 1)[-1].strip("/")
    return template.replace(HOST_PLACEHOLDER, host)


def create_twilio_client(config: Config) -> Optional[TwilioClient]:
    if not config.twilio_enabled:
        return None
    return TwilioClient(config.twilio_account_sid, config.twilio_auth_token)


async def place_outbound_call(config: Config, to: str, client: Optional[Any] = None) -> str:
    """
    Dial `to` and point the call at our /twiml endpoint.

    Args:
        config: Application configuration
        to: Destination phone number
        client: Optional Twilio REST client (created from config if omitted)

    Returns:
        The Twilio call SID

    Raises:
        OutboundCallError: If the request is invalid, Twilio is not configured
            or the Twilio API rejects the call
    """
    to = (to or "").strip()
    if not to:
        raise OutboundCallError("'to' missing", status=400)

    client = client or create_twilio_client(config)
    if client is None:
        raise OutboundCallError("Twilio not configured", status=500)

    twiml_url = f"{config.base_url}/twiml"
    logger.info("Placing outbound call", to=to, twiml_url=twiml_url)

    def _create() -> Any:
        return client.calls.create(
            to=to,
            from_=config.twilio_phone_number,
            url=twiml_url,
            method="POST",
            timeout=OUTBOUND_RING_TIMEOUT_SECONDS,
        )

    try:
        call = await asyncio.to_thread(_create)
    except TwilioRestException as e:
        logger.error("Outbound call rejected", to=to, status=e.status, error=e.msg)
        raise OutboundCallError(str(e.msg), status=e.status or 500) from e

    logger.info("Outbound call created", to=to, call_sid=call.sid)
    return call.sid
