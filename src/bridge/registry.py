"""
Call registry.

Tracks the live conversation sessions of this process, keyed by a call id
assigned when the media WebSocket is accepted.
"""

import itertools
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from src.bridge.config import Config
from src.bridge.session import ConversationSession, create_session

logger = structlog.get_logger(__name__)


class CallRegistry:
    """Creates sessions for new media connections and tears them down on disconnect."""

    def __init__(self):
        self._sessions: Dict[str, ConversationSession] = {}
        self._counter = itertools.count(1)
        self.total_sessions = 0

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._sessions

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def get(self, call_id: str) -> Optional[ConversationSession]:
        return self._sessions.get(call_id)

    def new_call_id(self) -> str:
        return f"call_{int(time.time() * 1000)}_{next(self._counter)}"

    async def open(
        self,
        call_id: str,
        send_message: Callable[[str], Awaitable[None]],
        config: Optional[Config] = None,
        **components: Any,
    ) -> ConversationSession:
        """Create, start and register a session for one media connection."""
        if call_id in self._sessions:
            raise ValueError(f"Call already registered: {call_id}")

        session = await create_session(send_message, config, **components)
        self._sessions[call_id] = session
        self.total_sessions += 1
        logger.info(
            "Session registered",
            call_id=call_id,
            active=session.active,
            active_calls=len(self._sessions),
        )
        return session

    async def close(self, call_id: str, reason: str = "channel_closed") -> None:
        """Close and forget a session. Unknown ids are ignored."""
        session = self._sessions.pop(call_id, None)
        if session is None:
            return

        await session.close(reason=reason)
        logger.info("Session unregistered", call_id=call_id, active_calls=len(self._sessions))

    async def close_all(self, reason: str = "shutdown") -> None:
        for call_id in list(self._sessions):
            await self.close(call_id, reason=reason)
