"""Per-session conversation state and the turn pipeline.

Pipeline per story request:
1. Compose the instruction (first-turn or continuation phrasing)
2. Append it as the user turn
3. Text completion over the whole log (atomic or streamed)
4. Append the assistant turn
5. Illustrate the committed text
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, Optional
from uuid import uuid4

from config import settings
from storyteller.engine.turn_log import TurnLog
from storyteller.nlg.gateway import GenerationGateway
from storyteller.nlg.prompt_composer import PromptRequest, compose
from storyteller.streaming.relay import StreamRecord
from storyteller.utils.errors import GenerationFailed

logger = logging.getLogger(__name__)


@dataclass
class TurnResult:
    """Container returned after an atomic turn."""
    story: str
    image: str

    def as_records(self) -> list:
        return [{"story": self.story}, {"image": self.image}]


@dataclass
class Session:
    session_id: str
    log: TurnLog = field(default_factory=TurnLog)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_seen: float = 0.0


class SessionStore:
    """Session id → Session, created on first use, expired after inactivity."""

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = settings.SESSION_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, Session] = {}

    def get_or_create(self, session_id: Optional[str] = None) -> Session:
        self.purge_expired()
        now = self._clock()
        session = self._sessions.get(session_id) if session_id else None
        if session is None:
            session = Session(session_id=uuid4().hex)
            self._sessions[session.session_id] = session
            logger.info("Created session %s", session.session_id)
        session.last_seen = now
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def purge_expired(self) -> int:
        if self.ttl_seconds <= 0:
            return 0
        cutoff = self._clock() - self.ttl_seconds
        stale = [
            sid for sid, s in self._sessions.items()
            if s.last_seen < cutoff and not s.lock.locked()
        ]
        for sid in stale:
            del self._sessions[sid]
            logger.debug("Expired session %s", sid)
        return len(stale)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions


class SessionController:
    """Coordinates compose → append → generate → append → illustrate."""

    def __init__(
        self,
        gateway: Optional[GenerationGateway] = None,
        store: Optional[SessionStore] = None,
        word_limit: Optional[int] = None,
    ) -> None:
        self.gateway = gateway if gateway is not None else GenerationGateway()
        self.store = store if store is not None else SessionStore()
        self.word_limit = word_limit or settings.STORY_WORD_LIMIT

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_turn(self, session: Session, request: PromptRequest) -> TurnResult:
        """Atomic mode: the whole turn, text and image, in one result."""
        async with session.lock:
            exchange_id = self._open_exchange(session, request)
            try:
                story = await self.gateway.write_story(session.log.messages())
            except GenerationFailed:
                session.log.discard(exchange_id)
                raise
            session.log.append_assistant(story, exchange_id)
            image = await self._illustrate(session, story)
            return TurnResult(story=story, image=image)

    async def stream_turn(self, session: Session, request: PromptRequest) -> AsyncIterator[StreamRecord]:
        """Streaming mode: ``story`` records as text arrives, then one ``image``.

        The exchange is discarded unless the text completes; once the
        assistant turn is committed nothing retracts it.
        """
        async with session.lock:
            exchange_id = self._open_exchange(session, request)
            parts = []
            committed = False
            try:
                async for fragment in self.gateway.stream_story(session.log.messages()):
                    parts.append(fragment)
                    yield StreamRecord(story=fragment)
                story = "".join(parts)
                session.log.append_assistant(story, exchange_id)
                committed = True
            finally:
                if not committed:
                    session.log.discard(exchange_id)
            yield StreamRecord(image=await self._illustrate(session, story))

    def undo(self, session: Session) -> bool:
        """Drop the most recent exchange.  False when there was nothing to undo."""
        removed = session.log.undo_last_turn()
        logger.info(
            "Session %s undo: %s (log length %d)",
            session.session_id, "removed exchange" if removed else "nothing to undo", len(session.log),
        )
        return removed is not None

    def reset(self, session: Session) -> None:
        session.log.reset()
        logger.info("Session %s reset", session.session_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _open_exchange(self, session: Session, request: PromptRequest) -> str:
        instruction = compose(
            request.prompt, request, session.log.is_first_turn, word_limit=self.word_limit
        )
        exchange_id = session.log.append_user(instruction)
        logger.debug(
            "Session %s: user turn %s (%d chars), log length %d",
            session.session_id, exchange_id, len(instruction), len(session.log),
        )
        return exchange_id

    async def _illustrate(self, session: Session, story: str) -> str:
        try:
            return await self.gateway.illustrate(story)
        except GenerationFailed as exc:
            # the text turn stays committed
            logger.warning("Session %s: illustration failed (%s); text kept", session.session_id, exc.code)
            raise GenerationFailed(exc.message, code=exc.code, story=story) from exc
