"""Ordered, role-tagged conversation log.

The log keeps one system turn followed by *exchanges*.  An exchange is a user
turn plus the assistant turn it produced and is added, completed and removed as
one unit, so undo never has to guess which entries belong together.  Flattened,
the log is exactly the message list handed to the text-completion capability.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional
from uuid import uuid4

from storyteller.nlg.prompt_templates import SYSTEM_PROMPT
from storyteller.utils.errors import InternalStateError, InvalidInput

logger = logging.getLogger(__name__)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    """One role-tagged message."""
    role: Role
    content: str

    def to_message(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass
class Exchange:
    """A user turn and (once generated) its assistant turn."""
    user: Turn
    assistant: Optional[Turn] = None
    exchange_id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def pending(self) -> bool:
        return self.assistant is None

    def turns(self) -> List[Turn]:
        return [self.user] if self.assistant is None else [self.user, self.assistant]


class TurnLog:
    """System turn + exchanges.  ``len(log)`` counts turns, not exchanges."""

    def __init__(self, system_prompt: str = SYSTEM_PROMPT) -> None:
        self._system = Turn(Role.SYSTEM, system_prompt)
        self._exchanges: List[Exchange] = []

    # ── read side ─────────────────────────────────────────
    @property
    def system_turn(self) -> Turn:
        return self._system

    @property
    def turns(self) -> List[Turn]:
        out = [self._system]
        for ex in self._exchanges:
            out.extend(ex.turns())
        return out

    @property
    def exchanges(self) -> List[Exchange]:
        return list(self._exchanges)

    @property
    def is_first_turn(self) -> bool:
        """True while only the system turn is present."""
        return len(self) == 1

    @property
    def pending_exchange(self) -> Optional[Exchange]:
        if self._exchanges and self._exchanges[-1].pending:
            return self._exchanges[-1]
        return None

    def messages(self) -> List[Dict[str, str]]:
        return [t.to_message() for t in self.turns]

    def __len__(self) -> int:
        return 1 + sum(len(ex.turns()) for ex in self._exchanges)

    # ── mutations ─────────────────────────────────────────
    def append_user(self, content: str) -> str:
        """Open a new exchange.  Returns its id."""
        if not content or not content.strip():
            raise InvalidInput("Prompt is empty.")
        if self.pending_exchange is not None:
            raise InternalStateError("Previous exchange is still awaiting its assistant turn.")
        exchange = Exchange(user=Turn(Role.USER, content))
        self._exchanges.append(exchange)
        return exchange.exchange_id

    def append_assistant(self, content: str, exchange_id: Optional[str] = None) -> None:
        """Complete the pending exchange."""
        pending = self.pending_exchange
        if pending is None:
            raise InternalStateError("No user turn is awaiting an assistant turn.")
        if exchange_id is not None and pending.exchange_id != exchange_id:
            raise InternalStateError(f"Exchange {exchange_id} is not the pending exchange.")
        pending.assistant = Turn(Role.ASSISTANT, content)

    def discard(self, exchange_id: str) -> bool:
        """Drop a pending exchange (text generation never completed)."""
        pending = self.pending_exchange
        if pending is None or pending.exchange_id != exchange_id:
            return False
        self._exchanges.pop()
        logger.debug("Discarded pending exchange %s", exchange_id)
        return True

    def undo_last_turn(self) -> Optional[Exchange]:
        """Remove the most recent exchange, complete or not.

        A no-op on a log holding only the system turn.  Not idempotent: a
        second call removes the exchange before it.
        """
        if not self._exchanges:
            return None
        return self._exchanges.pop()

    def reset(self) -> None:
        """Back to the single system turn; prior context is gone for good."""
        self._exchanges = []
