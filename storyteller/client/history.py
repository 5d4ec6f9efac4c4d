"""Client-side mirror of the story: what is on screen, and what undo goes back to."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional

from storyteller.nlg.prompt_composer import PromptRequest
from storyteller.utils.errors import RequestInFlight

IDLE = "idle"
AWAITING_RESPONSE = "awaiting-response"


@dataclass(frozen=True)
class ClientSnapshot:
    """Displayed story/image and the request that produced them.

    Undo hands back the request behind the restored screen, so Regenerate
    after Undo reproduces that turn rather than the one undone.
    """
    story: str
    image: str
    request: Optional[PromptRequest] = None


@dataclass(frozen=True)
class DisplayState:
    story: str = ""
    image: str = ""
    request: Optional[PromptRequest] = None
    can_undo: bool = False
    can_regenerate: bool = False
    busy: bool = False


class ClientHistoryStack:
    """LIFO of snapshots plus the currently displayed turn.

    Snapshots are taken right before a new turn overwrites the screen, and
    only when there is something on screen to go back to.
    """

    def __init__(self) -> None:
        self.story = ""
        self.image = ""
        self.last_request: Optional[PromptRequest] = None
        self._snapshots: List[ClientSnapshot] = []
        self._in_flight = threading.Lock()

    # ── request state machine ─────────────────────────────
    @property
    def state(self) -> str:
        return AWAITING_RESPONSE if self._in_flight.locked() else IDLE

    @contextmanager
    def request_cycle(self) -> Iterator[None]:
        """idle → awaiting-response → idle.  Overlapping actions are rejected."""
        if not self._in_flight.acquire(blocking=False):
            raise RequestInFlight("A request is already awaiting a response.")
        try:
            yield
        finally:
            self._in_flight.release()

    # ── snapshots ─────────────────────────────────────────
    @property
    def snapshots(self) -> List[ClientSnapshot]:
        return list(self._snapshots)

    def push_snapshot(self) -> Optional[ClientSnapshot]:
        if not (self.story or self.image):
            return None
        snapshot = ClientSnapshot(self.story, self.image, self.last_request)
        self._snapshots.append(snapshot)
        return snapshot

    def drop_snapshot(self, snapshot: ClientSnapshot) -> None:
        """Forget a snapshot whose turn never reached the server log."""
        if self._snapshots and self._snapshots[-1] is snapshot:
            self._snapshots.pop()

    def restore_latest(self) -> Optional[ClientSnapshot]:
        if not self._snapshots:
            return None
        snapshot = self._snapshots.pop()
        self.story = snapshot.story
        self.image = snapshot.image
        self.last_request = snapshot.request
        return snapshot

    # ── display ───────────────────────────────────────────
    def show(self, story: str, image: str = "") -> None:
        self.story = story
        self.image = image

    def clear(self) -> None:
        self.story = ""
        self.image = ""
        self.last_request = None
        self._snapshots = []

    @property
    def display(self) -> DisplayState:
        return DisplayState(
            story=self.story,
            image=self.image,
            request=self.last_request,
            can_undo=bool(self._snapshots),
            can_regenerate=self.last_request is not None,
            busy=self.state == AWAITING_RESPONSE,
        )
