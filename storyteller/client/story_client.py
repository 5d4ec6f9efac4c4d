"""HTTP client for the story server: Continue, Undo, Regenerate, New.

Every action goes through the history stack's request cycle, so a second
action while one is awaiting a response raises ``RequestInFlight``.  The
screen always mirrors the server's last exchange: when a turn never reaches
the server log, the previous screen comes back.  When the server has
expired the session, local history is dropped and ``SessionExpired`` raised.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, Optional

import httpx

from config import settings
from storyteller.client.history import ClientHistoryStack, ClientSnapshot, DisplayState
from storyteller.nlg.prompt_composer import PromptRequest, sanitize_prompt
from storyteller.streaming.relay import NDJSON_MEDIA_TYPE, StreamReassembler, parse_record
from storyteller.utils.errors import (
    GENERIC_STORY_ERROR,
    SESSION_EXPIRED_ERROR,
    GenerationFailed,
    InternalStateError,
    InvalidInput,
    SessionExpired,
    StoryError,
)

logger = logging.getLogger(__name__)


class StoryClient:
    """One story, one server session."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        http: Optional[httpx.Client] = None,
        stream: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._http = http or httpx.Client(
            base_url=base_url or settings.API_BASE_URL,
            timeout=timeout or settings.CLIENT_TIMEOUT_SECONDS,
        )
        self.stream = settings.STREAM_RESPONSES if stream is None else stream
        self.history = ClientHistoryStack()
        self.session_id: Optional[str] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def display(self) -> DisplayState:
        return self.history.display

    def iter_continue(self, request: PromptRequest) -> Iterator[DisplayState]:
        """Submit a new turn; yield the screen after every applied record."""
        if not sanitize_prompt(request.prompt):
            raise InvalidInput("Prompt is empty.")
        with self.history.request_cycle():
            previous_request = self.history.last_request
            previous_story, previous_image = self.history.story, self.history.image
            snapshot = self.history.push_snapshot()
            self.history.last_request = request
            try:
                yield from self._generate(request)
            except SessionExpired:
                raise
            except StoryError as exc:
                if getattr(exc, "story", None) is not None:
                    self.history.show(exc.story)
                else:
                    self._forget(snapshot)
                    self.history.show(previous_story, previous_image)
                    self.history.last_request = previous_request
                raise

    def continue_story(self, request: PromptRequest) -> DisplayState:
        return self._drain(self.iter_continue(request))

    def iter_regenerate(self) -> Iterator[DisplayState]:
        """Drop the server's last exchange and resubmit the remembered request.

        Not idempotent: the text and image come from a fresh generation.
        """
        request = self.history.last_request
        if request is None:
            raise InvalidInput("Nothing to regenerate.")
        with self.history.request_cycle():
            self._post("/undo", "Error occurred undoing story.")
            try:
                yield from self._generate(request)
            except SessionExpired:
                raise
            except StoryError as exc:
                if getattr(exc, "story", None) is not None:
                    self.history.show(exc.story)
                elif self.history.restore_latest() is None:
                    # the regenerated turn was the first one
                    self.history.show("", "")
                raise

    def regenerate(self) -> DisplayState:
        return self._drain(self.iter_regenerate())

    def undo(self) -> DisplayState:
        """Restore the previous screen once the server has dropped its last exchange."""
        if not self.history.snapshots:
            return self.display
        with self.history.request_cycle():
            self._post("/undo", "Error occurred undoing story.")
            self.history.restore_latest()
        return self.display

    def reset(self) -> DisplayState:
        """Start over.  Local state is cleared only after the server acknowledged."""
        with self.history.request_cycle():
            self._post("/new", "Error occurred resetting story.")
            self.history.clear()
        return self.display

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _drain(updates: Iterator[DisplayState]) -> DisplayState:
        state = None
        for state in updates:
            pass
        return state

    def _forget(self, snapshot: Optional[ClientSnapshot]) -> None:
        if snapshot is not None:
            self.history.drop_snapshot(snapshot)

    def _headers(self) -> Dict[str, str]:
        return {settings.SESSION_HEADER: self.session_id} if self.session_id else {}

    def _remember_session(self, response: httpx.Response) -> None:
        session_id = response.headers.get(settings.SESSION_HEADER)
        if session_id and session_id != self.session_id:
            logger.debug("Story session is now %s", session_id)
            self.session_id = session_id
        if response.status_code == 410:
            # the screen and snapshots describe a log the server no longer has
            logger.warning("Story session expired on the server; clearing local history")
            self.history.clear()
            raise SessionExpired(SESSION_EXPIRED_ERROR)

    def _post(self, path: str, failure_message: str) -> httpx.Response:
        try:
            response = self._http.post(path, headers=self._headers())
        except httpx.HTTPError as exc:
            raise StoryError(f"{failure_message} ({exc})") from exc
        self._remember_session(response)
        if response.status_code != 200:
            raise StoryError(self._error_body(response).get("error") or failure_message)
        return response

    @staticmethod
    def _error_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _story_error(self, response: httpx.Response) -> StoryError:
        body = self._error_body(response)
        message = body.get("error") or GENERIC_STORY_ERROR
        if response.status_code == 400:
            return InvalidInput(message)
        return GenerationFailed(message, code=body.get("code"), story=body.get("story"))

    def _generate(self, request: PromptRequest) -> Iterator[DisplayState]:
        try:
            if self.stream:
                yield from self._generate_streaming(request)
            else:
                yield self._generate_atomic(request)
        except httpx.HTTPError as exc:
            logger.error("Story request failed: %s", exc)
            raise GenerationFailed(f"Could not reach the story server ({exc}).") from exc

    def _generate_streaming(self, request: PromptRequest) -> Iterator[DisplayState]:
        with self._http.stream(
            "POST",
            "/story",
            json=request.payload(),
            params={"stream": "true"},
            headers={**self._headers(), "Accept": NDJSON_MEDIA_TYPE},
        ) as response:
            self._remember_session(response)
            if response.status_code != 200:
                response.read()
                raise self._story_error(response)
            reassembler = StreamReassembler()
            for chunk in response.iter_bytes():
                if reassembler.feed(chunk):
                    self.history.show(reassembler.text, reassembler.image or "")
                    yield self.display
            if reassembler.close():
                self.history.show(reassembler.text, reassembler.image or "")
                yield self.display

    def _generate_atomic(self, request: PromptRequest) -> DisplayState:
        response = self._http.post(
            "/story",
            json=request.payload(),
            params={"stream": "false"},
            headers=self._headers(),
        )
        self._remember_session(response)
        if response.status_code != 200:
            raise self._story_error(response)
        try:
            story_obj, image_obj = response.json()
        except (ValueError, TypeError) as exc:
            raise InternalStateError(f"Unexpected story response: {response.text[:80]!r}") from exc
        story_record, image_record = parse_record(story_obj), parse_record(image_obj)
        if story_record.story is None or image_record.image is None:
            raise InternalStateError("Story response must be [{story}, {image}].")
        self.history.show(story_record.story, image_record.image)
        return self.display
