"""Turn a client request into the instruction string stored as a user turn."""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from storyteller.nlg.prompt_templates import (
    CONTINUE_PROMPT,
    DEFAULT_GENRE_CLAUSE,
    DEFAULT_TONE_CLAUSE,
    GENRE_CLAUSE,
    LENGTH_DIRECTIVE,
    OPENING_DIRECTIVE,
    SUBJECT_CLAUSE,
    THEME_CLAUSE,
    TONE_CLAUSE,
    Genre,
    Theme,
    Tone,
)
from storyteller.utils.errors import InvalidInput

_TAG_RE = re.compile(r"<[^>]*>?")


def sanitize_prompt(prompt: Optional[str]) -> str:
    """Trim and strip HTML tags."""
    return _TAG_RE.sub("", (prompt or "").strip()).strip()


class PromptRequest(BaseModel):
    """Client-supplied free text plus optional style facets.

    Only the composed instruction reaches the log, so the client keeps this
    object around to regenerate a turn.
    """

    model_config = ConfigDict(frozen=True)

    prompt: str = ""
    genre: Optional[Genre] = None
    tone: Optional[Tone] = None
    theme: Optional[Theme] = None

    @field_validator("genre", "tone", "theme", mode="before")
    @classmethod
    def _blank_is_absent(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def payload(self) -> Dict[str, str]:
        """JSON body for ``POST /story`` (absent facets omitted)."""
        return self.model_dump(mode="json", exclude_none=True)


def parse_request(body: Optional[Dict[str, Any]]) -> PromptRequest:
    """Validate an inbound body.  Raises ``InvalidInput`` with no side effects."""
    try:
        request = PromptRequest.model_validate(body or {})
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "body"
        raise InvalidInput(f"Invalid {field}: {first.get('msg', 'bad value')}") from exc
    if not sanitize_prompt(request.prompt):
        raise InvalidInput("Prompt is empty.")
    return request


def compose(
    free_text: str,
    request: Optional[PromptRequest] = None,
    is_first_turn: bool = True,
    word_limit: int = 200,
) -> str:
    """Build the instruction for one turn.

    First turn: opening directive, tone (or a generic default), genre (or a
    plain "story"), the quoted subject and an optional theme, closed with the
    length directive.  Later turns use a fixed continuation cue that still
    quotes ``free_text`` so the user can steer the plot.
    """
    subject = sanitize_prompt(free_text)
    length = LENGTH_DIRECTIVE.format(word_limit=word_limit) + "."

    if not is_first_turn:
        return f"{CONTINUE_PROMPT.format(subject=subject)} {length}"

    facets = request or PromptRequest()
    clauses: List[Optional[str]] = [
        OPENING_DIRECTIVE,
        TONE_CLAUSE.format(tone=facets.tone.value) if facets.tone else DEFAULT_TONE_CLAUSE,
        GENRE_CLAUSE.format(genre=facets.genre.value) if facets.genre else DEFAULT_GENRE_CLAUSE,
        SUBJECT_CLAUSE.format(subject=subject),
        THEME_CLAUSE.format(theme=facets.theme.value) if facets.theme else None,
    ]
    return " ".join(c for c in clauses if c) + ". " + length
