"""Prompt templates and facet vocabularies consumed by the prompt composer.

Each template is a *plain string* with ``{placeholders}`` filled by callers.
"""
from enum import Enum

# ── System prompt (first entry of every session log) ─────
SYSTEM_PROMPT = (
    "You are an imaginative storyteller. You always remember everything that came before "
    "and never apologize or mention missing context; just continue the story seamlessly."
)

# ── First-turn clauses ────────────────────────────────────
OPENING_DIRECTIVE = "Give the beginning of"
TONE_CLAUSE = "a {tone}"
DEFAULT_TONE_CLAUSE = "an entertaining"
GENRE_CLAUSE = "{genre} story"
DEFAULT_GENRE_CLAUSE = "story"
SUBJECT_CLAUSE = 'about "{subject}"'
THEME_CLAUSE = "with a theme of {theme}"

# ── Continuation ──────────────────────────────────────────
CONTINUE_PROMPT = 'Continue the story about "{subject}". Carry the plot forward smoothly.'

# ── Length / completeness (closes every instruction) ─────
LENGTH_DIRECTIVE = "Write under {word_limit} words in complete sentences"


class Genre(str, Enum):
    FANTASY = "fantasy"
    SCI_FI = "sci-fi"
    MYSTERY = "mystery"
    ROMANCE = "romance"
    HORROR = "horror"


class Tone(str, Enum):
    LIGHTHEARTED = "lighthearted"
    SERIOUS = "serious"
    DARK = "dark"
    HUMOROUS = "humorous"


class Theme(str, Enum):
    FRIENDSHIP = "friendship"
    ADVENTURE = "adventure"
    REVENGE = "revenge"
    COMING_OF_AGE = "coming-of-age"
    SURVIVAL = "survival"
