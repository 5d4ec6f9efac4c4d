"""Shared fakes: an in-memory stand-in for the OpenAI wrapper and app wiring."""
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parent.parent))

from storyteller.engine.session import SessionController, SessionStore
from storyteller.nlg.gateway import GenerationGateway
from storyteller.server import create_app
from storyteller.utils.errors import GenerationFailed

IMAGE_URL = "https://images.test/turn.png"


class FakeLLM:
    """Mimics ``LLMClient``: every completion is "Chapter <n> continues."."""

    def __init__(self):
        self.completions = 0
        self.messages = []          # copy of the log sent with each completion
        self.image_prompts = []
        self.text_error = None      # raised by the next completion
        self.fail_after = None      # fragments streamed before text_error fires
        self.image_error = None
        self.on_image = None        # hook called before the image is returned

    def _fragments(self):
        self.completions += 1
        return [f"Chapter {self.completions}", " continues."]

    async def chat(self, messages, **kwargs):
        self.messages.append([dict(m) for m in messages])
        if self.text_error is not None:
            raise self.text_error
        return "".join(self._fragments())

    async def chat_stream(self, messages, **kwargs):
        self.messages.append([dict(m) for m in messages])
        fragments = self._fragments()
        for i, fragment in enumerate(fragments):
            if self.text_error is not None and i == (self.fail_after or 0):
                raise self.text_error
            yield fragment

    async def generate_image(self, prompt, size=None):
        self.image_prompts.append(prompt)
        if self.on_image is not None:
            self.on_image()
        if self.image_error is not None:
            raise self.image_error
        return IMAGE_URL


@pytest.fixture
def fake_llm():
    return FakeLLM()


def _controller(fake_llm, store):
    return SessionController(
        gateway=GenerationGateway(fake_llm, max_tokens=250, stop=["<<END>>"], image_prefix="Draw: "),
        store=store,
        word_limit=200,
    )


@pytest.fixture
def controller(fake_llm):
    return _controller(fake_llm, SessionStore(ttl_seconds=0))


@pytest.fixture
def clock():
    """Mutable monotonic time: bump ``clock[0]`` to age every session."""
    return [0.0]


@pytest.fixture
def expiring_api(fake_llm, clock):
    """App whose sessions expire after 60 s of ``clock`` time."""
    store = SessionStore(ttl_seconds=60, clock=lambda: clock[0])
    with TestClient(create_app(_controller(fake_llm, store))) as client:
        yield client


@pytest.fixture
def api(controller):
    with TestClient(create_app(controller)) as client:
        yield client


def content_policy_error():
    return GenerationFailed("Image generation failed: rejected", code="content_policy_violation")
