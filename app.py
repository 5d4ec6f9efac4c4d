"""Infinite Story Generator – Gradio story console.

Layout (gr.Blocks):
  Top row:     New Story
  Facets:      genre / tone / theme dropdowns
  Body:        illustration  +  story text (grows while the turn streams in)
  Bottom:      prompt box  +  Continue / Undo / Regenerate
"""
from __future__ import annotations

import os
import sys
import logging
from typing import Iterator, Optional

import gradio as gr

# Ensure project root is on the path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import settings
from storyteller.client.history import DisplayState
from storyteller.client.story_client import StoryClient
from storyteller.nlg.prompt_composer import PromptRequest
from storyteller.nlg.prompt_templates import Genre, Theme, Tone
from storyteller.utils.errors import StoryError

logger = logging.getLogger(__name__)


# ── Helpers ──────────────────────────────────────────────────────────────

def _get_client(client: Optional[StoryClient]) -> StoryClient:
    # one client (and so one server session) per browser session
    return client if client is not None else StoryClient()


def _render(client: StoryClient, display: Optional[DisplayState] = None):
    display = display or client.display
    story = f"{display.story} . . ." if display.story else ""
    return (
        client,
        display.image or None,
        story,
        gr.update(interactive=display.can_undo and not display.busy),
        gr.update(interactive=display.can_regenerate and not display.busy),
    )


def _warn(exc: StoryError) -> None:
    logger.warning("Story action failed: %s", exc)
    gr.Warning(str(exc))


# ── Callbacks ────────────────────────────────────────────────────────────

def continue_story(
    prompt: str,
    genre: Optional[str],
    tone: Optional[str],
    theme: Optional[str],
    client: Optional[StoryClient],
) -> Iterator[tuple]:
    client = _get_client(client)
    try:
        request = PromptRequest(prompt=prompt or "", genre=genre, tone=tone, theme=theme)
        for display in client.iter_continue(request):
            yield _render(client, display)
    except StoryError as exc:
        _warn(exc)
    except ValueError as exc:  # unknown facet value
        _warn(StoryError(str(exc)))
    yield _render(client)


def regenerate_story(client: Optional[StoryClient]) -> Iterator[tuple]:
    client = _get_client(client)
    try:
        for display in client.iter_regenerate():
            yield _render(client, display)
    except StoryError as exc:
        _warn(exc)
    yield _render(client)


def undo_story(client: Optional[StoryClient]) -> tuple:
    client = _get_client(client)
    try:
        client.undo()
    except StoryError as exc:
        _warn(exc)
    return _render(client)


def new_story(client: Optional[StoryClient]) -> tuple:
    client = _get_client(client)
    try:
        client.reset()
    except StoryError as exc:
        _warn(exc)
        return _render(client) + (gr.update(), gr.update(), gr.update(), gr.update())
    # facets and prompt box are cleared only after the server reset
    return _render(client) + (None, None, None, "")


# ── UI Layout ────────────────────────────────────────────────────────────

def build_ui() -> gr.Blocks:
    with gr.Blocks(
        title="Infinite Story Generator",
        theme=gr.themes.Soft(primary_hue="indigo", secondary_hue="blue"),
    ) as demo:
        gr.Markdown("# Infinite Story Generator\n*Pick a style, give a prompt, and keep the story going.*")
        client_state = gr.State(None)

        with gr.Row():
            new_btn = gr.Button("New Story", variant="secondary")

        with gr.Row():
            genre = gr.Dropdown([g.value for g in Genre], label="Genre", value=None)
            tone = gr.Dropdown([t.value for t in Tone], label="Tone", value=None)
            theme = gr.Dropdown([t.value for t in Theme], label="Theme", value=None)

        image = gr.Image(label="Illustration", interactive=False, height=420)
        story = gr.Markdown("")

        prompt = gr.Textbox(placeholder="Type your next prompt here...", label="Prompt", lines=3)
        with gr.Row():
            continue_btn = gr.Button("Continue →", variant="primary")
            undo_btn = gr.Button("Undo", interactive=False)
            regen_btn = gr.Button("Regenerate", interactive=False)

        outputs = [client_state, image, story, undo_btn, regen_btn]

        # ── Wiring ──
        continue_btn.click(
            fn=continue_story,
            inputs=[prompt, genre, tone, theme, client_state],
            outputs=outputs,
        )
        undo_btn.click(fn=undo_story, inputs=client_state, outputs=outputs)
        regen_btn.click(fn=regenerate_story, inputs=client_state, outputs=outputs)
        new_btn.click(
            fn=new_story,
            inputs=client_state,
            outputs=outputs + [genre, tone, theme, prompt],
        )

    return demo


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    demo = build_ui()
    demo.launch(server_name="0.0.0.0", server_port=settings.GRADIO_PORT, share=False)
