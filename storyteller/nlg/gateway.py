"""Generation gateway: text completion over the whole log, then one illustration.

Thin async wrappers around the shared ``llm_client`` singleton.  The image
call always receives the complete text, even when the text itself was streamed.
"""
from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from config import settings

logger = logging.getLogger(__name__)


class GenerationGateway:
    """Text and image capabilities behind the one seam the session controller calls."""

    def __init__(
        self,
        client: Any = None,
        *,
        max_tokens: Optional[int] = None,
        stop: Optional[List[str]] = None,
        image_size: Optional[str] = None,
        image_prefix: Optional[str] = None,
    ) -> None:
        self._client = client
        self.max_tokens = max_tokens or settings.STORY_MAX_TOKENS
        self.stop = list(stop) if stop is not None else list(settings.STORY_STOP)
        self.image_size = image_size or settings.IMAGE_SIZE
        self.image_prefix = settings.IMAGE_PROMPT_PREFIX if image_prefix is None else image_prefix

    @property
    def client(self) -> Any:
        if self._client is None:
            from storyteller.utils.api_client import llm_client

            self._client = llm_client
        return self._client

    async def write_story(self, messages: List[Dict[str, str]]) -> str:
        """Atomic mode: one complete completion."""
        text = await self.client.chat(messages, max_tokens=self.max_tokens, stop=self.stop)
        logger.debug("Completion returned %d chars for %d messages", len(text), len(messages))
        return text

    async def stream_story(self, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        """Streaming mode: fragments in emission order."""
        async for fragment in self.client.chat_stream(
            messages, max_tokens=self.max_tokens, stop=self.stop
        ):
            yield fragment

    async def illustrate(self, story: str) -> str:
        """Image URL for the completed story text."""
        return await self.client.generate_image(f"{self.image_prefix}{story}", size=self.image_size)
