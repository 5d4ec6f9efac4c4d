"""Singleton async OpenAI wrapper with retry, streaming, images and usage tracking."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import openai

from storyteller.utils.errors import GenerationFailed

logger = logging.getLogger(__name__)

# Provider rejections that will fail the same way on every attempt
_NON_RETRYABLE = (
    openai.BadRequestError,
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.NotFoundError,
    openai.UnprocessableEntityError,
)


def _error_code(exc: Exception) -> Optional[str]:
    code = getattr(exc, "code", None)
    if code:
        return str(code)
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        return body.get("code") or (body.get("error") or {}).get("code")
    return None


def _retryable(exc: Exception) -> bool:
    return not isinstance(exc, _NON_RETRYABLE)


class LLMClient:
    """Singleton OpenAI wrapper used by the generation gateway.

    * ``chat()``           → complete assistant text
    * ``chat_stream()``    → async iterator of text fragments
    * ``generate_image()`` → one image URL
    * Retry with exponential back-off on transient errors
    * Per-process usage tracking (tokens + images)
    """

    _instance: Optional["LLMClient"] = None

    def __new__(cls) -> "LLMClient":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialised = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialised:
            return
        from config import settings

        self._settings = settings
        self._client: Any = None
        self._total_input_tokens: int = 0
        self._total_output_tokens: int = 0
        self._images_generated: int = 0
        self._initialised = True

    # ── lazy OpenAI client ────────────────────────────────
    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = openai.AsyncOpenAI(
                    api_key=self._settings.OPENAI_API_KEY or None,
                    base_url=self._settings.OPENAI_BASE_URL or None,
                )
            except Exception as exc:
                logger.error("Failed to create OpenAI client: %s", exc)
                raise
        return self._client

    # ── retry core ────────────────────────────────────────
    async def _call(self, what: str, factory) -> Any:
        try:
            self.client
        except openai.OpenAIError as exc:
            # missing API key: no attempt can succeed
            raise GenerationFailed(f"{what} failed: {exc}") from exc

        attempts = max(1, self._settings.LLM_MAX_ATTEMPTS)
        last_exc: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                return await factory()
            except Exception as exc:
                last_exc = exc
                if not _retryable(exc) or attempt == attempts:
                    break
                wait = 2 ** attempt
                logger.warning("%s attempt %d failed (%s). Retrying in %ds…", what, attempt, exc, wait)
                await asyncio.sleep(wait)

        code = _error_code(last_exc) if last_exc else None
        logger.error("%s failed after %d attempt(s): %s", what, attempt, last_exc)
        raise GenerationFailed(f"{what} failed: {last_exc}", code=code) from last_exc

    # ── public API ────────────────────────────────────────
    async def chat(
        self,
        messages: List[Dict[str, str]],
        *,
        max_tokens: Optional[int] = None,
        stop: Optional[List[str]] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Send a chat completion request and return the assistant message text."""
        kwargs = self._chat_kwargs(messages, max_tokens, stop, temperature)
        response = await self._call(
            "Text completion", lambda: self.client.chat.completions.create(**kwargs)
        )
        usage = getattr(response, "usage", None)
        if usage:
            self._total_input_tokens += usage.prompt_tokens
            self._total_output_tokens += usage.completion_tokens
        return response.choices[0].message.content or ""

    async def chat_stream(
        self,
        messages: List[Dict[str, str]],
        *,
        max_tokens: Optional[int] = None,
        stop: Optional[List[str]] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[str]:
        """Yield text fragments as they arrive.

        Only opening the stream is retried; a failure after the first fragment
        has been yielded surfaces as ``GenerationFailed`` straight away.
        """
        kwargs = self._chat_kwargs(messages, max_tokens, stop, temperature)
        kwargs["stream"] = True
        stream = await self._call(
            "Text completion", lambda: self.client.chat.completions.create(**kwargs)
        )
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    self._total_output_tokens += 1
                    yield content
        except Exception as exc:
            logger.error("Text stream interrupted: %s", exc)
            raise GenerationFailed(f"Text stream interrupted: {exc}", code=_error_code(exc)) from exc

    async def generate_image(self, prompt: str, *, size: Optional[str] = None) -> str:
        """Generate one image and return its URL."""
        result = await self._call(
            "Image generation",
            lambda: self.client.images.generate(
                model=self._settings.IMAGE_MODEL,
                prompt=prompt,
                size=size or self._settings.IMAGE_SIZE,
                n=1,
            ),
        )
        self._images_generated += 1
        return result.data[0].url

    def _chat_kwargs(
        self,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int],
        stop: Optional[List[str]],
        temperature: Optional[float],
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self._settings.OPENAI_MODEL,
            "messages": messages,
            "temperature": temperature if temperature is not None else self._settings.OPENAI_TEMPERATURE,
            "max_tokens": max_tokens or self._settings.STORY_MAX_TOKENS,
        }
        if stop:
            kwargs["stop"] = stop
        return kwargs

    # ── usage tracking ────────────────────────────────────
    @property
    def total_input_tokens(self) -> int:
        return self._total_input_tokens

    @property
    def total_output_tokens(self) -> int:
        """Exact for ``chat()``; streamed output counts one per fragment."""
        return self._total_output_tokens

    @property
    def images_generated(self) -> int:
        return self._images_generated

    def reset_usage(self) -> None:
        self._total_input_tokens = 0
        self._total_output_tokens = 0
        self._images_generated = 0


# Convenience module-level singleton
llm_client = LLMClient()
