"""Language-model integration hooks.

The planner talks to the model through the small :class:`LanguageModel`
protocol so tests can script responses.  :class:`OpenAIChatModel` is the
production implementation; until one is configured the service falls back to
:class:`UnconfiguredLanguageModel`, which reports the planner as unavailable.
"""
from __future__ import annotations

import logging
import time
from typing import Protocol

import openai
from openai import AsyncOpenAI

from sheet_analyst.core.errors import PlannerUnavailable

logger = logging.getLogger(__name__)


class LanguageModel(Protocol):
    """Contract for chat-completion style models."""

    async def complete(self, messages: list[dict[str, str]]) -> str:
        """Return the assistant reply for ``messages``."""


class UnconfiguredLanguageModel:
    """Fallback used when no model credentials are configured."""

    async def complete(self, messages: list[dict[str, str]]) -> str:
        raise PlannerUnavailable("language model is not configured (set OPENAI_API_KEY)")


class OpenAIChatModel:
    """Chat completions over the OpenAI API (or any compatible endpoint)."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        timeout: float = 60.0,
        temperature: float = 0.1,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = model
        self._temperature = temperature
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=1)

    async def complete(self, messages: list[dict[str, str]]) -> str:
        started = time.perf_counter()
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,  # type: ignore[arg-type]
                temperature=self._temperature,
            )
        except (openai.APIConnectionError, openai.APITimeoutError) as exc:
            raise PlannerUnavailable(f"language model unreachable: {exc}") from exc
        except openai.APIStatusError as exc:
            raise PlannerUnavailable(f"language model returned status {exc.status_code}") from exc

        logger.info(
            "event=llm_completion model=%s elapsed_ms=%.0f",
            self._model,
            (time.perf_counter() - started) * 1000,
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def aclose(self) -> None:
        await self._client.close()


_model: LanguageModel = UnconfiguredLanguageModel()


def configure_language_model(model: LanguageModel) -> None:
    """Install the model used by the query planner."""

    global _model
    _model = model


def get_language_model() -> LanguageModel:
    """Return the currently configured language model."""

    return _model
