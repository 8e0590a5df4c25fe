"""LLM-backed recommenders.

A recommender takes a system prompt and a user prompt and returns the raw
text of the model's answer. Parsing and validation belong to the
orchestrator (see ``playlist.py``), so any object with a matching
``recommend`` coroutine can stand in for these, including test stubs.
"""

import logging
import os
from typing import Protocol

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from config import (
    CLAUDE_MODEL,
    OPENAI_MODEL,
    RECOMMENDER_MAX_TOKENS,
    RECOMMENDER_TEMPERATURE,
)
from errors import RecommendationError

logger = logging.getLogger(__name__)


class Recommender(Protocol):
    async def recommend(self, system_prompt: str, user_prompt: str) -> str:
        ...


class ClaudeRecommender:
    """Asks Claude for a selection, prefilling ``{`` to force a JSON object."""

    def __init__(
        self,
        client: AsyncAnthropic | None = None,
        model: str = CLAUDE_MODEL,
    ) -> None:
        self._client = client or AsyncAnthropic(
            api_key=os.environ.get("ANTHROPIC_API_KEY", "")
        )
        self.model = model

    async def recommend(self, system_prompt: str, user_prompt: str) -> str:
        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=RECOMMENDER_MAX_TOKENS,
                temperature=RECOMMENDER_TEMPERATURE,
                system=system_prompt,
                messages=[
                    {"role": "user", "content": user_prompt},
                    {"role": "assistant", "content": "{"},
                ],
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Claude recommendation call failed: %s", exc)
            raise RecommendationError(
                RecommendationError.RECOMMENDER_FAILED, str(exc)
            ) from exc
        blocks = getattr(response, "content", None) or []
        text = next((b.text for b in blocks if hasattr(b, "text")), None)
        if not isinstance(text, str):
            logger.error("Claude returned no text content")
            raise RecommendationError(
                RecommendationError.MALFORMED_RESPONSE, "Claude returned no text"
            )
        # Prepend the "{" we used as prefill.
        return "{" + text.strip()


class OpenAIRecommender:
    """Asks an OpenAI chat model for a selection in JSON-object mode."""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str = OPENAI_MODEL,
    ) -> None:
        self._client = client or AsyncOpenAI(
            api_key=os.environ.get("OPENAI_API_KEY", "")
        )
        self.model = model

    async def recommend(self, system_prompt: str, user_prompt: str) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=RECOMMENDER_TEMPERATURE,
                max_tokens=RECOMMENDER_MAX_TOKENS,
                response_format={"type": "json_object"},
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("OpenAI recommendation call failed: %s", exc)
            raise RecommendationError(
                RecommendationError.RECOMMENDER_FAILED, str(exc)
            ) from exc
        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as exc:
            logger.error("OpenAI returned no choices: %s", exc)
            raise RecommendationError(
                RecommendationError.MALFORMED_RESPONSE, "OpenAI returned no choices"
            ) from exc
        return (content or "").strip()


def build_recommender(name: str) -> Recommender:
    """Returns the recommender registered under [name] (claude | openai)."""
    if name == "claude":
        return ClaudeRecommender()
    if name == "openai":
        return OpenAIRecommender()
    raise ValueError(f"Unknown recommender: {name!r}")
