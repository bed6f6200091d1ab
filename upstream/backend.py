"""
Claude backend: chat replies and image descriptions.

Every call goes through the FallbackRetrier against the ladder for its
modality, so an overloaded model transparently falls back to the next one.
"""

import logging
import re
from typing import Optional

import anthropic

from common.config import (
    MAX_TOKENS,
    TEMPERATURE,
    VISION_BRIEF_MAX_TOKENS,
    VISION_DETAILED_MAX_TOKENS,
)

from .ladder import ModelLadder
from .retrier import FallbackRetrier

logger = logging.getLogger(__name__)

BRIEF_IMAGE_PROMPT = "Provide a brief description of this image in 1-2 sentences."
DETAILED_IMAGE_PROMPT = (
    "Provide a detailed analysis of this image, including objects, setting, mood, "
    "memes, famous people, brands, and any notable details."
)
BRIEF_IMAGE_FALLBACK = "No description available."
DETAILED_IMAGE_FALLBACK = "No detailed description available."

# Context annotations the model sometimes echoes back
LEAKED_TAG_PATTERN = re.compile(
    r'\[(?:Referenced Message(?:\s+from\s+[^:\]]+)?:[^\]]*'
    r'|(?:Referenced )?Image Description:[^\]]*)\]'
)


class EmptyResponseError(RuntimeError):
    """The model answered with no text."""


def clean_response(text: str, bot_name: str = "") -> str:
    """Strip a leading "<bot name>:" and any leaked context tags."""
    cleaned = text
    if bot_name:
        cleaned = re.sub(rf'^\[?{re.escape(bot_name)}\]?:\s*', '', cleaned.lstrip(), flags=re.IGNORECASE)
    cleaned = LEAKED_TAG_PATTERN.sub('', cleaned)
    return cleaned.strip()


def normalize_turns(turns: list[dict]) -> list[dict]:
    """
    Shape chat turns for the Messages API: user first, roles alternating.

    System turns are dropped (the system prompt is passed separately),
    leading and trailing assistant turns are dropped, and consecutive turns
    from the same role are joined with a newline. A trailing assistant turn
    would be read as the start of the reply.
    """
    normalized: list[dict] = []
    for turn in turns:
        role = turn.get("role")
        content = (turn.get("content") or "").strip()
        if role not in ("user", "assistant") or not content:
            continue
        if not normalized and role == "assistant":
            continue
        if normalized and normalized[-1]["role"] == role:
            normalized[-1]["content"] += "\n" + content
        else:
            normalized.append({"role": role, "content": content})
    while normalized and normalized[-1]["role"] == "assistant":
        normalized.pop()
    return normalized


def _response_text(response) -> str:
    return "".join(
        getattr(block, "text", "") for block in response.content
        if getattr(block, "type", None) == "text"
    ).strip()


class AnthropicBackend:
    def __init__(
        self,
        client: anthropic.AsyncAnthropic,
        retrier: FallbackRetrier,
        text_ladder: ModelLadder,
        vision_ladder: ModelLadder,
        temperature: float = TEMPERATURE,
        max_tokens: int = MAX_TOKENS,
    ):
        self.client = client
        self.retrier = retrier
        self.text_ladder = text_ladder
        self.vision_ladder = vision_ladder
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def generate_reply(self, system_prompt: str, turns: list[dict], bot_name: str = "") -> str:
        """Generate one reply. Raises UpstreamExhausted when every retry failed."""
        messages = normalize_turns(turns)
        if not messages:
            raise ValueError("No user messages to respond to")

        async def perform_response() -> str:
            model = self.text_ladder.current
            response = await self.client.messages.create(
                model=model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=system_prompt,
                messages=messages,
            )
            raw = _response_text(response)
            if not raw:
                raise EmptyResponseError(f"No response received from {model}")

            cleaned = clean_response(raw, bot_name)
            if not cleaned:
                raise EmptyResponseError(f"Response from {model} was empty after cleanup")

            logger.info(f"Generated response with {model} ({len(cleaned)} chars, {len(messages)} turns)")
            logger.debug(f"Response cleanup: {raw[:200]!r} -> {cleaned[:200]!r}")
            return cleaned

        return await self.retrier.run(perform_response, self.text_ladder)

    async def describe_image(self, url: str, detailed: bool = False) -> str:
        """Describe the image at *url*. Raises UpstreamExhausted when every retry failed."""
        prompt = DETAILED_IMAGE_PROMPT if detailed else BRIEF_IMAGE_PROMPT
        fallback = DETAILED_IMAGE_FALLBACK if detailed else BRIEF_IMAGE_FALLBACK
        max_tokens = VISION_DETAILED_MAX_TOKENS if detailed else VISION_BRIEF_MAX_TOKENS
        temperature = 0.7 if detailed else 0.5

        # Each image starts from the best vision model
        self.vision_ladder.reset()

        async def perform_analysis() -> str:
            response = await self.client.messages.create(
                model=self.vision_ladder.current,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{
                    "role": "user",
                    "content": [
                        {"type": "image", "source": {"type": "url", "url": url}},
                        {"type": "text", "text": prompt},
                    ],
                }],
            )
            return _response_text(response) or fallback

        description = await self.retrier.run(perform_analysis, self.vision_ladder)
        logger.debug(f"{'Detailed' if detailed else 'Brief'} image description: {description[:100]}")
        return description

    def models(self) -> dict[str, str]:
        return {"text": self.text_ladder.current, "vision": self.vision_ladder.current}

    async def close(self) -> None:
        await self.client.close()
