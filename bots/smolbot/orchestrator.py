"""
Turns one queued message into one reply.

The model call starts right away; while it runs the bot "thinks" for a
moment and then shows the typing indicator, and once the text is back it
keeps typing for a time proportional to the reply length. Pacing is UX
only: its failures are logged and never fail the message.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from common.config import (
    THINKING_DELAY_RANGE,
    TYPING_CHARS_PER_SECOND,
    TYPING_LEAD_RANGE,
    TYPING_MAX_DELAY,
    TYPING_MIN_DELAY,
)
from emotes import PopularityCache, SegmentKind, tokenize
from queueing import QueuedItem

from bots.smolbot.events import channel_key, display_name
from bots.smolbot.history import MessageHistory
from bots.smolbot.prompts import build_system_prompt, context_has_images

logger = logging.getLogger(__name__)

DISCORD_MESSAGE_LIMIT = 2000

ERROR_NOTICE = "Sorry {username}, I encountered an error while processing your message."
BUSY_NOTICE = "Sorry {username}, there are too many pending messages. Please try again later."


def calculate_typing_delay(message: str, rand: Callable[[float, float], float] = random.uniform) -> float:
    """Calculate realistic typing delay based on message length."""
    base_delay = len(message) / TYPING_CHARS_PER_SECOND

    # Add random variance (+-25%)
    delay = base_delay * rand(0.75, 1.25)

    # Clamp between min and max
    return max(TYPING_MIN_DELAY, min(delay, TYPING_MAX_DELAY))


def fit_message(content: str, limit: int = DISCORD_MESSAGE_LIMIT) -> str:
    """Cut *content* to *limit* characters without splitting an emote."""
    if len(content) <= limit:
        return content

    parts = []
    size = 0
    for segment in tokenize(content):
        room = limit - size
        if len(segment.text) > room:
            if segment.kind is SegmentKind.LITERAL:
                parts.append(segment.text[:room])
            break
        parts.append(segment.text)
        size += len(segment.text)
    return "".join(parts)


class ResponseOrchestrator:
    def __init__(
        self,
        backend,
        history: MessageHistory,
        popularity: PopularityCache,
        persona_prompt: str,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[float, float], float] = random.uniform,
        thinking_range: tuple = THINKING_DELAY_RANGE,
        typing_lead_range: tuple = TYPING_LEAD_RANGE,
    ):
        self.backend = backend
        self.history = history
        self.popularity = popularity
        self.persona_prompt = persona_prompt
        self._sleep = sleep
        self._rand = rand
        self.thinking_range = thinking_range
        self.typing_lead_range = typing_lead_range

        self.bot_id: Optional[str] = None
        self.bot_name = "SmolBot"

    def set_identity(self, bot_id, bot_name: str) -> None:
        self.bot_id = str(bot_id)
        self.bot_name = bot_name

    async def process(self, item: QueuedItem) -> None:
        message = item.payload
        key = channel_key(message)
        username = display_name(message.author)

        turns = self.history.turns_for(key, message, self.bot_id)

        system_prompt = build_system_prompt(
            self.persona_prompt,
            bot_name=self.bot_name,
            username=username,
            emotes=self.popularity.hot_set_display(exclude_last_used=True),
            has_images=context_has_images(turns),
        )

        logger.info(f"Generating reply to {username} in {key} ({len(turns)} turns, waited {item.waited:.1f}s)")
        generation = asyncio.ensure_future(self.backend.generate_reply(system_prompt, turns, self.bot_name))
        try:
            await self._show_thinking(message.channel)
        except asyncio.CancelledError:
            generation.cancel()
            raise

        text = await generation

        await self._hold_typing(message.channel, calculate_typing_delay(text, self._rand))

        content = self.popularity.rewrite(text, attributed_to_self=True)
        await message.reply(fit_message(content))
        logger.info(f"Replied to {username} in {key} ({len(content)} chars)")

    # ============== PACING ==============

    async def _show_thinking(self, channel) -> None:
        try:
            await self._sleep(self._rand(*self.thinking_range))
            async with channel.typing:
                await self._sleep(self._rand(*self.typing_lead_range))
        except Exception as e:
            logger.debug(f"Thinking delay interrupted: {e}")

    async def _hold_typing(self, channel, delay: float) -> None:
        try:
            async with channel.typing:
                await self._sleep(delay)
        except Exception as e:
            logger.debug(f"Typing indicator failed: {e}")

    # ============== NOTICES ==============

    async def notify_failure(self, item: QueuedItem, error: BaseException) -> None:
        message = item.payload
        logger.warning(f"Sending error notice for message {message.id}: {error}")
        await message.reply(ERROR_NOTICE.format(username=display_name(message.author)))

    async def notify_busy(self, message) -> None:
        await message.reply(BUSY_NOTICE.format(username=display_name(message.author)))
