"""
Recent message history per channel.

Keeps the last MAX_MESSAGES messages of every channel the bot has seen,
with short descriptions of attached images and the message each one
replied to, and turns them into chat turns for the model.

Failing to fetch a reply target or describe an image never fails the
message: that piece of context is logged and left out.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from common.config import IMAGE_CONTENT_TYPES, MAX_IMAGE_BYTES, MAX_MESSAGE_LENGTH, MAX_MESSAGES

from bots.smolbot.events import display_name, is_image_attachment

logger = logging.getLogger(__name__)

DescribeFn = Callable[..., Awaitable[str]]

IMAGE_TOO_LARGE = "Image too large to analyze"


@dataclass
class ImageDescription:
    brief: str
    detailed: Optional[str] = None


@dataclass
class ReferencedMessage:
    message_id: str
    author_id: str
    author_name: str
    content: str
    image_descriptions: list[ImageDescription] = field(default_factory=list)


@dataclass
class CachedMessage:
    message_id: str
    author_id: str
    author_name: str
    content: str
    created_at: float = field(default_factory=time.time)
    image_descriptions: list[ImageDescription] = field(default_factory=list)
    referenced: Optional[ReferencedMessage] = None


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return f"{text[:max_length - 3]}..."


def message_timestamp(message) -> float:
    created_at = getattr(message, 'created_at', None)
    if created_at is not None and hasattr(created_at, 'timestamp'):
        return created_at.timestamp()
    return time.time()


class MessageHistory:
    def __init__(
        self,
        describe_image: Optional[DescribeFn] = None,
        max_messages: int = MAX_MESSAGES,
        max_message_length: int = MAX_MESSAGE_LENGTH,
        max_image_bytes: int = MAX_IMAGE_BYTES,
    ):
        self._describe_image = describe_image
        self.max_messages = max_messages
        self.max_message_length = max_message_length
        self.max_image_bytes = max_image_bytes
        self._channels: dict[str, deque] = {}
        self._backfilled: set[str] = set()

    def _channel(self, key: str) -> deque:
        messages = self._channels.get(key)
        if messages is None:
            messages = self._channels[key] = deque(maxlen=self.max_messages)
        return messages

    def messages(self, key: str) -> list[CachedMessage]:
        return list(self._channels.get(key, ()))

    def get(self, key: str, message_id) -> Optional[CachedMessage]:
        message_id = str(message_id)
        for cached in self._channels.get(key, ()):
            if cached.message_id == message_id:
                return cached
        return None

    def _append(self, key: str, cached: CachedMessage) -> None:
        messages = self._channel(key)
        for index, existing in enumerate(messages):
            if existing.message_id == cached.message_id:
                messages[index] = cached
                return
        messages.append(cached)

    # ============== CACHING ==============

    async def ensure_channel(self, key: str, channel) -> None:
        """Backfill recent history the first time a channel is seen."""
        if key in self._backfilled:
            return
        self._backfilled.add(key)

        try:
            fetched = await channel.fetch_messages(limit=self.max_messages)
        except Exception as e:
            logger.warning(f"Failed to fetch history for {key}: {e}")
            return

        # Discord returns newest first
        for message in sorted(fetched, key=message_timestamp):
            self._append(key, CachedMessage(
                message_id=str(message.id),
                author_id=str(message.author.id),
                author_name=display_name(message.author),
                content=message.content or "",
                created_at=message_timestamp(message),
            ))
        logger.info(f"Backfilled {len(fetched)} messages for {key}")

    async def cache_message(self, key: str, message, bot_mentioned: bool = False) -> CachedMessage:
        """
        Store *message* with its image descriptions and reply target.

        When the bot is addressed, images also get a detailed description
        for the reply to this message.
        """
        attachments = getattr(message, 'attachments', None) or []
        cached = CachedMessage(
            message_id=str(message.id),
            author_id=str(message.author.id),
            author_name=display_name(message.author),
            content=message.content or "",
            created_at=message_timestamp(message),
            image_descriptions=await self._describe_attachments(attachments, detailed=bot_mentioned),
            referenced=await self._resolve_reference(message, detailed=bot_mentioned),
        )
        self._append(key, cached)

        logger.debug(
            f"Cached message {cached.message_id} from {cached.author_name} in {key} "
            f"(images: {len(cached.image_descriptions)}, reply: {cached.referenced is not None}, "
            f"cache size: {len(self._channel(key))})"
        )
        return cached

    async def _describe_attachments(self, attachments, detailed: bool = False) -> list[ImageDescription]:
        descriptions = []
        for attachment in attachments:
            if not is_image_attachment(attachment, IMAGE_CONTENT_TYPES):
                continue

            size = getattr(attachment, 'size', 0) or 0
            if size > self.max_image_bytes:
                logger.info(f"Skipping image analysis, {size} bytes is over the limit")
                descriptions.append(ImageDescription(brief=IMAGE_TOO_LARGE))
                continue

            if self._describe_image is None:
                continue

            try:
                brief = await self._describe_image(attachment.url)
                full = await self._describe_image(attachment.url, detailed=True) if detailed else None
            except Exception as e:
                logger.warning(f"Image analysis failed for {attachment.url}: {e}")
                continue
            descriptions.append(ImageDescription(brief=brief, detailed=full))
        return descriptions

    async def _resolve_reference(self, message, detailed: bool = False) -> Optional[ReferencedMessage]:
        if not getattr(message, 'message_reference', None):
            return None

        try:
            referenced = await message.fetch_referenced_message()
        except Exception as e:
            logger.warning(f"Failed to fetch referenced message for {message.id}: {e}")
            return None
        if referenced is None:
            return None

        return ReferencedMessage(
            message_id=str(referenced.id),
            author_id=str(referenced.author.id),
            author_name=display_name(referenced.author),
            content=referenced.content or "",
            image_descriptions=await self._describe_attachments(
                getattr(referenced, 'attachments', None) or [], detailed=detailed
            ),
        )

    # ============== CHAT TURNS ==============

    def build_turns(self, key: str, current_message_id=None, bot_id=None, until: Optional[float] = None) -> list[dict]:
        """
        Chat turns for the channel, oldest first.

        Each turn reads "<name>: <content>" followed by image and reply
        annotations. Detailed image descriptions are only used for the
        message being answered, and turns stop at that message. Messages
        created after *until* are left out.
        """
        current_id = str(current_message_id) if current_message_id is not None else None
        bot_id = str(bot_id) if bot_id is not None else None

        turns = []
        for cached in self._channels.get(key, ()):
            if until is not None and cached.created_at > until:
                continue
            is_current = cached.message_id == current_id
            parts = [f"{cached.author_name}: {truncate(cached.content, self.max_message_length)}"]

            for description in cached.image_descriptions:
                text = description.detailed if is_current and description.detailed else description.brief
                parts.append(f"[Image Description: {text}]")

            referenced = cached.referenced
            if referenced:
                parts.append(
                    f"[Referenced Message from {referenced.author_name}: "
                    f"{truncate(referenced.content, self.max_message_length)}]"
                )
                for description in referenced.image_descriptions:
                    text = description.detailed if is_current and description.detailed else description.brief
                    parts.append(f"[Referenced Image Description: {text}]")

            turns.append({
                "role": "assistant" if bot_id and cached.author_id == bot_id else "user",
                "content": "\n".join(parts),
            })
            if is_current:
                break
        return turns

    def turns_for(self, key: str, message, bot_id=None) -> list[dict]:
        """
        Turns ending with *message*, the one being answered.

        A message that was never cached, or was pushed out while it waited
        in the queue, is answered from its own content after the older
        history.
        """
        if self.get(key, message.id) is not None:
            return self.build_turns(key, message.id, bot_id)

        turns = self.build_turns(key, bot_id=bot_id, until=message_timestamp(message))
        content = truncate(message.content or "", self.max_message_length)
        turns.append({"role": "user", "content": f"{display_name(message.author)}: {content}"})
        return turns
