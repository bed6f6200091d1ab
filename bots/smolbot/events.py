"""Small helpers for reading Discord message events."""


def channel_key(message) -> str:
    """Conversation key: "<guild id>:<channel id>", or "DM:<channel id>" outside guilds."""
    guild = getattr(message, 'guild', None)
    guild_part = str(guild.id) if guild else "DM"
    return f"{guild_part}:{message.channel.id}"


def is_bot_mentioned(content: str, bot_id) -> bool:
    if not content or not bot_id:
        return False
    return f"<@{bot_id}>" in content or f"<@!{bot_id}>" in content


def display_name(user) -> str:
    """Server nickname, then global name, then the raw id."""
    if user is None:
        return "someone"
    return (
        getattr(user, 'display_name', None)
        or getattr(user, 'username', None)
        or str(getattr(user, 'id', 'someone'))
    )


def is_image_attachment(attachment, image_types) -> bool:
    content_type = getattr(attachment, 'content_type', None)
    if not content_type:
        return False
    return content_type.split(';')[0].strip() in image_types
