"""Persona system prompt assembly."""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_PERSONA = (
    "You are {bot_name}, a cute but secretly chaotic Smol Brain hanging out in a Discord chat. "
    "Reply to {username} in one or two short, witty, lowercase sentences."
)

NO_EMOTES = "No custom emojis available"

IMAGE_RULE = (
    "- The conversation includes image descriptions. "
    "Use these descriptions to provide relevant and contextual responses."
)

EMOTE_RULES = """EMOTE RULES:
- Use the EXACT names from the list, do not modify or combine emoji names
- Each emoji must be wrapped in colons, like :emoji_name:
- Only use emotes from this list, no variations"""

IMAGE_MARKERS = ("[Image Description:", "[Referenced Image Description:")


def load_persona_prompt(path) -> str:
    """Load the persona prompt from file."""
    path = Path(path)
    if path.exists():
        prompt = path.read_text(encoding='utf-8')
        logger.info(f"Loaded system prompt: {len(prompt)} characters")
        return prompt
    logger.error(f"System prompt not found at {path}, using built-in persona")
    return DEFAULT_PERSONA


def context_has_images(turns: list[dict]) -> bool:
    return any(marker in turn.get("content", "") for turn in turns for marker in IMAGE_MARKERS)


def format_emote_list(names: list[str]) -> str:
    return ", ".join(f":{name}:" for name in names) or NO_EMOTES


def build_system_prompt(persona: str, bot_name: str, username: str, emotes: list[str], has_images: bool = False) -> str:
    # Persona text may contain other braces, so no str.format
    prompt = persona.replace("{bot_name}", bot_name).replace("{username}", username).rstrip()

    sections = [prompt]
    if has_images:
        sections.append(IMAGE_RULE)
    sections.append(f"EMOTES:\nAvailable emotes:\n{format_emote_list(emotes)}")
    sections.append(EMOTE_RULES)
    return "\n\n".join(sections)
