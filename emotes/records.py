"""Custom emote records and the naming rules they share."""

import re
from dataclasses import dataclass

# Discord custom emote names: 2-32 word characters or dashes
EMOTE_NAME_PATTERN = re.compile(r'^[\w-]{2,32}$')


def normalize(name: str) -> str:
    """Single lookup key for an emote name, regardless of casing."""
    return name.lower()


def is_valid_name(name: str) -> bool:
    return bool(name) and EMOTE_NAME_PATTERN.match(name) is not None


def format_tag(name: str, external_id: str, animated: bool = False) -> str:
    prefix = 'a' if animated else ''
    return f"<{prefix}:{name}:{external_id}>"


@dataclass(frozen=True)
class SymbolRecord:
    """One custom emote that a :name: token can resolve to."""
    canonical_name: str
    external_id: str
    is_animated: bool = False
    origin_group: str = ""  # Guild the emote belongs to

    @property
    def key(self) -> str:
        return normalize(self.canonical_name)

    def tag(self) -> str:
        return format_tag(self.canonical_name, self.external_id, self.is_animated)

    @classmethod
    def from_emoji(cls, emoji, origin_group: str) -> "SymbolRecord":
        """Build a record from a platform emoji object (name/id/animated)."""
        return cls(
            canonical_name=emoji.name,
            external_id=str(emoji.id),
            is_animated=bool(getattr(emoji, 'animated', False)),
            origin_group=str(origin_group),
        )
