"""
Split message text into literal text and emote references.

A single left-to-right scan classifies every span exactly once:

    "hi <:wave:123> :smile: there"
      -> LITERAL "hi "
      -> CANONICAL <:wave:123>
      -> LITERAL " "
      -> BARE :smile:
      -> LITERAL " there"

Callers rebuild the text by joining the (possibly replaced) segment texts,
so a replacement is never scanned again.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

# Canonical form first so the name inside <:name:id> is never read as a bare token
TOKEN_PATTERN = re.compile(
    r'<(?P<animated>a?):(?P<canonical>[\w-]+):(?P<id>\d+)>'
    r'|:(?P<bare>[\w-]+):'
)


class SegmentKind(Enum):
    LITERAL = "literal"
    BARE = "bare"
    CANONICAL = "canonical"


@dataclass(frozen=True)
class Segment:
    kind: SegmentKind
    text: str
    name: Optional[str] = None
    external_id: Optional[str] = None
    animated: bool = False


def tokenize(text: str) -> list[Segment]:
    segments = []
    position = 0
    for match in TOKEN_PATTERN.finditer(text):
        if match.start() > position:
            segments.append(Segment(SegmentKind.LITERAL, text[position:match.start()]))

        if match.group('canonical') is not None:
            segments.append(Segment(
                SegmentKind.CANONICAL,
                match.group(0),
                name=match.group('canonical'),
                external_id=match.group('id'),
                animated=match.group('animated') == 'a',
            ))
        else:
            segments.append(Segment(SegmentKind.BARE, match.group(0), name=match.group('bare')))
        position = match.end()

    if position < len(text):
        segments.append(Segment(SegmentKind.LITERAL, text[position:]))
    return segments
