"""Custom emote popularity tracking and text rewriting."""

from .cache import PopularityCache
from .records import SymbolRecord, format_tag, is_valid_name, normalize
from .store import RankingStore
from .tokenizer import Segment, SegmentKind, tokenize

__all__ = [
    'PopularityCache',
    'SymbolRecord',
    'RankingStore',
    'Segment',
    'SegmentKind',
    'tokenize',
    'format_tag',
    'is_valid_name',
    'normalize',
]
