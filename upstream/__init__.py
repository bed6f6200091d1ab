"""Language-model backend with tiered fallback and retry."""

from .backend import AnthropicBackend, EmptyResponseError, clean_response, normalize_turns
from .ladder import ModelLadder
from .retrier import (
    FallbackRetrier,
    RetryResult,
    RetryStatus,
    UpstreamExhausted,
    extract_wait_seconds,
    is_overloaded,
    parse_wait_duration,
)

__all__ = [
    'AnthropicBackend',
    'EmptyResponseError',
    'clean_response',
    'normalize_turns',
    'ModelLadder',
    'FallbackRetrier',
    'RetryResult',
    'RetryStatus',
    'UpstreamExhausted',
    'extract_wait_seconds',
    'is_overloaded',
    'parse_wait_duration',
]
