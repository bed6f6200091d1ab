"""Ordered model tiers for one modality, with a cursor on the active one."""

import logging
from typing import Sequence

logger = logging.getLogger(__name__)


class ModelLadder:
    """
    Most capable model first. `advance` steps down one tier and returns
    False (without moving) when already on the last one; `reset` goes back
    to the top. The cursor is always a valid index.
    """

    def __init__(self, modality: str, tiers: Sequence[str], cursor: int = 0):
        if not tiers:
            raise ValueError(f"{modality} ladder needs at least one model")
        if not 0 <= cursor < len(tiers):
            raise ValueError(f"cursor {cursor} out of range for {len(tiers)} tiers")
        self.modality = modality
        self.tiers = tuple(tiers)
        self._cursor = cursor

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def current(self) -> str:
        return self.tiers[self._cursor]

    @property
    def is_last(self) -> bool:
        return self._cursor == len(self.tiers) - 1

    def advance(self) -> bool:
        if self.is_last:
            return False
        previous = self.current
        self._cursor += 1
        logger.info(f"Falling back {self.modality} model: {previous} -> {self.current}")
        return True

    def reset(self) -> None:
        if self._cursor:
            logger.info(f"Resetting {self.modality} model to {self.tiers[0]}")
        self._cursor = 0

    def __len__(self) -> int:
        return len(self.tiers)

    def __repr__(self) -> str:
        return f"ModelLadder({self.modality!r}, {self.current!r} [{self._cursor + 1}/{len(self.tiers)}])"
