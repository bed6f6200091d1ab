"""Per-conversation FIFO of pending work."""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any


@dataclass
class QueuedItem:
    """One admitted message waiting for a reply."""
    payload: Any
    enqueued_at: float = field(default_factory=time.time)

    @property
    def waited(self) -> float:
        return time.time() - self.enqueued_at


@dataclass
class ChannelQueue:
    """
    Pending items for one channel plus the flag that keeps it to a single worker.

    `busy` is True from the moment a worker is scheduled until its loop exits.
    """
    items: deque = field(default_factory=deque)
    busy: bool = False

    def __len__(self) -> int:
        return len(self.items)
