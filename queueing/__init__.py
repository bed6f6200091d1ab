"""Per-channel admission control and serialized message processing."""

from .channel_queue import ChannelQueue, QueuedItem
from .manager import QueueManager

__all__ = ['ChannelQueue', 'QueuedItem', 'QueueManager']
