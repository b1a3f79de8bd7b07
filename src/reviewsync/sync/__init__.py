"""Client-resident sync core.

Learn: Everything a long-lived client needs to keep a coherent local view
of server state: live change channels, a registry that shares them, a
local cache they invalidate, and the workflow/notification front ends
that mutate through RPC. SyncSession wires them together.
"""

from reviewsync.sync.cache import MISS, CacheEntry, LocalCache
from reviewsync.sync.channel import Backoff, ChangeEventChannel, ChannelStatus
from reviewsync.sync.keys import CacheKey
from reviewsync.sync.registry import SubscriptionRegistry
from reviewsync.sync.session import SyncSession

__all__ = [
    "MISS",
    "Backoff",
    "CacheEntry",
    "CacheKey",
    "ChangeEventChannel",
    "ChannelStatus",
    "LocalCache",
    "SubscriptionRegistry",
    "SyncSession",
]
