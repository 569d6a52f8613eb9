"""Push channel integration.

This package turns row-level update events into cache invalidation:
- Channel protocol and event models
- Supabase Realtime websocket channel and an in-memory channel
- RealtimeEventBridge, which degrades to polling on failure
"""

from src.artifact_sync.realtime.bridge import RealtimeEventBridge
from src.artifact_sync.realtime.channel import (
    InMemoryPushChannel,
    SupabaseRealtimeChannel,
)
from src.artifact_sync.realtime.models import (
    ArtifactChangeEvent,
    ChannelStatus,
    PushChannel,
    PushSubscription,
)

__all__ = [
    "ArtifactChangeEvent",
    "ChannelStatus",
    "InMemoryPushChannel",
    "PushChannel",
    "PushSubscription",
    "RealtimeEventBridge",
    "SupabaseRealtimeChannel",
]
