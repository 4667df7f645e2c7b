"""Outbound channel sinks."""
from channels.base import (
    ChannelError,
    ChannelRegistry,
    ChannelSink,
    LoggingChannelSink,
    MessageDeduplicator,
)
from channels.webhook_sink import WebhookChannelSink

__all__ = [
    "ChannelError", "ChannelRegistry", "ChannelSink",
    "LoggingChannelSink", "MessageDeduplicator", "WebhookChannelSink",
]
