"""
Agent communication bus.

Direct messages, broadcasts, channels and topics with per-recipient
delivery tracking and expiry.
"""

from meeting_coord.communication.models import (
    BROADCAST,
    AgentMessage,
    ChannelType,
    CommunicationChannel,
    MessageDeliveryStatus,
    MessagePriority,
    MessagePublishOptions,
    MessageType,
    TopicSubscriptionOptions,
)
from meeting_coord.communication.service import CommunicationService

__all__ = [
    "BROADCAST",
    "AgentMessage",
    "ChannelType",
    "CommunicationChannel",
    "CommunicationService",
    "MessageDeliveryStatus",
    "MessagePriority",
    "MessagePublishOptions",
    "MessageType",
    "TopicSubscriptionOptions",
]
