"""Message bus models."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from meeting_coord.utils import generate_id, now_ms

BROADCAST = "broadcast"


class MessageType(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    NOTIFICATION = "notification"
    UPDATE = "update"
    QUERY = "query"


class MessagePriority(int, Enum):
    """Ordered so that higher values are more urgent."""
    LOW = 0
    NORMAL = 1
    HIGH = 2
    URGENT = 3


class MessageDeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class ChannelType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"
    BROADCAST = "broadcast"
    TOPIC = "topic"
    SYSTEM = "system"


@dataclass
class AgentMessage:
    """
    A message between agents.

    ``recipients`` is a list of agent ids or the string ``"broadcast"``.
    """
    sender: str
    content: Any
    type: MessageType = MessageType.NOTIFICATION
    recipients: Union[List[str], str] = field(default_factory=list)
    reply_to: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    timestamp: Optional[float] = None

    @property
    def is_broadcast(self) -> bool:
        return self.recipients == BROADCAST

    def addressed_to(self, agent_id: str) -> bool:
        if self.is_broadcast:
            return agent_id != self.sender
        return agent_id in self.recipients

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "sender": self.sender,
            "recipients": self.recipients if self.is_broadcast else list(self.recipients),
            "content": self.content,
            "reply_to": self.reply_to,
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp,
        }


@dataclass
class MessagePublishOptions:
    """
    Delivery options for one message.

    ``expiration`` is an absolute epoch-ms deadline; ``delivery_timeout``
    is relative, in milliseconds.
    """
    priority: MessagePriority = MessagePriority.NORMAL
    expiration: Optional[float] = None
    delivery_timeout: Optional[float] = None
    require_confirmation: bool = False


@dataclass
class CommunicationChannel:
    name: str
    type: ChannelType
    description: str = ""
    participants: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: generate_id("channel"))
    created: float = field(default_factory=now_ms)


@dataclass
class TopicSubscriptionOptions:
    agent_id: str
    topic: str
    priority: int = 0


@dataclass
class PendingMessage:
    """Delivery bookkeeping for a message still awaiting recipients."""
    message: AgentMessage
    options: MessagePublishOptions
    delivery_status: Dict[str, MessageDeliveryStatus]
    expires_at: Optional[float] = None

    def all_delivered(self) -> bool:
        return all(
            s in (MessageDeliveryStatus.DELIVERED, MessageDeliveryStatus.READ)
            for s in self.delivery_status.values()
        )
