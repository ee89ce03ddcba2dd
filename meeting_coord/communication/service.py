"""
Communication Service - message bus between agents.

Supports direct messages, broadcasts, named channels and prioritized topic
subscriptions. Every message gets per-recipient delivery tracking; messages
that are not delivered before they expire are marked FAILED by a background
expiry task.

Usage:
    bus = CommunicationService()
    await bus.initialize()

    await bus.register_agent("summarizer", handle_message)
    await bus.send_message(AgentMessage(sender="coordinator", recipients=["summarizer"], content="go"))

    await bus.cleanup()
"""

import asyncio
import inspect
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from meeting_coord.communication.models import (
    BROADCAST,
    AgentMessage,
    ChannelType,
    CommunicationChannel,
    MessageDeliveryStatus,
    MessagePriority,
    MessagePublishOptions,
    MessageType,
    PendingMessage,
    TopicSubscriptionOptions,
)
from meeting_coord.config import CommunicationConfig
from meeting_coord.errors import NotFoundError, ValidationError
from meeting_coord.logging_config import CorrelationContext, get_logger
from meeting_coord.utils import generate_id, now_ms

MessageCallback = Callable[[AgentMessage], Union[None, Awaitable[None]]]


class CommunicationService:
    """In-process pub/sub for agents."""

    def __init__(
        self,
        config: Optional[CommunicationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or CommunicationConfig()
        self._log = get_logger(logger or "meeting_coord.communication")

        self.delivery_timeout = self.config.delivery_timeout_ms
        self.retain_message_history = self.config.retain_message_history
        self.max_message_history = self.config.max_message_history

        self._channels: Dict[str, CommunicationChannel] = {}
        self._message_history: List[AgentMessage] = []
        self._pending: Dict[str, PendingMessage] = {}
        # Delivery status of recent messages, kept after they leave _pending
        self._receipts: "OrderedDict[str, Dict[str, MessageDeliveryStatus]]" = OrderedDict()
        self._agent_callbacks: Dict[str, MessageCallback] = {}
        self._topic_subscriptions: Dict[str, List[TopicSubscriptionOptions]] = {}

        self._stats = {
            "messages_sent": 0,
            "deliveries_succeeded": 0,
            "deliveries_failed": 0,
            "messages_expired": 0,
        }
        self._running = False
        self._expiry_task: Optional[asyncio.Task] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Create the System and Broadcast channels and start the expiry task."""
        if self._running:
            self._log.warning("Communication service already initialized")
            return
        self._log.info("Initializing communication service")

        await self.create_channel(
            name="System",
            type=ChannelType.SYSTEM,
            description="System-wide announcements and notifications",
        )
        await self.create_channel(
            name="Broadcast",
            type=ChannelType.BROADCAST,
            description="Broadcast messages to all agents",
        )

        self._running = True
        self._expiry_task = asyncio.create_task(self._expiry_loop())
        self._log.info("Communication service initialized")

    async def _expiry_loop(self) -> None:
        interval = self.config.expiry_check_interval_seconds
        while self._running:
            await asyncio.sleep(interval)
            try:
                self.process_expired_messages()
            except Exception as e:
                self._log.error("Expiry check failed", error=str(e))

    async def cleanup(self) -> None:
        """Stop the expiry task and drop all channels, messages and agents."""
        self._log.info("Cleaning up communication service resources")
        self._running = False
        if self._expiry_task is not None:
            self._expiry_task.cancel()
            try:
                await self._expiry_task
            except asyncio.CancelledError:
                pass
            self._expiry_task = None

        self._channels.clear()
        self._message_history.clear()
        self._pending.clear()
        self._receipts.clear()
        self._agent_callbacks.clear()
        self._topic_subscriptions.clear()
        self._log.info("Communication service cleanup completed")

    # =========================================================================
    # Sending
    # =========================================================================

    def _expiry_for(self, options: MessagePublishOptions) -> float:
        if options.expiration is not None:
            return options.expiration
        if options.delivery_timeout is not None:
            return now_ms() + options.delivery_timeout
        if options.priority == MessagePriority.URGENT:
            return now_ms() + self.delivery_timeout / 2
        return now_ms() + self.delivery_timeout

    def _remember(self, message: AgentMessage, statuses: Dict[str, MessageDeliveryStatus]) -> None:
        self._receipts[message.id] = statuses
        while len(self._receipts) > self.max_message_history:
            self._receipts.popitem(last=False)

        if self.retain_message_history:
            self._message_history.append(message)
            if len(self._message_history) > self.max_message_history:
                self._message_history = self._message_history[-self.max_message_history:]

    async def send_message(
        self,
        message: AgentMessage,
        options: Optional[MessagePublishOptions] = None,
    ) -> str:
        """
        Send a message and try to deliver it right away.

        Recipients that are not registered yet stay PENDING until they
        register or the message expires.

        Returns:
            The message id
        """
        if not message.sender:
            raise ValidationError("Message sender is required")
        options = options or MessagePublishOptions()
        message.id = message.id or generate_id("msg")
        message.timestamp = message.timestamp or now_ms()

        if message.is_broadcast:
            recipients = [a for a in self._agent_callbacks if a != message.sender]
        else:
            recipients = list(message.recipients)
        statuses = {r: MessageDeliveryStatus.PENDING for r in recipients}

        self._log.debug(
            "Sending message",
            message_id=message.id, agent_id=message.sender, recipients=recipients,
        )
        self._pending[message.id] = PendingMessage(
            message=message,
            options=options,
            delivery_status=statuses,
            expires_at=self._expiry_for(options),
        )
        self._remember(message, statuses)
        self._stats["messages_sent"] += 1

        await self._deliver(message.id)
        return message.id

    async def broadcast_message(
        self,
        message: AgentMessage,
        options: Optional[MessagePublishOptions] = None,
    ) -> str:
        """Send to every registered agent except the sender."""
        message.recipients = BROADCAST
        return await self.send_message(message, options)

    async def _invoke(self, agent_id: str, callback: MessageCallback, message: AgentMessage) -> MessageDeliveryStatus:
        context = CorrelationContext(
            correlation_id=message.id,
            agent_id=agent_id,
            meeting_id=message.metadata.get("meeting_id"),
        )
        try:
            with context:
                result = callback(message)
                if inspect.isawaitable(result):
                    await result
        except Exception as e:
            self._log.error(
                "Message delivery failed",
                message_id=message.id, agent_id=agent_id, error=str(e),
            )
            self._stats["deliveries_failed"] += 1
            return MessageDeliveryStatus.FAILED
        self._stats["deliveries_succeeded"] += 1
        return MessageDeliveryStatus.DELIVERED

    async def _deliver(self, message_id: str) -> None:
        pending = self._pending.get(message_id)
        if pending is None:
            return

        for agent_id, status in list(pending.delivery_status.items()):
            if status != MessageDeliveryStatus.PENDING:
                continue
            callback = self._agent_callbacks.get(agent_id)
            if callback is None:
                continue
            pending.delivery_status[agent_id] = await self._invoke(agent_id, callback, pending.message)

        self._settle(message_id)

    def _settle(self, message_id: str) -> None:
        pending = self._pending.get(message_id)
        if pending is not None and pending.all_delivered() and not pending.options.require_confirmation:
            del self._pending[message_id]

    # =========================================================================
    # Channels
    # =========================================================================

    async def create_channel(
        self,
        name: str,
        type: ChannelType = ChannelType.GROUP,
        description: str = "",
        participants: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        channel = CommunicationChannel(
            name=name,
            type=ChannelType(type),
            description=description,
            participants=list(participants or []),
            metadata=dict(metadata or {}),
        )
        self._channels[channel.id] = channel
        self._log.info("Created communication channel", channel=name, channel_id=channel.id)
        return channel.id

    async def get_channel(self, channel_id: str) -> Optional[CommunicationChannel]:
        return self._channels.get(channel_id)

    def _require_channel(self, channel_id: str) -> CommunicationChannel:
        channel = self._channels.get(channel_id)
        if channel is None:
            raise NotFoundError(f"Channel not found: {channel_id}", resource="channel", resource_id=channel_id)
        return channel

    async def add_participant_to_channel(self, channel_id: str, agent_id: str) -> None:
        channel = self._require_channel(channel_id)
        if agent_id not in channel.participants:
            channel.participants.append(agent_id)
            self._log.debug("Added channel participant", agent_id=agent_id, channel=channel.name)

    async def remove_participant_from_channel(self, channel_id: str, agent_id: str) -> None:
        channel = self._require_channel(channel_id)
        channel.participants = [p for p in channel.participants if p != agent_id]
        self._log.debug("Removed channel participant", agent_id=agent_id, channel=channel.name)

    async def get_agent_channels(self, agent_id: str) -> List[CommunicationChannel]:
        return [c for c in self._channels.values() if agent_id in c.participants]

    async def get_channel_participants(self, channel_id: str) -> List[str]:
        return list(self._require_channel(channel_id).participants)

    # =========================================================================
    # Topics
    # =========================================================================

    async def publish_to_topic(
        self,
        topic: str,
        message: AgentMessage,
        options: Optional[MessagePublishOptions] = None,
    ) -> str:
        """
        Send to the topic's subscribers, highest priority first.

        With no subscribers nothing is sent and a fresh id is returned.
        """
        subscribers = await self.get_topic_subscribers(topic)
        if not subscribers:
            self._log.debug("No subscribers for topic", topic=topic)
            return generate_id("msg")

        message.recipients = subscribers
        message.metadata = {**message.metadata, "topic": topic}
        return await self.send_message(message, options)

    async def subscribe_to_topic(self, options: TopicSubscriptionOptions) -> None:
        """Subscribe, replacing any earlier subscription by the same agent."""
        self._log.debug("Subscribing to topic", agent_id=options.agent_id, topic=options.topic)
        subscriptions = [
            s for s in self._topic_subscriptions.get(options.topic, [])
            if s.agent_id != options.agent_id
        ]
        subscriptions.append(options)
        # sort() is stable: equal priorities keep subscription order
        subscriptions.sort(key=lambda s: s.priority, reverse=True)
        self._topic_subscriptions[options.topic] = subscriptions

    def _drop_subscription(self, topic: str, agent_id: str) -> None:
        remaining = [s for s in self._topic_subscriptions.get(topic, []) if s.agent_id != agent_id]
        if remaining:
            self._topic_subscriptions[topic] = remaining
        else:
            self._topic_subscriptions.pop(topic, None)

    async def unsubscribe_from_topic(self, agent_id: str, topic: str) -> None:
        self._log.debug("Unsubscribing from topic", agent_id=agent_id, topic=topic)
        self._drop_subscription(topic, agent_id)

    async def get_topic_subscribers(self, topic: str) -> List[str]:
        return [s.agent_id for s in self._topic_subscriptions.get(topic, [])]

    # =========================================================================
    # Delivery tracking
    # =========================================================================

    async def get_message_delivery_status(self, message_id: str) -> Dict[str, MessageDeliveryStatus]:
        """Per-recipient status. Raises NotFoundError for unknown messages."""
        pending = self._pending.get(message_id)
        if pending is not None:
            return dict(pending.delivery_status)
        if message_id in self._receipts:
            return dict(self._receipts[message_id])
        raise NotFoundError(f"Message not found: {message_id}", resource="message", resource_id=message_id)

    async def confirm_message_receipt(
        self,
        message_id: str,
        agent_id: str,
        status: MessageDeliveryStatus = MessageDeliveryStatus.READ,
    ) -> bool:
        """
        Record a recipient's confirmation.

        Returns:
            False if the message or the recipient is unknown
        """
        statuses = self._receipts.get(message_id)
        pending = self._pending.get(message_id)
        if pending is not None:
            statuses = pending.delivery_status
        if statuses is None:
            self._log.warning("Cannot confirm receipt of unknown message", message_id=message_id, agent_id=agent_id)
            return False
        if agent_id not in statuses:
            self._log.warning("Receipt confirmed by a non-recipient", message_id=message_id, agent_id=agent_id)
            return False

        statuses[agent_id] = MessageDeliveryStatus(status)
        self._settle(message_id)
        return True

    async def get_undelivered_messages(self, agent_id: str) -> List[AgentMessage]:
        return [
            p.message for p in self._pending.values()
            if p.delivery_status.get(agent_id) in (MessageDeliveryStatus.PENDING, MessageDeliveryStatus.FAILED)
            and p.message.addressed_to(agent_id)
        ]

    def process_expired_messages(self) -> int:
        """
        Fail the remaining deliveries of expired messages.

        Expired messages leave the pending table unless they require
        confirmation. Returns the number of expired messages.
        """
        now = now_ms()
        expired = 0
        for message_id, pending in list(self._pending.items()):
            if pending.expires_at is None or pending.expires_at >= now:
                continue
            for agent_id, status in pending.delivery_status.items():
                if status == MessageDeliveryStatus.PENDING:
                    pending.delivery_status[agent_id] = MessageDeliveryStatus.FAILED
            self._log.warning(
                "Message expired before delivery to all recipients",
                message_id=message_id,
                undelivered=sorted(a for a, s in pending.delivery_status.items() if s == MessageDeliveryStatus.FAILED),
            )
            if not pending.options.require_confirmation:
                del self._pending[message_id]
            expired += 1
        self._stats["messages_expired"] += expired
        return expired

    # =========================================================================
    # Agents
    # =========================================================================

    async def register_agent(self, agent_id: str, callback: MessageCallback) -> None:
        """Register a delivery callback and hand over messages waiting for the agent."""
        if not agent_id:
            raise ValidationError("Agent id is required")
        self._log.info("Registering agent", agent_id=agent_id)
        self._agent_callbacks[agent_id] = callback

        for message_id, pending in list(self._pending.items()):
            if pending.delivery_status.get(agent_id) != MessageDeliveryStatus.PENDING:
                continue
            if not pending.message.addressed_to(agent_id):
                continue
            pending.delivery_status[agent_id] = await self._invoke(agent_id, callback, pending.message)
            self._settle(message_id)

    async def unregister_agent(self, agent_id: str) -> None:
        """Drop the agent's callback, topics and channel memberships."""
        self._log.info("Unregistering agent", agent_id=agent_id)
        self._agent_callbacks.pop(agent_id, None)

        for topic in list(self._topic_subscriptions):
            self._drop_subscription(topic, agent_id)
        for channel in self._channels.values():
            channel.participants = [p for p in channel.participants if p != agent_id]
        for pending in self._pending.values():
            if agent_id in pending.delivery_status:
                pending.delivery_status[agent_id] = MessageDeliveryStatus.FAILED

    # =========================================================================
    # History and metrics
    # =========================================================================

    def _filter_history(
        self,
        agent_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        topic: Optional[str] = None,
        before: Optional[float] = None,
        after: Optional[float] = None,
        types: Optional[List[MessageType]] = None,
    ) -> List[AgentMessage]:
        messages = list(self._message_history)

        if agent_id:
            messages = [
                m for m in messages
                if m.sender == agent_id or m.is_broadcast or agent_id in m.recipients
            ]
        if channel_id:
            channel = self._channels.get(channel_id)
            if channel is not None:
                members = set(channel.participants)
                messages = [
                    m for m in messages
                    if not m.is_broadcast
                    and m.sender in members
                    and all(r in members for r in m.recipients)
                ]
        if topic:
            messages = [m for m in messages if m.metadata.get("topic") == topic]
        if before is not None:
            messages = [m for m in messages if m.timestamp < before]
        if after is not None:
            messages = [m for m in messages if m.timestamp > after]
        if types:
            wanted = {MessageType(t) for t in types}
            messages = [m for m in messages if m.type in wanted]

        messages.sort(key=lambda m: m.timestamp)
        return messages

    async def get_message_history(
        self,
        agent_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        topic: Optional[str] = None,
        limit: Optional[int] = None,
        before: Optional[float] = None,
        after: Optional[float] = None,
        types: Optional[List[MessageType]] = None,
    ) -> List[AgentMessage]:
        """Retained messages matching every given filter, oldest first."""
        if not self.retain_message_history:
            self._log.warning("Message history retention is disabled")
            return []
        messages = self._filter_history(agent_id, channel_id, topic, before, after, types)
        if limit and limit > 0:
            messages = messages[:limit]
        return messages

    async def clear_message_history(self) -> None:
        """Forget retained and pending messages."""
        self._message_history.clear()
        self._pending.clear()
        self._receipts.clear()
        self._log.info("Message history cleared")

    async def get_metrics(self) -> Dict[str, Any]:
        messages_by_type = {t.value: 0 for t in MessageType}
        messages_by_topic: Dict[str, int] = {}
        for message in self._message_history:
            messages_by_type[message.type.value] += 1
            topic = message.metadata.get("topic")
            if topic:
                messages_by_topic[topic] = messages_by_topic.get(topic, 0) + 1

        return {
            "messages_sent": self._stats["messages_sent"],
            "messages_retained": len(self._message_history),
            "messages_pending": len(self._pending),
            "messages_by_type": messages_by_type,
            "messages_by_channel": {
                channel_id: len(self._filter_history(channel_id=channel_id))
                for channel_id in self._channels
            },
            "messages_by_topic": messages_by_topic,
            "deliveries_succeeded": self._stats["deliveries_succeeded"],
            "deliveries_failed": self._stats["deliveries_failed"],
            "messages_expired": self._stats["messages_expired"],
            "active_channels": len(self._channels),
            "active_topics": len(self._topic_subscriptions),
            "registered_agents": len(self._agent_callbacks),
        }
