"""Event bus for chat-relay."""

from chat_relay.events.bus import EventBus

__all__ = ["EventBus"]
