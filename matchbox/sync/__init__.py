"""
Sync core: live feeds, the message store and the inbox.
"""
from matchbox.sync.directory import ConversationDirectory
from matchbox.sync.message_store import MessageStore
from matchbox.sync.offline import OfflineQueue
from matchbox.sync.subscriptions import Subscription, SubscriptionManager

__all__ = [
    "ConversationDirectory",
    "MessageStore",
    "OfflineQueue",
    "Subscription",
    "SubscriptionManager",
]
