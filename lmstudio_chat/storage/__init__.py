"""Storage subsystem.

- persistence: SQLAlchemy models and the ConversationStore
"""

from .persistence import Conversation, ConversationStore, Message, Preference, generate_item_id

__all__ = [
    "Conversation",
    "ConversationStore",
    "Message",
    "Preference",
    "generate_item_id",
]
