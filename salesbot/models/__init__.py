from salesbot.models.conversation import Conversation
from salesbot.models.memory_entry import MemoryEntry
from salesbot.models.message import Message

__all__ = [
    "Conversation",
    "Message",
    "MemoryEntry",
]
