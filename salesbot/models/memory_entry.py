import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from salesbot.database import Base, JSONType


class MemoryEntry(Base):
    __tablename__ = "memory_entries"
    __table_args__ = (UniqueConstraint("conversation_id", "key", "category", name="uq_memory_entry_key"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id"), nullable=False, index=True)
    key = Column(Text, nullable=False)
    category = Column(Text, nullable=False, index=True)  # funnel_stage, active_upsell, purchase_history, ...
    value = Column(JSONType)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="memory_entries")
