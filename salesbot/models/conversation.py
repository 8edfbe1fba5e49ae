import uuid

from sqlalchemy import Column, DateTime, Text, Uuid
from sqlalchemy.orm import relationship

from salesbot.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    contact_key = Column(Text, nullable=False, unique=True, index=True)  # WhatsApp JID or phone
    contact_name = Column(Text)
    started_at = Column(DateTime(timezone=True), nullable=False)
    last_message_at = Column(DateTime(timezone=True))

    messages = relationship("Message", back_populates="conversation", order_by="Message.created_at")
    memory_entries = relationship("MemoryEntry", back_populates="conversation")
