"""
Conversation model: a titled container for an ordered list of messages.
"""

from sqlalchemy import Column, DateTime, Index, String
from sqlalchemy.orm import relationship

from .base import BaseModel


class Conversation(BaseModel):
    """
    Represents a chat conversation.

    ``title`` is generated as ``"Conversation #N"`` from a durable count of
    existing rows. ``last_message_at`` stays null until the first message.
    """

    __tablename__ = "conversations"
    __table_args__ = (Index("idx_conversations_created", "created_at", "id"),)

    title = Column(String(255), nullable=False)
    last_message_at = Column(DateTime, nullable=True)

    # Relationships
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.created_at",
    )
