from datetime import datetime, timezone

from sqlalchemy import TIMESTAMP, Column, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import relationship

from app.database import Base


class ReplyEngineLog(Base):
    __tablename__ = "reply_engine_logs"
    __table_args__ = (Index("ix_reply_engine_logs_conversation_inbound", "conversation_id", "inbound_message_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False)
    inbound_message_id = Column(Integer, nullable=False)
    action = Column(Text, nullable=False)  # ASK, INFO, OFFER, HANDOVER, STOP
    template_key = Column(Text, nullable=False)
    question_key = Column(Text)
    reason = Column(Text)
    extracted_fields = Column(Text)  # JSON
    reply_key = Column(Text, nullable=False, unique=True)
    reply_text = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    conversation = relationship("Conversation", back_populates="reply_logs")
