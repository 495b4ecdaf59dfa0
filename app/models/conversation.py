from datetime import datetime, timezone

from sqlalchemy import TIMESTAMP, Column, Integer, Text
from sqlalchemy.orm import relationship

from app.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contact_name = Column(Text)
    channel = Column(Text, nullable=False, default="whatsapp")  # whatsapp, instagram, webchat
    status = Column(Text, nullable=False, default="open")  # open, closed
    rule_engine_memory = Column(Text)  # serialized reply engine FSM state
    state_version = Column(Integer, nullable=False, default=0)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=_utcnow)
    last_message_at = Column(TIMESTAMP(timezone=True))

    messages = relationship("Message", back_populates="conversation")
    reply_logs = relationship("ReplyEngineLog", back_populates="conversation")
