"""Message history reader used for history-aware extraction."""

from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Message

logger = get_logger("reply_engine.history")

INBOUND = "inbound"


class MessageHistory(ABC):
    @abstractmethod
    def get_history(
        self, conversation_id: int, limit: int, exclude_message_id: Optional[int] = None
    ) -> list[str]:
        """Customer message texts, oldest first, at most `limit` of the most recent."""


class SqlMessageHistory(MessageHistory):
    def __init__(self, db: Session):
        self.db = db

    def get_history(
        self, conversation_id: int, limit: int, exclude_message_id: Optional[int] = None
    ) -> list[str]:
        query = self.db.query(Message.body).filter(
            Message.conversation_id == conversation_id,
            Message.direction == INBOUND,
        )
        if exclude_message_id is not None:
            query = query.filter(Message.id != exclude_message_id)

        rows = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit).all()
        return [row.body for row in reversed(rows) if row.body]


class InMemoryMessageHistory(MessageHistory):
    def __init__(self):
        self._messages: dict[int, list[tuple[int, str, str]]] = {}

    def add(self, conversation_id: int, message_id: int, body: str, direction: str = INBOUND) -> None:
        self._messages.setdefault(conversation_id, []).append((message_id, direction, body))

    def get_history(
        self, conversation_id: int, limit: int, exclude_message_id: Optional[int] = None
    ) -> list[str]:
        bodies = [
            body
            for message_id, direction, body in self._messages.get(conversation_id, [])
            if direction == INBOUND and message_id != exclude_message_id and body
        ]
        return bodies[-limit:] if limit > 0 else []


def combine_for_extraction(inbound_text: str, history: list[str]) -> str:
    """Newest text first, one message per line, so recent statements win ties."""
    lines = [inbound_text or ""]
    lines.extend(reversed(history))
    return "\n".join(line.strip() for line in lines if line and line.strip())
