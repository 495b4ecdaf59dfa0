from app.models.conversation import Conversation
from app.models.message import Message
from app.models.reply_engine_log import ReplyEngineLog

__all__ = [
    "Conversation",
    "Message",
    "ReplyEngineLog",
]
