from app.schemas.reply_engine import ReplyRequest, ReplyResponse, ResetResponse, StateResponse

__all__ = ["ReplyRequest", "ReplyResponse", "ResetResponse", "StateResponse"]
