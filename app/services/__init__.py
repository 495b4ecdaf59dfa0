from app.services.reply_engine import (
    GenerateReplyOptions,
    ReplyEngine,
    ReplyEngineResult,
    generate_reply,
)
from app.services.result import Result
from app.services.state_machine import Stage, advance, can_transition
