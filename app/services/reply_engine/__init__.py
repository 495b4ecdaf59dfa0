from app.services.reply_engine.audit_log import (
    InMemoryReplyLogStore,
    ReplyLogEntry,
    ReplyLogStore,
    SqlReplyLogStore,
)
from app.services.reply_engine.errors import (
    ConversationNotFoundError,
    ReplyEngineError,
    StateSaveError,
    StateVersionConflictError,
    TemplateNotFoundError,
)
from app.services.reply_engine.extract import Extractor, RuleBasedExtractor, extract_fields, merge_extracted_fields
from app.services.reply_engine.fsm import (
    InMemoryStateStore,
    SqlStateStore,
    StateStore,
    check_invariants,
    default_state,
    merge_state,
)
from app.services.reply_engine.history import InMemoryMessageHistory, MessageHistory, SqlMessageHistory
from app.services.reply_engine.llm_gateway import LLMPolishGateway, PolishGateway, get_final_text
from app.services.reply_engine.orchestrator import ReplyEngine, build_engine, compute_reply_key, generate_reply
from app.services.reply_engine.planner import plan_next_action, required_fields_for_service
from app.services.reply_engine.templates import TemplateCatalog, TemplateKey, render
from app.services.reply_engine.types import (
    FSMState,
    GenerateReplyOptions,
    Plan,
    PlannerAction,
    ReplyEngineResult,
    ServiceKey,
)

__all__ = [
    "ConversationNotFoundError",
    "Extractor",
    "FSMState",
    "GenerateReplyOptions",
    "InMemoryMessageHistory",
    "InMemoryReplyLogStore",
    "InMemoryStateStore",
    "LLMPolishGateway",
    "MessageHistory",
    "Plan",
    "PlannerAction",
    "PolishGateway",
    "ReplyEngine",
    "ReplyEngineError",
    "ReplyEngineResult",
    "ReplyLogEntry",
    "ReplyLogStore",
    "RuleBasedExtractor",
    "ServiceKey",
    "SqlMessageHistory",
    "SqlReplyLogStore",
    "SqlStateStore",
    "StateSaveError",
    "StateStore",
    "StateVersionConflictError",
    "TemplateCatalog",
    "TemplateKey",
    "TemplateNotFoundError",
    "build_engine",
    "check_invariants",
    "compute_reply_key",
    "default_state",
    "extract_fields",
    "generate_reply",
    "get_final_text",
    "merge_extracted_fields",
    "merge_state",
    "plan_next_action",
    "render",
    "required_fields_for_service",
]
