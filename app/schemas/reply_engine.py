from typing import Any, Optional

from pydantic import BaseModel, Field


class ReplyRequest(BaseModel):
    conversation_id: int
    inbound_message_id: int
    inbound_text: str = Field(default="", max_length=4000)
    channel: str = "whatsapp"
    use_llm: Optional[bool] = None
    contact_name: Optional[str] = None
    language: str = "en"


class PlanPayload(BaseModel):
    action: str
    template_key: str
    question_key: Optional[str] = None
    updates: dict[str, Any] = {}
    reason: str = ""


class ReplyDebugPayload(BaseModel):
    plan: PlanPayload
    extracted_fields: dict[str, Any] = {}
    template_key: str
    skipped: bool
    reason: Optional[str] = None
    log_error: Optional[dict[str, Any]] = None


class ReplyPayload(BaseModel):
    text: str
    reply_key: str
    debug: ReplyDebugPayload


class ReplyResponse(BaseModel):
    success: bool
    result: Optional[ReplyPayload] = None
    message: Optional[str] = None


class StateResponse(BaseModel):
    conversation_id: int
    version: int
    state: dict[str, Any]
    violations: list[str] = []


class ResetResponse(BaseModel):
    success: bool
    conversation_id: int
