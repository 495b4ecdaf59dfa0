from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Optional, TypedDict

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.services.state_machine import Stage


class ServiceKey(str, Enum):
    FREELANCE_VISA = "freelance_visa"
    BUSINESS_SETUP = "business_setup"
    FAMILY_VISA = "family_visa"
    VISIT_VISA = "visit_visa"
    GOLDEN_VISA = "golden_visa"
    EMPLOYMENT_VISA = "employment_visa"
    VISA_RENEWAL = "visa_renewal"
    EMIRATES_ID = "emirates_id"
    PRO_SERVICES = "pro_services"


class PlannerAction(str, Enum):
    ASK = "ASK"
    INFO = "INFO"
    OFFER = "OFFER"
    HANDOVER = "HANDOVER"
    STOP = "STOP"


class ExtractedFields(TypedDict, total=False):
    serviceKey: str
    fullName: str
    nationality: str
    expiryDate: str
    businessActivity: str
    jurisdiction: str
    partnersCount: int
    visasCount: int


class CollectedFields(BaseModel):
    """Shape of known `collected` values. Unknown keys pass through untouched."""

    model_config = ConfigDict(extra="allow")

    serviceKey: Optional[str] = None
    fullName: Optional[str] = Field(default=None, min_length=3, max_length=120)
    nationality: Optional[str] = Field(default=None, min_length=2, max_length=60)
    expiryDate: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    businessActivity: Optional[str] = Field(default=None, min_length=2, max_length=100)
    jurisdiction: Optional[Literal["mainland", "freezone"]] = None
    partnersCount: Optional[int] = Field(default=None, ge=1, le=10)
    visasCount: Optional[int] = Field(default=None, ge=1, le=20)
    greetingSent: Optional[bool] = None

    @field_validator("fullName")
    @classmethod
    def _name_word_count(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not 2 <= len(value.split()) <= 5:
            raise ValueError("full name must have 2-5 words")
        return value


@dataclass
class StopFlag:
    enabled: bool = False
    reason: Optional[str] = None


@dataclass
class FSMState:
    service_key: Optional[str] = None
    stage: Stage = Stage.NEW
    collected: dict[str, Any] = field(default_factory=dict)
    required: list[str] = field(default_factory=list)
    asked_question_keys: list[str] = field(default_factory=list)
    follow_up_step: int = 0
    last_inbound_message_id: Optional[str] = None
    last_outbound_reply_key: Optional[str] = None
    stop: StopFlag = field(default_factory=StopFlag)
    # Optimistic concurrency token of the stored record; not part of the blob.
    version: int = 0

    def copy(self) -> "FSMState":
        return copy.deepcopy(self)


@dataclass(frozen=True)
class Plan:
    action: PlannerAction
    template_key: str
    question_key: Optional[str] = None
    updates: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        updates = copy.deepcopy(self.updates)
        if isinstance(updates.get("stage"), Stage):
            updates["stage"] = updates["stage"].value
        return {
            "action": self.action.value,
            "template_key": self.template_key,
            "question_key": self.question_key,
            "updates": updates,
            "reason": self.reason,
        }


@dataclass
class GenerateReplyOptions:
    conversation_id: int
    inbound_message_id: int
    inbound_text: str
    channel: str = "whatsapp"
    use_llm: bool = False
    contact_name: Optional[str] = None
    language: str = "en"


@dataclass
class ReplyDebug:
    plan: Plan
    extracted_fields: dict[str, Any]
    template_key: str
    skipped: bool
    reason: Optional[str] = None
    log_error: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan": self.plan.to_dict(),
            "extracted_fields": dict(self.extracted_fields),
            "template_key": self.template_key,
            "skipped": self.skipped,
            "reason": self.reason,
            "log_error": self.log_error,
        }


@dataclass
class ReplyEngineResult:
    text: str
    reply_key: str
    debug: ReplyDebug

    @property
    def skipped(self) -> bool:
        return self.debug.skipped

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "reply_key": self.reply_key, "debug": self.debug.to_dict()}
