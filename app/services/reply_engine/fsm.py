"""Per-conversation FSM state: serialization, merge rules and storage backends.

The state lives as a JSON blob on the conversation record. Every mutation goes
through ``StateStore.update`` which loads, merges and writes back under an
optimistic version check.
"""

from __future__ import annotations

import dataclasses
import json
import threading
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

from pydantic import ValidationError
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Conversation
from app.services.reply_engine.errors import (
    ConversationNotFoundError,
    StateLoadError,
    StateSaveError,
    StateVersionConflictError,
)
from app.services.reply_engine.types import CollectedFields, FSMState, ServiceKey, StopFlag
from app.services.state_machine import Stage, advance, parse_stage

logger = get_logger("reply_engine.fsm")

MAX_QUALIFYING_QUESTIONS = 5

_MERGEABLE_FIELDS = {f.name for f in dataclasses.fields(FSMState)} - {"version"}


def default_state() -> FSMState:
    return FSMState()


def state_to_dict(state: FSMState) -> dict[str, Any]:
    return {
        "serviceKey": state.service_key,
        "stage": state.stage.value,
        "collected": dict(state.collected),
        "required": list(state.required),
        "askedQuestionKeys": list(state.asked_question_keys),
        "followUpStep": state.follow_up_step,
        "lastInboundMessageId": state.last_inbound_message_id,
        "lastOutboundReplyKey": state.last_outbound_reply_key,
        "stop": {"enabled": state.stop.enabled, "reason": state.stop.reason},
    }


def serialize_state(state: FSMState) -> str:
    return json.dumps(state_to_dict(state), ensure_ascii=False, default=str)


def _dedupe(keys: Iterable[Any]) -> list[str]:
    result: list[str] = []
    for key in keys:
        if key is None:
            continue
        key = str(key)
        if key not in result:
            result.append(key)
    return result


def _parse_stop(value: Any) -> StopFlag:
    if isinstance(value, StopFlag):
        return StopFlag(enabled=value.enabled, reason=value.reason)
    if isinstance(value, dict):
        return StopFlag(enabled=bool(value.get("enabled")), reason=value.get("reason"))
    return StopFlag(enabled=bool(value))


def state_from_dict(data: dict[str, Any]) -> FSMState:
    """Shallow-merge a stored blob onto the default state.

    Missing keys keep their defaults, so blobs written by older versions stay valid.
    """
    state = default_state()

    if "serviceKey" in data:
        state.service_key = data["serviceKey"] or None
    if "stage" in data:
        state.stage = parse_stage(data["stage"])
    if isinstance(data.get("collected"), dict):
        state.collected = dict(data["collected"])
    if isinstance(data.get("required"), list):
        state.required = [str(item) for item in data["required"]]
    if isinstance(data.get("askedQuestionKeys"), list):
        state.asked_question_keys = _dedupe(data["askedQuestionKeys"])
    if "followUpStep" in data:
        try:
            state.follow_up_step = int(data["followUpStep"] or 0)
        except (TypeError, ValueError):
            state.follow_up_step = 0
    if data.get("lastInboundMessageId") is not None:
        state.last_inbound_message_id = str(data["lastInboundMessageId"])
    if data.get("lastOutboundReplyKey"):
        state.last_outbound_reply_key = str(data["lastOutboundReplyKey"])
    if "stop" in data:
        state.stop = _parse_stop(data["stop"])

    return state


def parse_state(blob: Optional[str], conversation_id: Optional[int] = None) -> FSMState:
    """Parse a stored blob. Corrupt data yields the default state, never an exception."""
    if not blob:
        return default_state()

    try:
        data = json.loads(blob)
    except (TypeError, ValueError) as exc:
        logger.warning(
            "Corrupt FSM state blob, using default state",
            extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
        )
        return default_state()

    if not isinstance(data, dict):
        logger.warning(
            "FSM state blob is not an object, using default state",
            extra={"context": {"conversation_id": conversation_id, "type": type(data).__name__}},
        )
        return default_state()

    return state_from_dict(data)


def validate_collected_value(name: str, value: Any) -> tuple[bool, Any]:
    """Validate one `collected` value at the merge boundary."""
    if name not in CollectedFields.model_fields:
        return True, value
    try:
        model = CollectedFields.model_validate({name: value})
    except ValidationError as exc:
        logger.warning(
            "Dropping invalid collected value",
            extra={"context": {"field": name, "value": repr(value), "error": exc.errors()[0].get("msg")}},
        )
        return False, None
    return True, getattr(model, name)


def merge_collected(existing: dict[str, Any], incoming: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Key-wise merge: non-null incoming values win, nothing is ever cleared."""
    merged = dict(existing or {})
    for key, value in (incoming or {}).items():
        if value is None:
            continue
        ok, coerced = validate_collected_value(key, value)
        if ok:
            merged[key] = coerced
    return merged


def merge_question_keys(existing: Iterable[str], incoming: Optional[Iterable[str]]) -> list[str]:
    """Ordered union: existing keys first, then newly introduced ones."""
    return _dedupe([*(existing or []), *(incoming or [])])


def merge_state(current: FSMState, partial: Optional[dict[str, Any]]) -> FSMState:
    merged = current.copy()

    for key, value in (partial or {}).items():
        if key == "collected":
            merged.collected = merge_collected(merged.collected, value)
        elif key == "asked_question_keys":
            merged.asked_question_keys = merge_question_keys(merged.asked_question_keys, value)
        elif key == "stage":
            proposed = parse_stage(value)
            merged.stage = advance(merged.stage, proposed)
            if merged.stage != proposed:
                logger.warning(
                    "Ignoring backward stage transition",
                    extra={"context": {"from": merged.stage.value, "to": proposed.value}},
                )
        elif key == "stop":
            merged.stop = _parse_stop(value)
        elif key in _MERGEABLE_FIELDS:
            setattr(merged, key, value)
        else:
            logger.warning("Ignoring unknown FSM state field", extra={"context": {"field": key}})

    return merged


def should_stop(state: FSMState) -> bool:
    return bool(state.stop.enabled)


def was_question_asked(state: FSMState, question_key: str) -> bool:
    return question_key in state.asked_question_keys


def check_invariants(state: FSMState) -> list[str]:
    """Check FSM invariants. Returns a list of violations."""
    violations = []

    if len(state.asked_question_keys) != len(set(state.asked_question_keys)):
        violations.append("duplicate_asked_question_keys")

    if state.service_key == ServiceKey.BUSINESS_SETUP.value:
        if len(state.asked_question_keys) > MAX_QUALIFYING_QUESTIONS:
            violations.append("question_ceiling_exceeded")

    if state.service_key and not state.required:
        violations.append("service_without_required_fields")

    if state.stage == Stage.QUALIFYING and not state.service_key:
        violations.append("qualifying_without_service")

    return violations


class StateStore(ABC):
    """Storage backend for FSM state blobs with a version token per record."""

    @abstractmethod
    def _read(self, conversation_id: int) -> tuple[Optional[str], int]:
        """Return (blob, version). Raise StateLoadError on backend failure."""

    @abstractmethod
    def _write(self, conversation_id: int, blob: str, expected_version: Optional[int]) -> int:
        """Persist the blob and return the new version.

        With an expected_version the write must be conditional on it and raise
        StateVersionConflictError when the stored version differs.
        """

    def load(self, conversation_id: int) -> FSMState:
        try:
            blob, version = self._read(conversation_id)
        except StateLoadError as exc:
            logger.error(
                "Failed to load FSM state, using default state",
                extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
            )
            return default_state()

        state = parse_state(blob, conversation_id)
        state.version = version
        return state

    def save(self, conversation_id: int, state: FSMState, expected_version: Optional[int] = None) -> None:
        state.version = self._write(conversation_id, serialize_state(state), expected_version)

    def update(
        self,
        conversation_id: int,
        partial: Optional[dict[str, Any]],
        expected_version: Optional[int] = None,
    ) -> FSMState:
        current = self.load(conversation_id)
        if expected_version is not None and current.version != expected_version:
            raise StateVersionConflictError(conversation_id, expected_version, current.version)

        merged = merge_state(current, partial)
        self.save(conversation_id, merged, expected_version=current.version)
        return merged

    def reset(self, conversation_id: int) -> None:
        self.save(conversation_id, default_state())
        logger.info("FSM state reset", extra={"context": {"conversation_id": conversation_id}})


class InMemoryStateStore(StateStore):
    """Process-local store, used by tests and offline tooling."""

    def __init__(self, blobs: Optional[dict[int, str]] = None):
        self._blobs: dict[int, str] = dict(blobs or {})
        self._versions: dict[int, int] = {key: 0 for key in self._blobs}
        self._lock = threading.Lock()

    def put_raw(self, conversation_id: int, blob: Optional[str]) -> None:
        with self._lock:
            self._blobs[conversation_id] = blob
            self._versions[conversation_id] = self._versions.get(conversation_id, 0) + 1

    def raw(self, conversation_id: int) -> Optional[str]:
        return self._blobs.get(conversation_id)

    def _read(self, conversation_id: int) -> tuple[Optional[str], int]:
        with self._lock:
            return self._blobs.get(conversation_id), self._versions.get(conversation_id, 0)

    def _write(self, conversation_id: int, blob: str, expected_version: Optional[int]) -> int:
        with self._lock:
            current = self._versions.get(conversation_id, 0)
            if expected_version is not None and expected_version != current:
                raise StateVersionConflictError(conversation_id, expected_version, current)
            self._blobs[conversation_id] = blob
            self._versions[conversation_id] = current + 1
            return current + 1


class SqlStateStore(StateStore):
    """State blob stored on `conversations.rule_engine_memory`, versioned by `state_version`."""

    def __init__(self, db: Session):
        self.db = db

    def _read(self, conversation_id: int) -> tuple[Optional[str], int]:
        try:
            row = (
                self.db.query(Conversation.rule_engine_memory, Conversation.state_version)
                .filter(Conversation.id == conversation_id)
                .first()
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StateLoadError(str(exc)) from exc

        if row is None:
            logger.warning("Conversation not found on state load", extra={"context": {"conversation_id": conversation_id}})
            return None, 0
        return row.rule_engine_memory, row.state_version or 0

    def _write(self, conversation_id: int, blob: str, expected_version: Optional[int]) -> int:
        stmt = update(Conversation).where(Conversation.id == conversation_id)
        if expected_version is not None:
            stmt = stmt.where(Conversation.state_version == expected_version)
        stmt = stmt.values(rule_engine_memory=blob, state_version=Conversation.state_version + 1)

        try:
            result = self.db.execute(stmt)
            if result.rowcount == 0:
                row = self.db.query(Conversation.state_version).filter(Conversation.id == conversation_id).first()
                if row is None:
                    raise ConversationNotFoundError(conversation_id)
                raise StateVersionConflictError(conversation_id, expected_version, row.state_version)
            new_version = (
                self.db.query(Conversation.state_version).filter(Conversation.id == conversation_id).scalar()
            )
        except SQLAlchemyError as exc:
            raise StateSaveError(f"Failed to save state for conversation {conversation_id}: {exc}") from exc

        return new_version
