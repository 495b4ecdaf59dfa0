"""Audit log of generated replies, also the durable duplicate-inbound check.

Appending is best effort: a failure comes back as a failed Result and ends up
in the reply's debug payload, never as an exception.
"""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import ReplyEngineLog
from app.services.result import Result

logger = get_logger("reply_engine.audit_log")

MAX_LOGGED_REPLY_LENGTH = 500


@dataclass
class ReplyLogEntry:
    conversation_id: int
    inbound_message_id: int
    action: str
    template_key: str
    reply_key: str
    reply_text: str
    question_key: Optional[str] = None
    reason: Optional[str] = None
    extracted_fields: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ReplyLogStore(ABC):
    @abstractmethod
    def find_latest(self, conversation_id: int, inbound_message_id: int) -> Optional[ReplyLogEntry]:
        """Latest entry for the inbound message, or None."""

    @abstractmethod
    def append(self, entry: ReplyLogEntry) -> Result[ReplyLogEntry]:
        pass


class InMemoryReplyLogStore(ReplyLogStore):
    def __init__(self):
        self.entries: list[ReplyLogEntry] = []
        self._lock = threading.Lock()

    def find_latest(self, conversation_id: int, inbound_message_id: int) -> Optional[ReplyLogEntry]:
        with self._lock:
            for entry in reversed(self.entries):
                if entry.conversation_id == conversation_id and entry.inbound_message_id == inbound_message_id:
                    return entry
        return None

    def append(self, entry: ReplyLogEntry) -> Result[ReplyLogEntry]:
        with self._lock:
            if any(existing.reply_key == entry.reply_key for existing in self.entries):
                return Result.failure(f"Duplicate reply_key {entry.reply_key}", "duplicate_reply_key")
            entry.created_at = entry.created_at or datetime.now(timezone.utc)
            self.entries.append(entry)
        return Result.success(entry)


def _entry_from_row(row: ReplyEngineLog) -> ReplyLogEntry:
    try:
        extracted = json.loads(row.extracted_fields) if row.extracted_fields else {}
    except (TypeError, ValueError):
        extracted = {}
    return ReplyLogEntry(
        conversation_id=row.conversation_id,
        inbound_message_id=row.inbound_message_id,
        action=row.action,
        template_key=row.template_key,
        reply_key=row.reply_key,
        reply_text=row.reply_text or "",
        question_key=row.question_key,
        reason=row.reason,
        extracted_fields=extracted if isinstance(extracted, dict) else {},
        created_at=row.created_at,
    )


class SqlReplyLogStore(ReplyLogStore):
    def __init__(self, db: Session):
        self.db = db

    def find_latest(self, conversation_id: int, inbound_message_id: int) -> Optional[ReplyLogEntry]:
        try:
            row = (
                self.db.query(ReplyEngineLog)
                .filter(
                    ReplyEngineLog.conversation_id == conversation_id,
                    ReplyEngineLog.inbound_message_id == inbound_message_id,
                )
                .order_by(ReplyEngineLog.created_at.desc(), ReplyEngineLog.id.desc())
                .first()
            )
        except SQLAlchemyError as exc:
            # Lookup is only the first of two duplicate guards; proceed without it.
            self.db.rollback()
            logger.warning(
                "Audit log lookup failed",
                extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
            )
            return None
        return _entry_from_row(row) if row else None

    def append(self, entry: ReplyLogEntry) -> Result[ReplyLogEntry]:
        row = ReplyEngineLog(
            conversation_id=entry.conversation_id,
            inbound_message_id=entry.inbound_message_id,
            action=entry.action,
            template_key=entry.template_key,
            question_key=entry.question_key,
            reason=entry.reason,
            extracted_fields=json.dumps(entry.extracted_fields, ensure_ascii=False, default=str),
            reply_key=entry.reply_key,
            reply_text=(entry.reply_text or "")[:MAX_LOGGED_REPLY_LENGTH],
        )
        # Savepoint: a failed insert must not roll back the state update of this turn.
        savepoint = self.db.begin_nested()
        try:
            self.db.add(row)
            self.db.flush()
        except IntegrityError as exc:
            savepoint.rollback()
            return Result.failure(str(exc.orig), "duplicate_reply_key")
        except SQLAlchemyError as exc:
            savepoint.rollback()
            return Result.from_exception(exc, "log_write_failed")
        savepoint.commit()

        entry.created_at = row.created_at
        return Result.success(entry)


def log_to_console(entry: ReplyLogEntry) -> Result[ReplyLogEntry]:
    """Fallback when no audit store is configured."""
    logger.info(
        "Reply engine decision",
        extra={
            "context": {
                "conversation_id": entry.conversation_id,
                "inbound_message_id": entry.inbound_message_id,
                "action": entry.action,
                "template_key": entry.template_key,
                "question_key": entry.question_key,
                "reply_key": entry.reply_key,
                "reason": entry.reason,
            }
        },
    )
    return Result.success(entry)
