"""Reply engine endpoints: generate a reply, inspect and reset FSM state."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.models import Conversation
from app.schemas.reply_engine import ReplyRequest, ReplyResponse, ResetResponse, StateResponse
from app.services.reply_engine import (
    GenerateReplyOptions,
    SqlStateStore,
    StateSaveError,
    StateVersionConflictError,
    check_invariants,
    generate_reply,
)
from app.services.reply_engine.fsm import state_to_dict

logger = get_logger("reply_engine_router")

router = APIRouter(prefix="/reply-engine", tags=["reply-engine"])


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.reply_engine_admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="REPLY_ENGINE_ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _require_conversation(db: Session, conversation_id: int) -> Conversation:
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if not conversation:
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")
    return conversation


@router.post("/reply", response_model=ReplyResponse)
def create_reply(request: ReplyRequest, db: Session = Depends(get_db)):
    """Generate the reply for one inbound message. Sending it is the caller's job."""
    conversation = _require_conversation(db, request.conversation_id)

    options = GenerateReplyOptions(
        conversation_id=request.conversation_id,
        inbound_message_id=request.inbound_message_id,
        inbound_text=request.inbound_text,
        channel=request.channel or conversation.channel,
        use_llm=settings.reply_engine_use_llm if request.use_llm is None else request.use_llm,
        contact_name=request.contact_name or conversation.contact_name,
        language=request.language,
    )

    try:
        result = generate_reply(db, options)
        db.commit()
    except StateVersionConflictError as e:
        db.rollback()
        logger.warning(f"Reply engine state conflict: {e}")
        raise HTTPException(status_code=409, detail=str(e))
    except StateSaveError as e:
        db.rollback()
        logger.error(f"Reply engine state save failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to persist conversation state")
    except Exception:
        db.rollback()
        raise

    if result is None:
        return ReplyResponse(success=False, message="No reply generated: template missing, operators alerted")

    return ReplyResponse(success=True, result=result.to_dict())


@router.get("/conversations/{conversation_id}/state", response_model=StateResponse)
def get_state(conversation_id: int, db: Session = Depends(get_db)):
    _require_conversation(db, conversation_id)
    state = SqlStateStore(db).load(conversation_id)
    return StateResponse(
        conversation_id=conversation_id,
        version=state.version,
        state=state_to_dict(state),
        violations=check_invariants(state),
    )


@router.post("/conversations/{conversation_id}/reset", response_model=ResetResponse)
def reset_state(
    conversation_id: int,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    _require_conversation(db, conversation_id)

    try:
        SqlStateStore(db).reset(conversation_id)
        db.commit()
    except StateSaveError as e:
        db.rollback()
        raise HTTPException(status_code=500, detail=str(e))

    return ResetResponse(success=True, conversation_id=conversation_id)
