"""Reply orchestration: one inbound message in, at most one reply out.

Two duplicate guards run on every turn. The audit log lookup by
(conversation, inbound message) happens before any state is touched; the
reply-key comparison against the state happens after planning.
"""

from __future__ import annotations

import hashlib
from typing import Any, Optional, Union

from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_turn_logger
from app.services.alert_service import alert_error
from app.services.reply_engine.audit_log import (
    ReplyLogEntry,
    ReplyLogStore,
    SqlReplyLogStore,
    log_to_console,
)
from app.services.reply_engine.errors import StateVersionConflictError, TemplateNotFoundError
from app.services.reply_engine.extract import Extractor, RuleBasedExtractor, merge_extracted_fields
from app.services.reply_engine.fsm import SqlStateStore, StateStore, check_invariants
from app.services.reply_engine.history import MessageHistory, SqlMessageHistory, combine_for_extraction
from app.services.reply_engine.llm_gateway import PolishGateway, get_final_text
from app.services.reply_engine.planner import greeting_plan, is_name_prompt_active, plan_next_action
from app.services.reply_engine.templates import (
    FALLBACK_GREETING,
    TemplateCatalog,
    TemplateKey,
    default_catalog,
)
from app.services.reply_engine.types import (
    FSMState,
    GenerateReplyOptions,
    Plan,
    PlannerAction,
    ReplyDebug,
    ReplyEngineResult,
)

DUPLICATE_INBOUND_REASON = "Duplicate inbound message - reply already generated"
DUPLICATE_REPLY_KEY_REASON = "Duplicate replyKey detected - same decision already sent"
DEFAULT_CONTACT_NAME = "there"


def compute_reply_key(
    conversation_id: int,
    inbound_message_id: int,
    action: Union[PlannerAction, str],
    template_key: str,
    question_key: Optional[str] = None,
) -> str:
    """SHA-256 over the decision tuple. Same tuple, same key."""
    action_value = action.value if isinstance(action, PlannerAction) else str(action)
    raw = f"{conversation_id}:{inbound_message_id}:{action_value}:{template_key}:{question_key or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def build_variables(state: FSMState, options: GenerateReplyOptions) -> dict[str, Any]:
    variables: dict[str, Any] = {key: value for key, value in state.collected.items() if value is not None}
    variables["name"] = options.contact_name or state.collected.get("fullName") or DEFAULT_CONTACT_NAME
    variables["service"] = (state.service_key or "").replace("_", " ")
    variables["language"] = options.language
    return variables


class ReplyEngine:
    """Deterministic reply engine wired to its storage collaborators."""

    def __init__(
        self,
        state_store: StateStore,
        history: Optional[MessageHistory] = None,
        log_store: Optional[ReplyLogStore] = None,
        catalog: Optional[TemplateCatalog] = None,
        extractor: Optional[Extractor] = None,
        polish_gateway: Optional[PolishGateway] = None,
        history_limit: Optional[int] = None,
    ):
        self.state_store = state_store
        self.history = history
        self.log_store = log_store
        self.catalog = catalog or default_catalog
        self.extractor = extractor or RuleBasedExtractor()
        self.polish_gateway = polish_gateway
        self.history_limit = history_limit if history_limit is not None else settings.reply_engine_history_limit

    def generate_reply(self, options: GenerateReplyOptions) -> Optional[ReplyEngineResult]:
        log = get_turn_logger("reply_engine", options.conversation_id, options.inbound_message_id)

        logged = self._find_logged(options)
        if logged is not None:
            log.info("Duplicate inbound, returning logged reply", context={"reply_key": logged.reply_key})
            return self._replay(logged)

        state = self.state_store.load(options.conversation_id)

        if state.stop.enabled:
            plan = plan_next_action(state, options.inbound_text)
            log.info("Conversation stopped, no reply", context={"reason": state.stop.reason})
            return self._skipped(plan, {}, plan.reason)

        if state.last_inbound_message_id == str(options.inbound_message_id):
            reason = "Duplicate inbound message - already processed"
            log.info(reason, context={"reply_key": state.last_outbound_reply_key})
            plan = Plan(action=PlannerAction.STOP, template_key="", reason=reason)
            return self._skipped(plan, {}, reason, reply_key=state.last_outbound_reply_key or "")

        if not state.collected.get("greetingSent"):
            return self._greet(state, options, log)

        history: list[str] = []
        if self.history is not None:
            history = self.history.get_history(
                options.conversation_id, self.history_limit, exclude_message_id=options.inbound_message_id
            )
        extracted = dict(
            self.extractor.extract(
                combine_for_extraction(options.inbound_text, history),
                name_prompt=is_name_prompt_active(state),
            )
        )

        working = state.copy()
        working.collected = merge_extracted_fields(state.collected, extracted)

        plan = plan_next_action(working, options.inbound_text, extracted)

        try:
            template = self.catalog.require_template(plan.template_key, options.language)
        except TemplateNotFoundError as exc:
            log.error(
                "Template not found for planned action",
                context={"action": plan.action.value, "template_key": exc.template_key, "language": exc.language},
            )
            alert_error(
                "Reply engine template missing",
                {
                    "conversation_id": options.conversation_id,
                    "template_key": plan.template_key,
                    "language": options.language,
                },
            )
            return None

        for key, value in plan.updates.get("collected", {}).items():
            working.collected.setdefault(key, value)
        if plan.updates.get("service_key"):
            working.service_key = plan.updates["service_key"]

        text = get_final_text(
            plan.template_key,
            template,
            build_variables(working, options),
            use_llm=options.use_llm,
            gateway=self.polish_gateway,
        )

        reply_key = compute_reply_key(
            options.conversation_id,
            options.inbound_message_id,
            plan.action,
            plan.template_key,
            plan.question_key,
        )

        if reply_key == state.last_outbound_reply_key:
            log.info(DUPLICATE_REPLY_KEY_REASON, context={"reply_key": reply_key})
            return self._skipped(plan, extracted, DUPLICATE_REPLY_KEY_REASON, reply_key=reply_key, text=text)

        partial = self._state_updates(state, working, plan, options, reply_key)
        try:
            new_state = self.state_store.update(options.conversation_id, partial, expected_version=state.version)
        except StateVersionConflictError:
            logged = self._find_logged(options)
            if logged is not None:
                log.info("Concurrent delivery already answered this inbound", context={"reply_key": logged.reply_key})
                return self._replay(logged)
            raise

        violations = check_invariants(new_state)
        if violations:
            log.warning("FSM invariant violated", context={"violations": violations})

        log_error = self._append_log(
            ReplyLogEntry(
                conversation_id=options.conversation_id,
                inbound_message_id=options.inbound_message_id,
                action=plan.action.value,
                template_key=plan.template_key,
                question_key=plan.question_key,
                reason=plan.reason,
                extracted_fields=extracted,
                reply_key=reply_key,
                reply_text=text,
            ),
            log,
        )

        log.info(
            "Reply generated",
            context={
                "action": plan.action.value,
                "template_key": plan.template_key,
                "question_key": plan.question_key,
                "reply_key": reply_key,
                "stage": new_state.stage.value,
            },
        )

        return ReplyEngineResult(
            text=text,
            reply_key=reply_key,
            debug=ReplyDebug(
                plan=plan,
                extracted_fields=extracted,
                template_key=plan.template_key,
                skipped=False,
                log_error=log_error,
            ),
        )

    def _greet(self, state: FSMState, options: GenerateReplyOptions, log) -> ReplyEngineResult:
        plan = greeting_plan()

        template = self.catalog.get_template(TemplateKey.GREETING.value, options.language)
        if template is None:
            log.error("Greeting template missing, using fallback greeting")
            template = FALLBACK_GREETING

        text = get_final_text(
            plan.template_key,
            template,
            build_variables(state, options),
            use_llm=options.use_llm,
            gateway=self.polish_gateway,
        )
        reply_key = compute_reply_key(
            options.conversation_id, options.inbound_message_id, plan.action, plan.template_key
        )

        self.state_store.update(
            options.conversation_id,
            {
                "collected": plan.updates["collected"],
                "last_inbound_message_id": str(options.inbound_message_id),
                "last_outbound_reply_key": reply_key,
            },
            expected_version=state.version,
        )

        log_error = self._append_log(
            ReplyLogEntry(
                conversation_id=options.conversation_id,
                inbound_message_id=options.inbound_message_id,
                action=plan.action.value,
                template_key=plan.template_key,
                reason=plan.reason,
                reply_key=reply_key,
                reply_text=text,
            ),
            log,
        )
        log.info("Greeting sent", context={"reply_key": reply_key})

        return ReplyEngineResult(
            text=text,
            reply_key=reply_key,
            debug=ReplyDebug(
                plan=plan,
                extracted_fields={},
                template_key=plan.template_key,
                skipped=False,
                log_error=log_error,
            ),
        )

    @staticmethod
    def _state_updates(
        state: FSMState, working: FSMState, plan: Plan, options: GenerateReplyOptions, reply_key: str
    ) -> dict[str, Any]:
        partial: dict[str, Any] = {
            key: value
            for key, value in plan.updates.items()
            if key not in ("collected", "asked_question_keys")
        }
        partial["collected"] = working.collected
        # Re-checked here as well as in the planner: a key is never asked twice.
        new_keys = [key for key in plan.updates.get("asked_question_keys", []) if key not in state.asked_question_keys]
        if new_keys:
            partial["asked_question_keys"] = new_keys
        partial["last_inbound_message_id"] = str(options.inbound_message_id)
        partial["last_outbound_reply_key"] = reply_key
        return partial

    def _find_logged(self, options: GenerateReplyOptions) -> Optional[ReplyLogEntry]:
        if self.log_store is None:
            return None
        return self.log_store.find_latest(options.conversation_id, options.inbound_message_id)

    def _append_log(self, entry: ReplyLogEntry, log) -> Optional[dict[str, Any]]:
        if self.log_store is None:
            result = log_to_console(entry)
        else:
            result = self.log_store.append(entry)
        if not result.ok:
            log.warning(
                "Failed to write reply engine log",
                context={"reply_key": entry.reply_key, "error": result.error, "code": result.error_code},
            )
        return result.error_payload()

    @staticmethod
    def _replay(entry: ReplyLogEntry) -> ReplyEngineResult:
        plan = Plan(
            action=PlannerAction(entry.action),
            template_key=entry.template_key,
            question_key=entry.question_key,
            reason=entry.reason or "",
        )
        return ReplyEngineResult(
            text=entry.reply_text,
            reply_key=entry.reply_key,
            debug=ReplyDebug(
                plan=plan,
                extracted_fields=dict(entry.extracted_fields),
                template_key=entry.template_key,
                skipped=True,
                reason=DUPLICATE_INBOUND_REASON,
            ),
        )

    @staticmethod
    def _skipped(
        plan: Plan, extracted: dict[str, Any], reason: str, reply_key: str = "", text: str = ""
    ) -> ReplyEngineResult:
        return ReplyEngineResult(
            text=text,
            reply_key=reply_key,
            debug=ReplyDebug(
                plan=plan,
                extracted_fields=extracted,
                template_key=plan.template_key,
                skipped=True,
                reason=reason,
            ),
        )


def build_engine(db: Session, polish_gateway: Optional[PolishGateway] = None) -> ReplyEngine:
    return ReplyEngine(
        state_store=SqlStateStore(db),
        history=SqlMessageHistory(db),
        log_store=SqlReplyLogStore(db),
        polish_gateway=polish_gateway,
    )


def generate_reply(db: Session, options: GenerateReplyOptions) -> Optional[ReplyEngineResult]:
    """Generate the reply for one inbound message using the database collaborators."""
    return build_engine(db).generate_reply(options)
