"""Deterministic planner: FSM state + this turn's extraction -> next action.

First matching rule wins:

1. stop flag set -> STOP
2. no service yet -> on a detected service, or once the service question was
   asked, cascade full name -> nationality -> handover; otherwise ask for
   the service
3. business_setup -> fixed five-question script
4. any other service -> generic script over the service's required fields

Nothing here reads the clock, a random source or storage.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from app.services.reply_engine.fsm import MAX_QUALIFYING_QUESTIONS
from app.services.reply_engine.templates import TemplateKey
from app.services.reply_engine.types import ExtractedFields, FSMState, Plan, PlannerAction, ServiceKey
from app.services.state_machine import Stage

SERVICE_QUESTION_KEY = "service"

_CHEAPEST_INTENT = re.compile(r"\b(?:cheapest|budget|lowest price|lowest cost|most affordable)\b", re.IGNORECASE)


@dataclass(frozen=True)
class QuestionStep:
    field: str
    question_key: str
    template_key: str


FIELD_QUESTIONS = {
    "fullName": QuestionStep("fullName", "full_name", TemplateKey.ASK_FULL_NAME.value),
    "nationality": QuestionStep("nationality", "nationality", TemplateKey.ASK_NATIONALITY.value),
    "expiryDate": QuestionStep("expiryDate", "expiry_date", TemplateKey.ASK_EXPIRY_DATE.value),
}

BUSINESS_SETUP_STEPS = (
    FIELD_QUESTIONS["fullName"],
    QuestionStep("businessActivity", "business_activity", TemplateKey.BUSINESS_SETUP_ACTIVITY.value),
    QuestionStep("jurisdiction", "jurisdiction", TemplateKey.BUSINESS_SETUP_JURISDICTION.value),
    QuestionStep("partnersCount", "partners_count", TemplateKey.BUSINESS_SETUP_PARTNERS.value),
    QuestionStep("visasCount", "visas_count", TemplateKey.BUSINESS_SETUP_VISAS.value),
)

DEFAULT_REQUIRED_FIELDS = ["fullName", "nationality"]

REQUIRED_FIELDS = {
    ServiceKey.BUSINESS_SETUP.value: [step.field for step in BUSINESS_SETUP_STEPS],
    ServiceKey.VISA_RENEWAL.value: ["fullName", "nationality", "expiryDate"],
}


def required_fields_for_service(service_key: str) -> list[str]:
    return list(REQUIRED_FIELDS.get(service_key, DEFAULT_REQUIRED_FIELDS))


def steps_for_fields(fields: Sequence[str]) -> list[QuestionStep]:
    steps = []
    for name in fields:
        step = FIELD_QUESTIONS.get(name)
        if step is None:
            step = next((s for s in BUSINESS_SETUP_STEPS if s.field == name), None)
        if step is not None:
            steps.append(step)
    return steps


def is_name_prompt_active(state: FSMState) -> bool:
    """True when the last question sent asked for the customer's full name."""
    return bool(state.asked_question_keys) and state.asked_question_keys[-1] == FIELD_QUESTIONS["fullName"].question_key


def is_cheapest_intent(text: str) -> bool:
    return bool(text) and _CHEAPEST_INTENT.search(text) is not None


def _present(value: Any) -> bool:
    return value is not None and value != ""


def greeting_plan() -> Plan:
    return Plan(
        action=PlannerAction.INFO,
        template_key=TemplateKey.GREETING.value,
        updates={"collected": {"greetingSent": True}},
        reason="First message in conversation, sending greeting",
    )


def _handover(updates: dict[str, Any], reason: str) -> Plan:
    return Plan(
        action=PlannerAction.HANDOVER,
        template_key=TemplateKey.HANDOVER_CALL.value,
        updates={**updates, "stage": Stage.QUOTE_READY},
        reason=reason,
    )


def _run_script(
    state: FSMState,
    steps: Sequence[QuestionStep],
    extracted: ExtractedFields,
    base_updates: dict[str, Any],
    label: str,
) -> Plan:
    """Walk ordered steps, asking the first one that is neither collected nor asked.

    Values extracted this turn count as collected and are recorded in the plan,
    so the next question goes out in the same turn.
    """
    collected_updates: dict[str, Any] = {}
    for step in steps:
        value = extracted.get(step.field)
        if _present(value) and not _present(state.collected.get(step.field)):
            collected_updates[step.field] = value

    updates = dict(base_updates)
    if collected_updates:
        updates["collected"] = {**updates.get("collected", {}), **collected_updates}

    def satisfied(step: QuestionStep) -> bool:
        return _present(state.collected.get(step.field)) or step.field in collected_updates

    total = len(steps)
    if all(satisfied(step) for step in steps):
        return _handover(updates, f"All {label} questions answered, ready for handover")

    if len(state.asked_question_keys) >= MAX_QUALIFYING_QUESTIONS:
        return _handover(updates, f"Question limit of {MAX_QUALIFYING_QUESTIONS} reached, handing over")

    for index, step in enumerate(steps, start=1):
        if satisfied(step) or step.question_key in state.asked_question_keys:
            continue
        return Plan(
            action=PlannerAction.ASK,
            template_key=step.template_key,
            question_key=step.question_key,
            updates={**updates, "asked_question_keys": [step.question_key]},
            reason=f"Asking for {step.field} (Q{index}/{total}, {label})",
        )

    # Every remaining step was asked without an answer: never nag, hand over.
    return _handover(updates, f"All {label} questions asked, handing over")


def _plan_business_setup(state: FSMState, inbound_text: str, extracted: ExtractedFields) -> Plan:
    if is_cheapest_intent(inbound_text):
        return Plan(
            action=PlannerAction.OFFER,
            template_key=TemplateKey.CHEAPEST_OFFER.value,
            updates={"follow_up_step": state.follow_up_step + 1},
            reason="User requested cheapest option, showing offer",
        )
    return _run_script(state, BUSINESS_SETUP_STEPS, extracted, {}, "business setup")


def _plan_for_service(state: FSMState, inbound_text: str, extracted: ExtractedFields) -> Plan:
    if state.service_key == ServiceKey.BUSINESS_SETUP.value:
        return _plan_business_setup(state, inbound_text, extracted)

    steps = steps_for_fields(state.required or required_fields_for_service(state.service_key))
    return _run_script(state, steps, extracted, {}, state.service_key)


def plan_next_action(
    state: FSMState,
    inbound_text: str,
    extracted: Optional[ExtractedFields] = None,
    is_first_message: bool = False,
) -> Plan:
    """Decide the next action. Same inputs always produce an equal Plan."""
    extracted = extracted or {}

    if state.stop.enabled:
        return Plan(
            action=PlannerAction.STOP,
            template_key=TemplateKey.HANDOVER_CALL.value,
            reason=f"Conversation stopped: {state.stop.reason or 'no reason given'}",
        )

    if is_first_message and not state.collected.get("greetingSent"):
        return greeting_plan()

    if not state.service_key:
        service_key = extracted.get("serviceKey")
        if service_key:
            base_updates = {
                "service_key": service_key,
                "stage": Stage.QUALIFYING,
                "required": required_fields_for_service(service_key),
            }
            # The detection turn always runs the name -> nationality cascade;
            # service scripts take over from the next turn.
            steps = steps_for_fields(DEFAULT_REQUIRED_FIELDS)
            return _run_script(state, steps, extracted, base_updates, f"{service_key} intake")

        if SERVICE_QUESTION_KEY in state.asked_question_keys:
            steps = steps_for_fields(DEFAULT_REQUIRED_FIELDS)
            return _run_script(state, steps, extracted, {}, "unknown service")

        return Plan(
            action=PlannerAction.ASK,
            template_key=TemplateKey.ASK_SERVICE.value,
            question_key=SERVICE_QUESTION_KEY,
            updates={"asked_question_keys": [SERVICE_QUESTION_KEY]},
            reason="No service identified yet, asking which service",
        )

    return _plan_for_service(state, inbound_text, extracted)
