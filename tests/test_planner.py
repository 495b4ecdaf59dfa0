from app.services.reply_engine.planner import (
    BUSINESS_SETUP_STEPS,
    is_name_prompt_active,
    plan_next_action,
    required_fields_for_service,
)
from app.services.reply_engine.types import FSMState, PlannerAction, StopFlag
from app.services.state_machine import Stage


def _greeted(**kwargs) -> FSMState:
    collected = {"greetingSent": True, **kwargs.pop("collected", {})}
    return FSMState(collected=collected, **kwargs)


def _business_state(**kwargs) -> FSMState:
    return _greeted(
        service_key="business_setup",
        stage=Stage.QUALIFYING,
        required=required_fields_for_service("business_setup"),
        **kwargs,
    )


class TestRequiredFields:
    def test_business_setup_has_five_fields(self):
        assert required_fields_for_service("business_setup") == [
            "fullName",
            "businessActivity",
            "jurisdiction",
            "partnersCount",
            "visasCount",
        ]

    def test_visa_renewal_needs_expiry_date(self):
        assert required_fields_for_service("visa_renewal") == ["fullName", "nationality", "expiryDate"]

    def test_simple_visas_need_name_and_nationality(self):
        assert required_fields_for_service("freelance_visa") == ["fullName", "nationality"]
        assert required_fields_for_service("unknown_service") == ["fullName", "nationality"]


class TestGreetingAndStop:
    def test_first_message_gets_greeting(self):
        plan = plan_next_action(FSMState(), "I want a golden visa", {}, is_first_message=True)
        assert plan.action == PlannerAction.INFO
        assert plan.template_key == "greeting"
        assert plan.updates == {"collected": {"greetingSent": True}}

    def test_stop_wins_over_everything(self):
        state = _greeted(stop=StopFlag(enabled=True, reason="customer opted out"))
        plan = plan_next_action(state, "hello", {"serviceKey": "golden_visa"}, is_first_message=True)
        assert plan.action == PlannerAction.STOP
        assert plan.template_key == "handover_call"
        assert "customer opted out" in plan.reason


class TestNoServiceYet:
    def test_asks_for_service(self):
        plan = plan_next_action(_greeted(), "hello", {})
        assert plan.action == PlannerAction.ASK
        assert plan.question_key == "service"
        assert plan.template_key == "ask_service"
        assert plan.updates == {"asked_question_keys": ["service"]}

    def test_extracted_service_starts_qualifying(self):
        plan = plan_next_action(_greeted(), "I want freelance visa", {"serviceKey": "freelance_visa"})
        assert plan.action == PlannerAction.ASK
        assert plan.question_key == "full_name"
        assert plan.updates["service_key"] == "freelance_visa"
        assert plan.updates["stage"] == Stage.QUALIFYING
        assert plan.updates["required"] == ["fullName", "nationality"]
        assert plan.updates["asked_question_keys"] == ["full_name"]

    def test_prefilled_fields_skip_to_handover(self):
        state = _greeted(collected={"fullName": "John Smith", "nationality": "Indian"})
        plan = plan_next_action(state, "golden visa please", {"serviceKey": "golden_visa"})
        assert plan.action == PlannerAction.HANDOVER
        assert plan.updates["stage"] == Stage.QUOTE_READY
        assert plan.updates["service_key"] == "golden_visa"

    def test_name_in_same_message_asks_nationality(self):
        plan = plan_next_action(
            _greeted(), "visit visa for John Smith", {"serviceKey": "visit_visa", "fullName": "John Smith"}
        )
        assert plan.question_key == "nationality"
        assert plan.updates["collected"] == {"fullName": "John Smith"}

    def test_business_setup_detection_asks_name_first(self):
        plan = plan_next_action(_greeted(), "business setup", {"serviceKey": "business_setup"})
        assert plan.question_key == "full_name"
        assert plan.updates["required"] == [step.field for step in BUSINESS_SETUP_STEPS]

    def test_business_setup_detection_with_name_known_asks_nationality(self):
        state = _greeted(collected={"fullName": "John Smith"})
        plan = plan_next_action(state, "I want business setup", {"serviceKey": "business_setup"})
        assert plan.action == PlannerAction.ASK
        assert plan.question_key == "nationality"
        assert plan.updates["service_key"] == "business_setup"

    def test_business_setup_detection_with_name_and_nationality_hands_over(self):
        state = _greeted(collected={"fullName": "John Smith", "nationality": "Indian"})
        plan = plan_next_action(state, "I want business setup", {"serviceKey": "business_setup"})
        assert plan.action == PlannerAction.HANDOVER
        assert plan.updates["stage"] == Stage.QUOTE_READY
        assert plan.updates["required"] == [step.field for step in BUSINESS_SETUP_STEPS]

    def test_visa_renewal_detection_uses_name_nationality_cascade(self):
        state = _greeted(collected={"fullName": "John Smith", "nationality": "Indian"})
        plan = plan_next_action(state, "I need to renew my visa", {"serviceKey": "visa_renewal"})
        assert plan.action == PlannerAction.HANDOVER
        assert plan.updates["required"] == ["fullName", "nationality", "expiryDate"]

    def test_business_script_takes_over_after_detection_turn(self):
        state = _business_state(collected={"fullName": "John Smith"}, asked_question_keys=["nationality"])
        plan = plan_next_action(state, "ok", {})
        assert plan.question_key == "business_activity"

    def test_service_already_asked_falls_through_to_name(self):
        state = _greeted(asked_question_keys=["service"])
        plan = plan_next_action(state, "not sure yet", {})
        assert plan.action == PlannerAction.ASK
        assert plan.question_key == "full_name"

    def test_service_already_asked_cascades_to_nationality_then_handover(self):
        state = _greeted(asked_question_keys=["service", "full_name"])
        assert plan_next_action(state, "hmm", {}).question_key == "nationality"

        state = _greeted(asked_question_keys=["service", "full_name", "nationality"])
        plan = plan_next_action(state, "hmm", {})
        assert plan.action == PlannerAction.HANDOVER
        assert plan.updates["stage"] == Stage.QUOTE_READY


class TestBusinessSetupScript:
    def test_fixed_question_order(self):
        expected = ["full_name", "business_activity", "jurisdiction", "partners_count", "visas_count"]
        state = _business_state()
        asked = []
        for question_key in expected:
            plan = plan_next_action(state, "ok", {})
            assert plan.action == PlannerAction.ASK
            assert plan.question_key == question_key
            asked.append(question_key)
            state = _business_state(asked_question_keys=list(asked))

    def test_answer_records_value_and_asks_next_question(self):
        state = _business_state(asked_question_keys=["full_name"])
        plan = plan_next_action(state, "John Smith", {"fullName": "John Smith"})
        assert plan.question_key == "business_activity"
        assert plan.template_key == "business_setup_activity"
        assert plan.updates["collected"] == {"fullName": "John Smith"}

    def test_final_answer_hands_over(self):
        state = _business_state(
            collected={
                "fullName": "John Smith",
                "businessActivity": "Marketing",
                "jurisdiction": "mainland",
                "partnersCount": 2,
            },
            asked_question_keys=["full_name", "business_activity", "jurisdiction", "partners_count", "visas_count"],
        )
        plan = plan_next_action(state, "3 visas", {"visasCount": 3})
        assert plan.action == PlannerAction.HANDOVER
        assert plan.updates["stage"] == Stage.QUOTE_READY
        assert plan.updates["collected"] == {"visasCount": 3}

    def test_ceiling_forces_handover(self):
        state = _business_state(
            asked_question_keys=["full_name", "business_activity", "jurisdiction", "partners_count", "visas_count"],
        )
        plan = plan_next_action(state, "no idea", {})
        assert plan.action == PlannerAction.HANDOVER
        assert "asked_question_keys" not in plan.updates

    def test_ceiling_counts_service_question(self):
        state = _business_state(asked_question_keys=["service", "full_name", "business_activity", "jurisdiction", "partners_count"])
        plan = plan_next_action(state, "whatever", {})
        assert plan.action == PlannerAction.HANDOVER

    def test_unanswered_question_is_not_repeated(self):
        state = _business_state(asked_question_keys=["full_name"])
        plan = plan_next_action(state, "why do you need it", {})
        assert plan.question_key == "business_activity"

    def test_cheapest_intent_returns_offer(self):
        state = _business_state(asked_question_keys=["full_name"], follow_up_step=1)
        plan = plan_next_action(state, "I want the cheapest option", {})
        assert plan.action == PlannerAction.OFFER
        assert plan.template_key == "cheapest_offer_12999"
        assert plan.question_key is None
        assert plan.updates == {"follow_up_step": 2}

    def test_cheapest_intent_outside_business_setup_is_ignored(self):
        state = _greeted(service_key="golden_visa", stage=Stage.QUALIFYING, required=["fullName", "nationality"])
        plan = plan_next_action(state, "what's the cheapest", {})
        assert plan.action == PlannerAction.ASK
        assert plan.question_key == "full_name"


class TestGenericScript:
    def test_visa_renewal_asks_expiry_date_last(self):
        state = _greeted(
            service_key="visa_renewal",
            stage=Stage.QUALIFYING,
            required=["fullName", "nationality", "expiryDate"],
            collected={"fullName": "John Smith", "nationality": "Indian"},
            asked_question_keys=["full_name", "nationality"],
        )
        plan = plan_next_action(state, "ok", {})
        assert plan.question_key == "expiry_date"
        assert plan.template_key == "ask_expiry_date"

    def test_all_required_collected_hands_over(self):
        state = _greeted(
            service_key="family_visa",
            stage=Stage.QUALIFYING,
            required=["fullName", "nationality"],
            collected={"fullName": "John Smith"},
            asked_question_keys=["full_name", "nationality"],
        )
        plan = plan_next_action(state, "Indian", {"nationality": "Indian"})
        assert plan.action == PlannerAction.HANDOVER
        assert plan.updates["collected"] == {"nationality": "Indian"}


class TestPlannerProperties:
    def test_is_deterministic(self):
        state = _business_state(asked_question_keys=["full_name"], collected={"fullName": "John Smith"})
        extracted = {"businessActivity": "Marketing", "jurisdiction": "freezone"}
        first = plan_next_action(state, "marketing in a free zone", extracted)
        second = plan_next_action(state, "marketing in a free zone", extracted)
        assert first == second
        assert first.to_dict() == second.to_dict()

    def test_never_asks_an_already_asked_key(self):
        asked = ["service", "full_name", "nationality"]
        state = _greeted(service_key="golden_visa", required=["fullName", "nationality"], asked_question_keys=asked)
        plan = plan_next_action(state, "hello again", {})
        assert plan.question_key not in asked


class TestNamePrompt:
    def test_active_right_after_name_question(self):
        assert is_name_prompt_active(_greeted(asked_question_keys=["service", "full_name"])) is True

    def test_inactive_once_another_question_followed(self):
        assert is_name_prompt_active(_greeted(asked_question_keys=["full_name", "nationality"])) is False
        assert is_name_prompt_active(_greeted()) is False
