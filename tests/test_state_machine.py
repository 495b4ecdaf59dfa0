from app.services.state_machine import Stage, advance, can_transition, parse_stage


class TestValidTransitions:
    def test_new_to_qualifying(self):
        assert can_transition(Stage.NEW, Stage.QUALIFYING) is True

    def test_qualifying_to_quote_ready(self):
        assert can_transition(Stage.QUALIFYING, Stage.QUOTE_READY) is True

    def test_new_straight_to_quote_ready(self):
        assert can_transition(Stage.NEW, Stage.QUOTE_READY) is True

    def test_same_stage_is_allowed(self):
        assert can_transition(Stage.QUALIFYING, Stage.QUALIFYING) is True


class TestInvalidTransitions:
    def test_quote_ready_back_to_qualifying(self):
        assert can_transition(Stage.QUOTE_READY, Stage.QUALIFYING) is False

    def test_qualifying_back_to_new(self):
        assert can_transition(Stage.QUALIFYING, Stage.NEW) is False


class TestAdvance:
    def test_forward_move_is_applied(self):
        assert advance(Stage.NEW, Stage.QUALIFYING) == Stage.QUALIFYING

    def test_skipping_qualifying_is_applied(self):
        assert advance(Stage.NEW, Stage.QUOTE_READY) == Stage.QUOTE_READY

    def test_backward_move_keeps_current(self):
        assert advance(Stage.QUOTE_READY, Stage.QUALIFYING) == Stage.QUOTE_READY
        assert advance(Stage.QUALIFYING, Stage.NEW) == Stage.QUALIFYING


class TestParseStage:
    def test_accepts_lowercase(self):
        assert parse_stage("qualifying") == Stage.QUALIFYING

    def test_unknown_falls_back_to_new(self):
        assert parse_stage("ARCHIVED") == Stage.NEW
        assert parse_stage(None) == Stage.NEW
