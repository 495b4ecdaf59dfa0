from enum import Enum


class Stage(str, Enum):
    NEW = "NEW"
    QUALIFYING = "QUALIFYING"
    QUOTE_READY = "QUOTE_READY"


# Forward-only. Staying put is always allowed.
VALID_TRANSITIONS = {
    Stage.NEW: [Stage.QUALIFYING, Stage.QUOTE_READY],
    Stage.QUALIFYING: [Stage.QUOTE_READY],
    Stage.QUOTE_READY: [],
}


def parse_stage(value) -> Stage:
    """Coerce a persisted stage value; unknown values fall back to NEW."""
    if isinstance(value, Stage):
        return value
    try:
        return Stage(str(value).upper())
    except ValueError:
        return Stage.NEW


def can_transition(from_stage: Stage, to_stage: Stage) -> bool:
    """Check if transition is valid."""
    if from_stage == to_stage:
        return True
    allowed = VALID_TRANSITIONS.get(from_stage, [])
    return to_stage in allowed


def advance(from_stage: Stage, to_stage: Stage) -> Stage:
    """Apply a forward move; a backward proposal keeps the current stage."""
    if can_transition(from_stage, to_stage):
        return to_stage
    return from_stage
