class ReplyEngineError(Exception):
    """Base class for reply engine failures."""


class TemplateNotFoundError(ReplyEngineError):
    def __init__(self, template_key: str, language: str = "en"):
        self.template_key = template_key
        self.language = language
        super().__init__(f"Template not found: {template_key} ({language})")


class ConversationNotFoundError(ReplyEngineError, LookupError):
    def __init__(self, conversation_id: int):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found")


class StateSaveError(ReplyEngineError):
    """FSM state could not be persisted. Never swallowed: the next turn would loop."""


class StateVersionConflictError(StateSaveError):
    def __init__(self, conversation_id: int, expected_version: int, actual_version: int | None = None):
        self.conversation_id = conversation_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"State of conversation {conversation_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class StateLoadError(ReplyEngineError):
    """Stored state could not be read; callers fall back to the default state."""
