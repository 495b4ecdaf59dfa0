from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None
    finish_reason: Optional[str] = None

    @property
    def truncated(self) -> bool:
        """The model stopped at max_tokens, so the text may end mid-sentence."""
        return self.finish_reason == "length"


class LLMProviderError(Exception):
    """Provider answered with an error or an unusable payload."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class LLMProvider(ABC):
    """Chat completion backend used to reword rendered replies."""

    @abstractmethod
    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 400,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Return the completion. Raise LLMProviderError on a non-success answer."""
