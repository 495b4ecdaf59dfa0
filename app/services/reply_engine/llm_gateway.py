"""Final reply text: the rendered template, optionally polished by an LLM.

The template path is the default and the contract. Polishing may only reword:
any polish output that fails validation is discarded in favour of the
rendered template.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.llm import LLMProvider, LLMProviderError, OpenAIProvider
from app.services.reply_engine.templates import render_template
from app.services.reply_engine.validation import enforce_forbidden_phrases, polish_violations
from app.services.result import Result

logger = get_logger("reply_engine.llm_gateway")

POLISH_SYSTEM_PROMPT = """You rewrite customer service WhatsApp replies for a UAE business setup and visa consultancy.

Rules:
- Keep the meaning, every number, price and date exactly as given.
- Do not add facts, offers, promises or new questions.
- Keep at most one question.
- Reply with the rewritten message only."""


class PolishGateway(ABC):
    """Rewords a rendered reply. Implementations may fail; callers fall back."""

    @abstractmethod
    def polish(self, rendered_text: str, variables: dict[str, Any]) -> str:
        pass


class LLMPolishGateway(PolishGateway):
    def __init__(self, provider: LLMProvider, model: Optional[str] = None, timeout_seconds: Optional[float] = None):
        self.provider = provider
        self.model = model
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.llm_polish_timeout_seconds

    def polish(self, rendered_text: str, variables: dict[str, Any]) -> str:
        language = variables.get("language") or "en"
        messages = [
            {"role": "system", "content": POLISH_SYSTEM_PROMPT},
            {"role": "user", "content": f"Language: {language}\nMessage:\n{rendered_text}"},
        ]
        response = self.provider.generate(
            messages,
            model=self.model,
            timeout_seconds=self.timeout_seconds,
        )
        if response.truncated:
            raise LLMProviderError(f"Polish output from {response.model} was cut off at the token limit")
        return (response.content or "").strip()


def get_polish_gateway() -> Optional[PolishGateway]:
    if not settings.openai_api_key:
        return None
    return LLMPolishGateway(OpenAIProvider(api_key=settings.openai_api_key))


def polish_reply(
    gateway: PolishGateway, template_key: str, rendered: str, variables: dict[str, Any]
) -> Result[str]:
    try:
        polished = gateway.polish(rendered, variables)
    except (LLMProviderError, httpx.HTTPError, ValueError) as exc:
        logger.warning(
            "LLM polish failed, using template text",
            extra={
                "context": {
                    "template_key": template_key,
                    "error": str(exc),
                    "status_code": getattr(exc, "status_code", None),
                }
            },
        )
        return Result.from_exception(exc, "polish_failed")

    violations = polish_violations(rendered, polished)
    if violations:
        logger.warning(
            "LLM polish rejected, using template text",
            extra={"context": {"template_key": template_key, "violations": violations}},
        )
        return Result.failure(", ".join(violations), "polish_rejected")

    return Result.success(polished)


def get_final_text(
    template_key: str,
    template: str,
    variables: Optional[dict[str, Any]] = None,
    use_llm: bool = False,
    gateway: Optional[PolishGateway] = None,
) -> str:
    """Render the template and, when asked and possible, polish it."""
    variables = variables or {}
    rendered = render_template(template, variables)

    text = rendered
    if use_llm:
        gateway = gateway or get_polish_gateway()
        if gateway is None:
            logger.info("LLM polish requested but not configured", extra={"context": {"template_key": template_key}})
        else:
            text = polish_reply(gateway, template_key, rendered, variables).unwrap_or(rendered)

    return enforce_forbidden_phrases(text, template_key)
