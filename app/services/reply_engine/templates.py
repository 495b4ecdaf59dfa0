"""Template catalog and renderer.

Templates live in ``app/knowledge/reply_engine/TEMPLATES.yaml`` keyed by
template key and language. The set of keys the engine may plan is closed
(``TemplateKey``); a key missing from the catalog is a deployment defect and
raises ``TemplateNotFoundError``.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml

from app.logging_config import get_logger
from app.services.reply_engine.errors import TemplateNotFoundError

logger = get_logger("reply_engine.templates")

TEMPLATES_PATH = Path(__file__).resolve().parents[2] / "knowledge" / "reply_engine" / "TEMPLATES.yaml"
DEFAULT_LANGUAGE = "en"
FALLBACK_GREETING = "Hi {name}! How can we help you today?"


class TemplateKey(str, Enum):
    GREETING = "greeting"
    ASK_SERVICE = "ask_service"
    ASK_FULL_NAME = "ask_full_name"
    ASK_NATIONALITY = "ask_nationality"
    ASK_EXPIRY_DATE = "ask_expiry_date"
    BUSINESS_SETUP_ACTIVITY = "business_setup_activity"
    BUSINESS_SETUP_JURISDICTION = "business_setup_jurisdiction"
    BUSINESS_SETUP_PARTNERS = "business_setup_partners"
    BUSINESS_SETUP_VISAS = "business_setup_visas"
    CHEAPEST_OFFER = "cheapest_offer_12999"
    HANDOVER_CALL = "handover_call"


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return ""


@lru_cache(maxsize=4)
def _load_yaml(path: Path) -> dict:
    if not path.exists():
        logger.error("Template catalog not found", extra={"context": {"path": str(path)}})
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data if isinstance(data, dict) else {}


def load_templates(path: Path = TEMPLATES_PATH) -> dict[str, dict[str, str]]:
    templates = _load_yaml(path).get("templates") or {}
    return templates if isinstance(templates, dict) else {}


class TemplateCatalog:
    """Read-only view over a YAML template file."""

    def __init__(self, path: Path = TEMPLATES_PATH):
        self.path = path

    def get_template(self, template_key: str, language: str = DEFAULT_LANGUAGE) -> Optional[str]:
        """Template source for the key, falling back to English. None when absent."""
        entry = load_templates(self.path).get(str(template_key))
        if entry is None:
            return None
        if isinstance(entry, str):
            return entry
        if not isinstance(entry, dict):
            return None
        source = entry.get(language) or entry.get(DEFAULT_LANGUAGE)
        return str(source) if source else None

    def require_template(self, template_key: str, language: str = DEFAULT_LANGUAGE) -> str:
        source = self.get_template(template_key, language)
        if source is None:
            raise TemplateNotFoundError(str(template_key), language)
        return source


default_catalog = TemplateCatalog()


def render_template(source: str, variables: Optional[dict[str, Any]] = None) -> str:
    """Substitute {var} placeholders. Missing or None variables render empty."""
    values = _SafeDict({key: ("" if value is None else value) for key, value in (variables or {}).items()})
    try:
        return source.format_map(values).strip()
    except (ValueError, IndexError, AttributeError) as exc:
        logger.warning("Template formatting failed, returning raw source", extra={"context": {"error": str(exc)}})
        return source.strip()


def render(
    template_key: str,
    variables: Optional[dict[str, Any]] = None,
    language: str = DEFAULT_LANGUAGE,
    catalog: Optional[TemplateCatalog] = None,
) -> str:
    source = (catalog or default_catalog).require_template(template_key, language)
    return render_template(source, variables)
