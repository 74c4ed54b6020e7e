"""Prompt templates used by the continuity services.

Templates live in :data:`CONTINUITY_PROMPTS`. When ``PROMPT_CONFIG_PATH``
points at a JSON object, its entries override the defaults key by key.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

from flask import current_app

PROMPT_CACHE_KEY = "_PROMPT_CONFIG_CACHE"

CONSISTENCY_CHECK_KEY = "consistency_check"
CHAPTER_EXTRACTION_KEY = "chapter_extraction"

CONTINUITY_PROMPTS: Dict[str, Dict[str, Any]] = {
    CONSISTENCY_CHECK_KEY: {
        "config_key": "CONTINUITY_CHECK_MAX_TOKENS",
        "prompt_template": (
            "Check this new content for consistency issues with established story facts.\n\n"
            "<established_facts>\n"
            "{fact_context}\n"
            "</established_facts>\n\n"
            "<new_content>\n"
            "{content}\n"
            "</new_content>\n\n"
            "Check for:\n"
            "1. Character traits that contradict established traits\n"
            "2. Characters knowing things they shouldn't know yet\n"
            "3. Timeline impossibilities (events in wrong order)\n"
            "4. Characters being in impossible locations\n"
            "5. World rule violations\n\n"
            "Return ONLY a JSON array of issues found (empty array [] if none):\n\n"
            "[\n"
            "  {{\n"
            '    "type": "contradiction|timeline_conflict|character_knowledge|location_impossible|trait_inconsistency",\n'
            '    "severity": "critical|warning",\n'
            '    "title": "brief title",\n'
            '    "description": "what conflicts with what established fact",\n'
            '    "excerpt": "the specific problematic text from new content",\n'
            '    "suggestion": "how to fix it"\n'
            "  }}\n"
            "]\n\n"
            "Be conservative - only flag clear contradictions, not ambiguities."
        ),
    },
    CHAPTER_EXTRACTION_KEY: {
        "config_key": "CONTINUITY_SCAN_MAX_TOKENS",
        "prompt_template": (
            "You are a continuity analyst. Extract trackable facts and events from this chapter "
            "and identify consistency issues.\n\n"
            "<existing_facts>\n"
            "{fact_context}\n"
            "</existing_facts>\n\n"
            '<chapter title="{chapter_title}">\n'
            "{content}\n"
            "</chapter>\n\n"
            "Extract and return ONLY valid JSON:\n\n"
            "{{\n"
            '  "facts": [\n'
            "    {{\n"
            '      "category": "character_trait|character_knowledge|character_status|timeline|location|object|relationship|world_rule",\n'
            '      "subject": "who or what",\n'
            '      "attribute": "what aspect",\n'
            '      "value": "the value",\n'
            '      "excerpt": "brief quote from text (max 80 chars)",\n'
            '      "importance": "critical|significant|minor"\n'
            "    }}\n"
            "  ],\n"
            '  "events": [\n'
            "    {{\n"
            '      "description": "what happened (brief)",\n'
            '      "storyTime": {{"type": "absolute|relative", "value": "time description"}},\n'
            '      "characters": ["names"],\n'
            '      "locations": ["places"],\n'
            '      "importance": "critical|significant|minor"\n'
            "    }}\n"
            "  ],\n"
            '  "issues": [\n'
            "    {{\n"
            '      "type": "contradiction|timeline_conflict|character_knowledge|trait_inconsistency",\n'
            '      "severity": "critical|warning",\n'
            '      "title": "brief title",\n'
            '      "description": "what conflicts with what",\n'
            '      "excerpt": "problematic text"\n'
            "    }}\n"
            "  ]\n"
            "}}\n\n"
            "Focus on:\n"
            "- Character physical traits (eye color, hair, height, age)\n"
            "- Character knowledge (what they know/don't know)\n"
            "- Character locations and movements\n"
            "- Timeline markers and event sequences\n"
            "- Relationships and how they change\n"
            "- Important objects and their states\n"
            "- World rules (magic systems, technology, laws)\n\n"
            "Flag issues where new content contradicts established facts."
        ),
    },
}


class PromptConfigurationError(RuntimeError):
    """Raised when a prompt entry is missing or malformed."""


def load_prompt_entry(key: str) -> Dict[str, Any]:
    overrides = _load_prompt_overrides()
    entry = dict(CONTINUITY_PROMPTS.get(key) or {})
    override = overrides.get(key)
    if override is not None:
        if not isinstance(override, dict):
            raise PromptConfigurationError(f"Prompt configuration entry '{key}' must be a dictionary.")
        entry.update(override)
    if not entry.get("prompt_template"):
        raise PromptConfigurationError(f"Prompt configuration is missing the '{key}' template.")
    return entry


def render_prompt(key: str, **values: Any) -> tuple[str, int]:
    """Return the rendered prompt for ``key`` and its token budget."""

    entry = load_prompt_entry(key)
    try:
        prompt = entry["prompt_template"].format(**values)
    except (KeyError, IndexError) as exc:
        raise PromptConfigurationError(f"Prompt template '{key}' has an unknown placeholder: {exc}") from exc

    max_tokens = entry.get("max_new_tokens")
    if max_tokens is None:
        max_tokens = current_app.config.get(entry.get("config_key", ""), 2000)
    return prompt, int(max_tokens)


def _load_prompt_overrides() -> Dict[str, Any]:
    app = current_app
    cached = app.config.get(PROMPT_CACHE_KEY)
    if isinstance(cached, dict):
        return cached

    config_path = app.config.get("PROMPT_CONFIG_PATH")
    if not config_path:
        app.config[PROMPT_CACHE_KEY] = {}
        return {}

    path = Path(config_path)
    if not path.exists():
        raise PromptConfigurationError(f"Prompt configuration file not found at: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            data = json.load(fh)
        except json.JSONDecodeError as exc:  # pragma: no cover - malformed file should be obvious at runtime
            raise PromptConfigurationError(f"Unable to parse prompt configuration: {exc.msg}") from exc

    if not isinstance(data, dict):
        raise PromptConfigurationError("Prompt configuration must be a JSON object.")

    app.config[PROMPT_CACHE_KEY] = data
    return data
