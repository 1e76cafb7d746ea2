from __future__ import annotations

import json

from jsonschema import Draft202012Validator
from jsonschema import ValidationError as JSONSchemaValidationError

from choicebook.modules.generation.errors import GeneratedContentInvalidError

_CONSEQUENCE_SCHEMA: dict = {
    "type": "object",
    "required": ["type", "description"],
    "properties": {
        "type": {"enum": ["immediate", "delayed", "ending_modifier"]},
        "description": {"type": "string", "minLength": 1},
        "affects_character": {"type": ["string", "null"]},
        "affects_plot_thread": {"type": ["string", "null"]},
        "magnitude": {"enum": ["minor", "moderate", "major"]},
    },
}

CHAPTER_OUTPUT_SCHEMA: dict = {
    "type": "object",
    "required": ["content"],
    "properties": {
        "content": {"type": "string", "minLength": 1},
        "affects_ending": {"type": "boolean"},
        "choices": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["text"],
                "properties": {
                    "id": {"type": ["string", "null"]},
                    "text": {"type": "string", "minLength": 1},
                    "description": {"type": ["string", "null"]},
                    "leads_to_chapter": {"type": ["string", "null"]},
                    "emotional_tone": {"enum": ["positive", "negative", "neutral", "mysterious"]},
                    "consequences": {"type": "array", "items": _CONSEQUENCE_SCHEMA},
                    "character_impacts": {"type": "array", "items": {"type": "object"}},
                },
            },
        },
    },
}

ENDING_OUTPUT_SCHEMA: dict = {
    "type": "object",
    "required": ["content"],
    "properties": {"content": {"type": "string", "minLength": 1}},
}


def _snippet(raw: object, limit: int = 240) -> str | None:
    if raw is None:
        return None
    text = raw if isinstance(raw, str) else json.dumps(raw, ensure_ascii=False, default=str)
    text = " ".join(str(text).split())
    if not text:
        return None
    return text[:limit]


def validate_generated_output(payload: object, *, schema_name: str, schema: dict) -> dict:
    """Check a generator response against its JSON schema before model parsing."""
    if not isinstance(payload, dict):
        raise GeneratedContentInvalidError(detail=f"{schema_name}: top-level output must be object")
    try:
        Draft202012Validator(schema).validate(payload)
    except JSONSchemaValidationError as exc:
        snippet = _snippet(payload)
        detail = f"{schema_name}: schema validate failed: {exc.message}"
        if snippet:
            detail = f"{detail} [{snippet}]"
        raise GeneratedContentInvalidError(detail=detail) from exc
    return payload
