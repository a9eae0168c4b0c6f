"""Shared utilities for parsing LLM responses."""

from __future__ import annotations

import json

from .errors import MalformedOutputError


def parse_llm_json(raw: str) -> dict:
    """Parse JSON from an LLM response, handling code fences and preamble text.

    Tries in order:
    1. Strip markdown code fences, then json.loads
    2. Extract substring between first '{' and last '}', then json.loads
    3. Return empty dict
    """
    if not raw:
        return {}

    text = raw.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```")]
        text = "\n".join(lines)

    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            parsed = json.loads(raw[start:end])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    return {}


def require_llm_json(raw: str, what: str) -> dict:
    """Like parse_llm_json, but an unparseable reply is a MalformedOutputError."""
    data = parse_llm_json(raw)
    if not data:
        raise MalformedOutputError(
            f"Could not parse {what} JSON from model response",
            raw=(raw or "")[:500],
        )
    return data
