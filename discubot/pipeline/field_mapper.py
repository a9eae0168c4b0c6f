"""
Field Mapper

Fits AI-extracted task fields onto a destination database schema.

Property names and choice values are matched with a cheap string
similarity: exact match 1.0, containment 0.8, otherwise the shared-prefix
ratio. Choice values additionally know a small vocabulary of common
synonyms (``urgent`` <-> ``critical`` / ``P1``) so ordinal scales map.
All functions here are pure.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..common.schemas import (
    AI_FIELD_VALUES,
    DetectedTask,
    FieldMapping,
    Known,
    PropertyMapping,
)

logger = logging.getLogger("discubot.pipeline.field_mapper")

PROPERTY_THRESHOLD = 0.5   # property score must exceed this
VALUE_THRESHOLD = 0.3      # value score must exceed this

CHOICE_TYPES = {"select", "multi_select", "status"}

NOTION_TEXT_LIMIT = 2000

# AI field -> extra names a destination property is commonly called
FIELD_ALIASES: Dict[str, List[str]] = {
    "priority": ["priority", "prio", "urgency", "importance", "severity"],
    "type": ["type", "task type", "issue type", "kind"],
    "assignee": ["assignee", "assigned to", "owner", "responsible", "assign"],
    "routing_category": ["domain", "area", "team", "component", "routing", "routing category"],
}

VALUE_ALIASES: Dict[str, List[str]] = {
    "urgent": ["critical", "highest", "blocker", "asap", "p0", "p1", "urgent"],
    "high": ["important", "major", "p2", "high"],
    "medium": ["normal", "moderate", "default", "p3", "med", "medium"],
    "low": ["minor", "lowest", "trivial", "p4", "low"],
    "bug": ["defect", "issue", "fix", "error", "bug"],
    "feature": ["new feature", "story", "user story", "request", "feature"],
    "improvement": ["enhancement", "refactor", "chore", "polish", "improvement"],
    "question": ["support", "inquiry", "discussion", "research", "question"],
}


@dataclass
class SchemaProperty:
    """One destination property, as returned by the destination schema API"""
    name: str
    type: str
    options: List[str] = field(default_factory=list)


@dataclass
class MappedProperties:
    properties: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


def _normalize(text: str) -> str:
    return re.sub(r"[\s_\-]+", " ", (text or "").strip().lower())


def similarity(a: str, b: str) -> float:
    """Exact 1.0, containment 0.8, else common-prefix length / longer length."""
    a, b = _normalize(a), _normalize(b)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    if a in b or b in a:
        return 0.8
    prefix = 0
    for ca, cb in zip(a, b):
        if ca != cb:
            break
        prefix += 1
    return prefix / max(len(a), len(b))


def _best_score(candidates: Iterable[str], target: str) -> float:
    return max((similarity(c, target) for c in candidates), default=0.0)


def propose_mapping(
    schema: Sequence[SchemaProperty],
    ai_fields: Optional[Iterable[str]] = None,
) -> FieldMapping:
    """
    Suggest a mapping from AI fields onto ``schema``.

    Each AI field takes the best-scoring property (schema order breaks
    ties) if its score exceeds the property threshold. Choice-typed
    properties also get a proposed value map.
    """
    ai_fields = list(ai_fields) if ai_fields is not None else list(AI_FIELD_VALUES)
    mapping = FieldMapping()

    title_prop = next((p for p in schema if p.type == "title"), None)
    if title_prop is not None:
        mapping.title_property = title_prop.name

    for ai_field in ai_fields:
        names = FIELD_ALIASES.get(ai_field, [ai_field])
        best: Optional[SchemaProperty] = None
        best_score = 0.0
        for prop in schema:
            if prop.type == "title":
                continue
            score = _best_score(names + [ai_field], prop.name)
            if score > best_score:
                best, best_score = prop, score
        if best is None or best_score <= PROPERTY_THRESHOLD:
            logger.debug("No property for AI field %s (best %.2f)", ai_field, best_score)
            continue

        value_map: Dict[str, str] = {}
        allowed = AI_FIELD_VALUES.get(ai_field)
        if best.type in CHOICE_TYPES and allowed:
            value_map = propose_value_mapping(allowed, best.options)

        mapping.fields[ai_field] = PropertyMapping(
            notion_property=best.name,
            property_type=best.type,
            value_map=value_map,
            score=round(best_score, 3),
        )
    return mapping


def _alias_score(alias: str, option: str) -> float:
    alias, option = _normalize(alias), _normalize(option)
    if not alias or not option:
        return 0.0
    if alias == option:
        return 1.0
    if alias in option or option in alias:
        return 0.8
    return 0.0


def value_similarity(ai_value: str, option: str) -> float:
    """Plain similarity, or an exact/containment hit on a known synonym."""
    aliases = VALUE_ALIASES.get(_normalize(ai_value), [])
    return max([similarity(ai_value, option)] + [_alias_score(a, option) for a in aliases])


def propose_value_mapping(ai_values: Iterable[str], options: Sequence[str]) -> Dict[str, str]:
    """
    Map each AI enumeration value to its best destination option.

    Scores above the value threshold are accepted; ties go to the
    earlier option. Deterministic for identical inputs.
    """
    result: Dict[str, str] = {}
    for value in ai_values:
        best_option = None
        best_score = 0.0
        for option in options:
            score = value_similarity(value, option)
            if score > best_score:
                best_option, best_score = option, score
        if best_option is not None and best_score > VALUE_THRESHOLD:
            result[value] = best_option
    return result


def _truncate(text: str, limit: int = NOTION_TEXT_LIMIT) -> str:
    return text if len(text) <= limit else text[:limit]


def format_property(value: Any, property_type: str) -> Dict[str, Any]:
    """Render ``value`` as a Notion property payload for ``property_type``."""
    if property_type == "title":
        return {"title": [{"text": {"content": _truncate(str(value))}}]}
    if property_type == "number":
        try:
            return {"number": float(value)}
        except (TypeError, ValueError):
            return {"number": None}
    if property_type == "select":
        return {"select": {"name": str(value)}}
    if property_type == "status":
        return {"status": {"name": str(value)}}
    if property_type == "multi_select":
        values = value if isinstance(value, (list, tuple)) else [value]
        return {"multi_select": [{"name": str(v)} for v in values]}
    if property_type == "date":
        return {"date": {"start": str(value)}}
    if property_type == "checkbox":
        return {"checkbox": bool(value)}
    if property_type == "url":
        return {"url": str(value)}
    if property_type == "email":
        return {"email": str(value)}
    if property_type == "phone_number":
        return {"phone_number": str(value)}
    if property_type == "people":
        ids = value if isinstance(value, (list, tuple)) else [value]
        return {"people": [{"object": "user", "id": str(i)} for i in ids]}
    return {"rich_text": [{"text": {"content": _truncate(str(value))}}]}


def apply_mapping(
    task: DetectedTask,
    mapping: FieldMapping,
    identities: Optional[Mapping[str, str]] = None,
) -> MappedProperties:
    """
    Build destination properties for ``task``.

    UNKNOWN fields are skipped, never defaulted. Choice values without a
    value-map entry, and people that have no identity mapping, are skipped
    with a warning.
    """
    identities = identities or {}
    out = MappedProperties()
    out.properties[mapping.title_property] = format_property(task.title, "title")

    for ai_field, target in mapping.fields.items():
        if ai_field not in DetectedTask.GATED_FIELDS:
            continue
        gated = task.gated(ai_field)
        if not isinstance(gated, Known):
            continue
        value = gated.value

        if target.property_type in CHOICE_TYPES:
            mapped = target.value_map.get(value)
            if mapped is None and not target.value_map and AI_FIELD_VALUES.get(ai_field) is None:
                # Free-form field into a choice property: use the value as-is
                mapped = value
            if mapped is None:
                out.warnings.append(
                    f"No {target.notion_property} option for {ai_field} '{value}'"
                )
                continue
            value = mapped
        elif target.property_type == "people":
            user_id = identities.get(value)
            if not user_id:
                out.warnings.append(f"No Notion user mapped for {ai_field} '{value}'")
                continue
            value = user_id

        out.properties[target.notion_property] = format_property(value, target.property_type)

    return out
