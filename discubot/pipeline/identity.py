"""
Identity Mapping

Links a person's id at a discussion source (Slack user id, Figma handle or
email) to a Notion user id, per team.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..common.schemas import SourceType

logger = logging.getLogger("discubot.pipeline.identity")

REQUIRED_MAPPING_FIELDS = ("source_type", "source_user_id", "notion_user_id")


@dataclass
class IdentityMapping:
    team_id: str
    source_type: str
    source_user_id: str
    notion_user_id: str
    display_name: str = ""
    email: str = ""


@dataclass
class BulkImportResult:
    successful: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


class IdentityStore(ABC):
    """Lookup interface the task sink uses to resolve people"""

    @abstractmethod
    async def resolve(self, team_id: str, source_type: str, source_user_id: str) -> Optional[str]:
        """Notion user id for a source user, or None"""

    @abstractmethod
    async def upsert(self, mapping: IdentityMapping) -> None:
        pass

    async def resolve_many(
        self, team_id: str, source_type: str, source_user_ids: Iterable[str]
    ) -> Dict[str, str]:
        resolved: Dict[str, str] = {}
        for user_id in dict.fromkeys(source_user_ids):
            notion_id = await self.resolve(team_id, source_type, user_id)
            if notion_id:
                resolved[user_id] = notion_id
        return resolved


class InMemoryIdentityStore(IdentityStore):
    def __init__(self, mappings: Optional[Iterable[IdentityMapping]] = None):
        self._mappings: Dict[Tuple[str, str, str], IdentityMapping] = {}
        for mapping in mappings or []:
            self._put(mapping)

    def _put(self, mapping: IdentityMapping) -> None:
        key = (mapping.team_id, mapping.source_type, mapping.source_user_id.lower())
        self._mappings[key] = mapping

    async def resolve(self, team_id: str, source_type: str, source_user_id: str) -> Optional[str]:
        mapping = self._mappings.get((team_id, source_type, (source_user_id or "").lower()))
        return mapping.notion_user_id if mapping else None

    async def upsert(self, mapping: IdentityMapping) -> None:
        self._put(mapping)

    def all(self) -> List[IdentityMapping]:
        return list(self._mappings.values())


class JsonFileIdentityStore(InMemoryIdentityStore):
    """Identity mappings persisted to a JSON file"""

    def __init__(self, path: Path):
        self._path = Path(path)
        super().__init__(self._load())

    def _load(self) -> List[IdentityMapping]:
        if not self._path.exists():
            return []
        try:
            with open(self._path) as f:
                data = json.load(f)
            return [IdentityMapping(**item) for item in data]
        except (json.JSONDecodeError, IOError, TypeError) as e:
            logger.warning("Failed to load identity mappings from %s: %s", self._path, e)
            return []

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "w") as f:
            json.dump([asdict(m) for m in self.all()], f, indent=2)

    async def upsert(self, mapping: IdentityMapping) -> None:
        await super().upsert(mapping)
        self._save()


def validate_mapping(raw: Dict[str, Any]) -> List[str]:
    """Problems with one raw mapping row; empty when valid."""
    problems = [f"missing {name}" for name in REQUIRED_MAPPING_FIELDS if not str(raw.get(name) or "").strip()]
    source_type = raw.get("source_type")
    if source_type and source_type not in {s.value for s in SourceType}:
        problems.append(f"unsupported source_type '{source_type}'")
    return problems


async def bulk_import_mappings(
    store: IdentityStore,
    mappings: Iterable[Dict[str, Any]],
    team_id: str,
) -> BulkImportResult:
    """Validate and upsert mapping rows; invalid rows are reported, not raised."""
    result = BulkImportResult()
    for index, raw in enumerate(mappings):
        problems = validate_mapping(raw)
        if problems:
            result.failed += 1
            result.errors.append(f"Row {index + 1}: {', '.join(problems)}")
            continue
        await store.upsert(IdentityMapping(
            team_id=team_id,
            source_type=raw["source_type"],
            source_user_id=str(raw["source_user_id"]).strip(),
            notion_user_id=str(raw["notion_user_id"]).strip(),
            display_name=raw.get("display_name") or "",
            email=raw.get("email") or "",
        ))
        result.successful += 1
    logger.info(
        "Imported identity mappings for team %s: %d ok, %d failed",
        team_id, result.successful, result.failed,
    )
    return result


def build_notion_mention(notion_user_id: str) -> Dict[str, Any]:
    """Rich-text item mentioning a Notion user"""
    return {"type": "mention", "mention": {"type": "user", "user": {"id": notion_user_id}}}
