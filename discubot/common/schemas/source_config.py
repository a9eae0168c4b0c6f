"""
Per-team source configuration and destination field mapping.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class PropertyMapping(BaseModel):
    """Where one AI field lands in the destination schema"""
    notion_property: str
    property_type: str = "rich_text"
    value_map: Dict[str, str] = Field(default_factory=dict)
    score: Optional[float] = None


class FieldMapping(BaseModel):
    """AI field name -> destination property"""
    title_property: str = "Name"
    fields: Dict[str, PropertyMapping] = Field(default_factory=dict)

    def get(self, ai_field: str) -> Optional[PropertyMapping]:
        return self.fields.get(ai_field)


class SourceConfig(BaseModel):
    """
    One team's connection for one source type.

    Read-only to the pipeline. Each config writes to exactly one destination
    database.
    """
    id: str
    team_id: str
    source_type: str
    name: str = ""
    api_token: str = ""
    notion_token: str = ""
    notion_database_id: str = ""
    anthropic_api_key: Optional[str] = None
    ai_enabled: bool = True
    auto_process: bool = True
    post_confirmation: bool = True
    ai_summary_prompt: Optional[str] = None
    ai_task_prompt: Optional[str] = None
    available_domains: List[str] = Field(default_factory=list)
    field_mapping: FieldMapping = Field(default_factory=FieldMapping)
    email_slug: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    source_metadata: Dict[str, Any] = Field(default_factory=dict)
    active: bool = True

    @property
    def bot_handle(self) -> Optional[str]:
        return self.source_metadata.get("bot_handle") or None

    @property
    def bot_user_id(self) -> Optional[str]:
        return self.source_metadata.get("bot_user_id") or None

    @property
    def workspace_id(self) -> Optional[str]:
        return self.source_metadata.get("workspace_id") or None
