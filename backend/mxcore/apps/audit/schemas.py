from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AuditEventCreate(BaseModel):
    entity_type: str
    entity_id: str
    action: str
    aircraft_id: Optional[str] = None
    actor_user_id: Optional[str] = None
    occurred_at: Optional[datetime] = None
    before: Optional[dict] = None
    after: Optional[dict] = None
    correlation_id: Optional[str] = None
    metadata: Optional[dict] = None

    @field_validator("entity_type", "entity_id", "action")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class AuditEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    aircraft_id: Optional[str] = None
    entity_type: str
    entity_id: str
    action: str
    actor_user_id: Optional[str] = None
    occurred_at: datetime
    before: Optional[dict] = None
    after: Optional[dict] = None
    correlation_id: Optional[str] = None
    metadata: Optional[dict] = Field(default=None, alias="metadata_json")

    def changed_fields(self) -> List[str]:
        """Keys whose value differs between the before and after snapshots."""
        before = self.before or {}
        after = self.after or {}
        return sorted(k for k in set(before) | set(after) if before.get(k) != after.get(k))
