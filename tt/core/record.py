"""Record model: one node of the timer tree, and its wire format.

Attributes are snake_case in Python; the persisted JSON uses the camelCase
keys (``parentId``, ``isRunning``, ``baseTime``, ...) through pydantic aliases.
``is_editing`` and ``is_editing_note`` are UI-transient and never persisted.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tt.util import utc_now


def new_record_id() -> str:
    return uuid.uuid4().hex[:12]


class Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_record_id, min_length=1)
    label: str = ""
    note: Optional[str] = None
    parent_id: Optional[str] = Field(default=None, alias="parentId")
    children: List[Record] = Field(default_factory=list)
    is_running: bool = Field(default=False, alias="isRunning")
    base_time: int = Field(default=0, alias="baseTime")
    start_time: Optional[int] = Field(default=None, alias="startTime")
    time: int = 0
    is_collapsed: bool = Field(default=False, alias="isCollapsed")
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")

    is_editing: bool = Field(default=False, alias="isEditing", exclude=True)
    is_editing_note: bool = Field(default=False, alias="isEditingNote", exclude=True)

    # Older saves wrote fractional or negative seconds now and then; bank whole, non-negative seconds only.
    @field_validator("base_time", "time", mode="before")
    @classmethod
    def _whole_seconds(cls, value):
        if value is None:
            return 0
        if isinstance(value, float):
            value = math.floor(value)
        if isinstance(value, int) and not isinstance(value, bool):
            return max(0, value)
        return value

    @field_validator("start_time", mode="before")
    @classmethod
    def _whole_millis(cls, value):
        if isinstance(value, float):
            return math.floor(value)
        return value

    @field_validator("created_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    # Brings a freshly parsed record back in line with the run-state invariants: a running record needs a startTime,
    # a stopped one has none and shows exactly its banked time, and every child points back at this record.
    @model_validator(mode="after")
    def _normalize(self) -> Record:
        if self.is_running and self.start_time is None:
            self.is_running = False
        if not self.is_running:
            self.start_time = None
            self.base_time = max(self.base_time, self.time)
            self.time = self.base_time
        for child in self.children:
            if child.parent_id != self.id:
                child.parent_id = self.id
        return self

    # Depth-first walk over this record and every nested descendant.
    def walk(self) -> Iterator[Record]:
        yield self
        for child in self.children:
            yield from child.walk()

    def to_dict(self) -> dict:
        data = self.model_dump(mode="json", by_alias=True)
        _drop_absent(data)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Record:
        return cls.model_validate(data)


# startTime and note are optional in the persisted schema, so they're left out rather than written as null.
def _drop_absent(data: dict):
    for key in ("startTime", "note"):
        if data.get(key) is None:
            data.pop(key, None)
    for child in data.get("children", []):
        _drop_absent(child)
