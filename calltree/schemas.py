"""Schemas for the runs API."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from typing_extensions import TypedDict

ID_TYPE = Union[UUID, str]


class RunTypeEnum(str, Enum):
    """Enum for run types."""

    tool = "tool"
    chain = "chain"
    llm = "llm"
    retriever = "retriever"
    embedding = "embedding"
    prompt = "prompt"
    parser = "parser"


class RunBase(BaseModel):
    """Base Run schema."""

    model_config = ConfigDict(arbitrary_types_allowed=True, use_enum_values=True)

    id: UUID
    name: str
    start_time: datetime
    run_type: RunTypeEnum
    end_time: Optional[datetime] = None
    extra: Optional[dict] = None
    error: Optional[str] = None
    serialized: Optional[dict] = None
    events: Optional[list[dict]] = Field(default=None)
    inputs: dict = Field(default_factory=dict)
    outputs: Optional[dict] = None
    reference_example_id: Optional[UUID] = None
    parent_run_id: Optional[UUID] = None
    tags: Optional[list[str]] = None

    @property
    def metadata(self) -> dict[str, Any]:
        """Retrieve the metadata (if any)."""
        if self.extra is None:
            self.extra = {}
        return self.extra.setdefault("metadata", {})


class RunCreate(TypedDict, total=False):
    """Payload sent when a run starts."""

    id: UUID
    name: str
    start_time: datetime
    run_type: str
    end_time: Optional[datetime]
    extra: dict[str, Any]
    error: Optional[str]
    serialized: Optional[dict]
    events: Optional[list[dict]]
    inputs: dict[str, Any]
    outputs: Optional[dict[str, Any]]
    parent_run_id: Optional[UUID]
    tags: Optional[list[str]]
    execution_order: int
    child_execution_order: int
    trace_id: Optional[UUID]
    dotted_order: Optional[str]
    session_name: Optional[str]
    reference_example_id: Optional[UUID]


class RunUpdate(TypedDict):
    """Payload sent when a run ends or changes."""

    end_time: Optional[datetime]
    error: Optional[str]
    outputs: Optional[dict[str, Any]]
    events: Optional[list[dict]]
    inputs: Optional[dict[str, Any]]
    trace_id: Optional[UUID]
    dotted_order: Optional[str]
    parent_run_id: Optional[UUID]
