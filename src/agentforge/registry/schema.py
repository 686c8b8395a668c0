"""Pydantic models for registry records."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class Collection(StrEnum):
    """Registry collections."""

    AGENTS = "agents"
    TRANSFERABLE_CONTEXT = "transferable_context"
    CREDENTIALS = "credentials"
    CACHED_RETRIEVAL = "cached_retrieval"
    PLANNING_CACHE = "planning_cache"
    USER_PREFERENCES = "user_preferences"


class RegistryRecord(BaseModel):
    """One document in a registry collection."""

    id: str
    collection: Collection
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    expires_at: datetime | None = None
