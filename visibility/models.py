"""Pydantic models exchanged with the listing and admin layers."""
from __future__ import annotations
from enum import Enum
from pydantic import BaseModel, Field


class RestrictionMode(str, Enum):
    INCLUDE = "INCLUDE"
    EXCLUDE = "EXCLUDE"


class ExclusionReason(str, Enum):
    RESTRICTED = "restricted"
    HIDDEN = "hidden"
    CASCADE = "cascade"
    EMPTY = "empty"


# ── Restrictions ────────────────────────────────────────────────────

class ContentRestrictionInput(BaseModel):
    entityType: str
    mode: RestrictionMode = RestrictionMode.EXCLUDE
    entityIds: list[str] = Field(default_factory=list)  # "id" or "id:instanceId"
    restrictEmpty: bool = False


# ── Recompute results ───────────────────────────────────────────────

class RecomputeFailure(BaseModel):
    userId: int
    error: str


class RecomputeAllResult(BaseModel):
    successCount: int = 0
    failedCount: int = 0
    errors: list[RecomputeFailure] = Field(default_factory=list)


class EntityVisibilityStats(BaseModel):
    entityType: str
    totalCount: int = 0
    excludedCount: int = 0
    visibleCount: int = 0
    updatedAt: str = ""
