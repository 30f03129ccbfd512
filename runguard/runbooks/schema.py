from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class RunbookStep(BaseModel):
    id: str
    name: str
    command: Optional[str] = None
    is_destructive: bool = False
    affects_production: bool = False
    has_confirmation: bool = False
    has_approval_gate: bool = False
    max_retries: int = Field(default=3, ge=0)
    timeout_seconds: Optional[int] = Field(default=None, gt=0)


class RunbookDefinition(BaseModel):
    id: str
    name: str
    description: str = ""
    steps: List[RunbookStep] = Field(default_factory=list)
