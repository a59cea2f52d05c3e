from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, Field


class AssessRequest(BaseModel):
    # ``userId`` is accepted for clients that still send the legacy field name.
    identity: Optional[str] = Field(default=None, max_length=200, validation_alias=AliasChoices("identity", "userId"))
    domainInput: Dict[str, Any] = Field(default_factory=dict)
    assessmentType: Optional[str] = Field(default=None, max_length=64)


class CancelRequest(BaseModel):
    identity: Optional[str] = Field(default=None, max_length=200, validation_alias=AliasChoices("identity", "userId"))
    jobId: str = Field(..., max_length=100)
