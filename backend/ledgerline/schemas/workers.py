"""Internal worker run schemas."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class WorkerRunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    limit: int | None = Field(default=None, ge=1, le=5000)
    max_attempts: int | None = Field(default=None, ge=1, le=50, alias="maxAttempts")
    tenant_id: str | None = Field(default=None, alias="tenantId")
    event_id: str | None = Field(default=None, alias="eventId")
    dry_run: bool = Field(default=False, alias="dryRun")
