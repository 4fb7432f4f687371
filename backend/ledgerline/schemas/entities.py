"""Request schemas for entity mutations."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ledgerline.services.documents.store import WriteMode


class EntityUpsertRequest(BaseModel):
    """Base for versioned upserts; unknown fields are domain data and pass through."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str | None = Field(default=None, min_length=1, max_length=128, pattern=r"^[^/\s]+$")
    expected_version: int | None = Field(default=None, ge=0, alias="expectedVersion")

    def document_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True, exclude={"id", "expected_version"})


class ProjectUpsertRequest(EntityUpsertRequest):
    name: str | None = Field(default=None, max_length=200)


class LedgerUpsertRequest(EntityUpsertRequest):
    project_id: str = Field(..., min_length=1, max_length=128, alias="projectId")
    name: str | None = Field(default=None, max_length=200)


class TransactionUpsertRequest(EntityUpsertRequest):
    project_id: str | None = Field(default=None, min_length=1, max_length=128, alias="projectId")
    ledger_id: str | None = Field(default=None, min_length=1, max_length=128, alias="ledgerId")
    state: str | None = None
    direction: str | None = None
    amount: float | None = Field(default=None, ge=0)
    counterparty: str | None = Field(default=None, max_length=200)

    @field_validator("direction")
    @classmethod
    def _direction_in_or_out(cls, value: str | None) -> str | None:
        if value is None:
            return None
        direction = value.strip().upper()
        if direction not in ("IN", "OUT"):
            raise ValueError("direction must be IN or OUT")
        return direction


class StateChangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    new_state: str = Field(..., min_length=1, alias="newState")
    expected_version: int = Field(..., ge=1, alias="expectedVersion")
    reason: str | None = Field(default=None, max_length=2000)


class CommentCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    id: str | None = Field(default=None, min_length=1, max_length=128, pattern=r"^[^/\s]+$")
    content: str = Field(..., min_length=1, max_length=5000)


class EvidenceCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str | None = Field(default=None, min_length=1, max_length=128, pattern=r"^[^/\s]+$")
    file_name: str = Field(..., min_length=1, max_length=255, alias="fileName")
    status: str = Field(default="PENDING", max_length=32)

    def document_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"id"})


class MemberRoleChangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    role: str = Field(..., min_length=1, max_length=32)
    expected_version: int | None = Field(default=None, ge=1, alias="expectedVersion")
    reason: str | None = Field(default=None, max_length=2000)


class PipelineOptions(BaseModel):
    sync: bool = True


class WriteRequest(BaseModel):
    """Generic versioned write that also schedules the affected view rebuilds."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    entity_type: str = Field(..., min_length=1, max_length=32, alias="entityType")
    entity_id: str = Field(..., min_length=1, max_length=128, alias="entityId", pattern=r"^[^/\s]+$")
    data: dict[str, Any] = Field(default_factory=dict)
    expected_version: int | None = Field(default=None, ge=0, alias="expectedVersion")
    mode: WriteMode = WriteMode.MERGE
    options: PipelineOptions = Field(default_factory=PipelineOptions)


class ReplayRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    views: list[str] | None = None
    options: PipelineOptions = Field(default_factory=PipelineOptions)
