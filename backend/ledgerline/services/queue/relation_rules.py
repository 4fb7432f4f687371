"""
Relation rules: which read-views an entity change affects.

A rule matches when it is enabled, its entity type is ``*`` or equals the
changed entity's type, and its changed-fields list is ``["*"]`` or shares
at least one dotted path with the change. Tenant rules stored in the
``relation_rules`` table replace the file/default rule set wholesale.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.db.models.projection import RelationRuleRecord
from ledgerline.services.policy.rbac import PolicyError

_log = structlog.get_logger(__name__)


class RuleCondition(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    entity_type: str = Field(default="*", alias="entityType")
    changed_fields: tuple[str, ...] = Field(default=("*",), alias="changedFields")

    @field_validator("entity_type", mode="before")
    @classmethod
    def _normalize_entity_type(cls, value: Any) -> str:
        text = str(value).strip().lower() if isinstance(value, str) else ""
        return text or "*"

    @field_validator("changed_fields", mode="before")
    @classmethod
    def _normalize_changed_fields(cls, value: Any) -> tuple[str, ...]:
        if value == "*":
            return ("*",)
        fields = tuple(str(f).strip() for f in value or [] if str(f).strip())
        return fields or ("*",)


class RelationRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    enabled: bool = True
    when: RuleCondition = Field(default_factory=RuleCondition)
    affects: tuple[str, ...] = Field(min_length=1)

    @field_validator("affects", mode="before")
    @classmethod
    def _normalize_affects(cls, value: Any) -> tuple[str, ...]:
        return tuple(str(v).strip() for v in value or [] if str(v).strip())

    def matches(self, entity_type: str, changed_fields: Sequence[str]) -> bool:
        if not self.enabled:
            return False
        target = (entity_type or "").strip().lower()
        if self.when.entity_type != "*" and self.when.entity_type != target:
            return False
        if "*" in self.when.changed_fields:
            return True
        return any(field in self.when.changed_fields for field in changed_fields)


_DEFAULT_RULES: list[dict[str, Any]] = [
    {"id": "project-financials", "when": {"entityType": "project"}, "affects": ["project_financials", "alerts"]},
    {"id": "ledger-financials", "when": {"entityType": "ledger"}, "affects": ["project_financials"]},
    {
        "id": "transaction-all",
        "when": {"entityType": "transaction"},
        "affects": ["project_financials", "approval_inbox", "member_workload", "alerts"],
    },
    {"id": "member-workload", "when": {"entityType": "member"}, "affects": ["member_workload"]},
    {
        "id": "expense-set-approvals",
        "when": {"entityType": "expense_set"},
        "affects": ["approval_inbox", "project_financials", "alerts"],
    },
    {
        "id": "change-request-approvals",
        "when": {"entityType": "change_request"},
        "affects": ["approval_inbox", "project_financials", "member_workload", "alerts"],
    },
]


def default_rules() -> list[RelationRule]:
    return [RelationRule.model_validate(raw) for raw in _DEFAULT_RULES]


def load_rules_file(path: Path | None) -> list[RelationRule]:
    """Rules from a YAML/JSON document with a top-level ``rules`` list."""
    if path is None:
        return default_rules()
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        rules = [RelationRule.model_validate(item) for item in raw.get("rules", [])]
    except (OSError, yaml.YAMLError, ValueError, AttributeError) as exc:
        raise PolicyError(f"Invalid relation rules {path}: {exc}") from exc
    _log.info("relation_rules_loaded", path=str(path), count=len(rules))
    return rules


def resolve_affected_views(
    rules: Iterable[RelationRule], entity_type: str, changed_fields: Sequence[str]
) -> list[str]:
    affects: list[str] = []
    for rule in rules:
        if rule.matches(entity_type, changed_fields):
            affects.extend(view for view in rule.affects if view not in affects)
    return affects


class RelationRuleResolver:
    """Tenant rules from the database, falling back to the configured rule set."""

    def __init__(self, fallback_rules: Sequence[RelationRule]) -> None:
        self._fallback = list(fallback_rules)

    async def rules_for(self, session: AsyncSession, tenant_id: str) -> list[RelationRule]:
        rows = (
            await session.execute(
                select(RelationRuleRecord)
                .where(RelationRuleRecord.tenant_id == tenant_id)
                .order_by(RelationRuleRecord.id)
            )
        ).scalars().all()
        tenant_rules = [
            RelationRule(
                id=row.id,
                enabled=row.enabled,
                when=RuleCondition(entity_type=row.entity_type, changed_fields=row.changed_fields),
                affects=row.affects,
            )
            for row in rows
            if row.affects
        ]
        return tenant_rules or self._fallback

    async def affected_views(
        self,
        session: AsyncSession,
        tenant_id: str,
        entity_type: str,
        changed_fields: Sequence[str],
    ) -> list[str]:
        rules = await self.rules_for(session, tenant_id)
        return resolve_affected_views(rules, entity_type, changed_fields)
