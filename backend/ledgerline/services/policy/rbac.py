"""
Role policy value object.

The policy is loaded once at startup from a YAML/JSON file (YAML is a
superset of JSON, so one ``yaml.safe_load`` reads both) or falls back to
the built-in default. Every role and permission referenced by a mapping
must be declared; a malformed policy fails startup.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_log = structlog.get_logger(__name__)

ALL_ROLES = ("admin", "finance", "pm", "viewer", "auditor", "tenant_admin", "support", "security")

# Route-level role gates
READ_CORE = frozenset(ALL_ROLES)
WRITE_CORE = frozenset({"admin", "finance", "pm", "tenant_admin"})
AUDIT_READ = frozenset({"admin", "finance", "auditor", "tenant_admin", "support", "security"})
MEMBER_WRITE = frozenset({"admin", "tenant_admin"})


class PolicyError(ValueError):
    """Raised when a role policy document is malformed."""


def _normalize(value: Any) -> str:
    return str(value).strip().lower() if value is not None else ""


class RolePolicy(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    version: int = 1
    roles: frozenset[str]
    permissions: frozenset[str]
    role_permissions: dict[str, frozenset[str]] = Field(default_factory=dict, alias="rolePermissions")
    role_change_rules: dict[str, frozenset[str]] = Field(
        default_factory=dict, alias="roleChangeRules"
    )

    @field_validator("roles", mode="before")
    @classmethod
    def _normalize_roles(cls, value: Any) -> frozenset[str]:
        return frozenset(r for r in map(_normalize, value or []) if r)

    @field_validator("permissions", mode="before")
    @classmethod
    def _normalize_permissions(cls, value: Any) -> frozenset[str]:
        return frozenset(str(p).strip() for p in value or [] if str(p).strip())

    @field_validator("role_permissions", mode="before")
    @classmethod
    def _normalize_role_permissions(cls, value: Any) -> dict[str, frozenset[str]]:
        return {
            _normalize(role): frozenset(str(p).strip() for p in perms or [])
            for role, perms in (value or {}).items()
        }

    @field_validator("role_change_rules", mode="before")
    @classmethod
    def _normalize_role_change_rules(cls, value: Any) -> dict[str, frozenset[str]]:
        return {
            _normalize(role): frozenset(map(_normalize, targets or []))
            for role, targets in (value or {}).items()
        }

    @model_validator(mode="after")
    def _references_are_declared(self) -> RolePolicy:
        if not self.roles:
            raise ValueError("policy declares no roles")
        for role, perms in self.role_permissions.items():
            if role not in self.roles:
                raise ValueError(f"rolePermissions references unknown role: {role}")
            unknown = perms - self.permissions
            if unknown:
                raise ValueError(f"role {role} references unknown permissions: {sorted(unknown)}")
        for role, targets in self.role_change_rules.items():
            unknown = ({role} | targets) - self.roles
            if unknown:
                raise ValueError(f"roleChangeRules references unknown roles: {sorted(unknown)}")
        return self

    def can_assign_role(self, actor_role: str | None, target_role: str | None) -> bool:
        actor = _normalize(actor_role)
        target = _normalize(target_role)
        if not actor or not target:
            return False
        return target in self.role_change_rules.get(actor, frozenset())

    def has_permission(self, actor_role: str | None, permission: str) -> bool:
        return permission in self.role_permissions.get(_normalize(actor_role), frozenset())


_TX_PERMISSIONS = ["transaction:submit", "transaction:approve", "transaction:reject"]
_READ_PERMISSIONS = ["comment:read", "evidence:read"]
_WRITE_PERMISSIONS = ["comment:write", "evidence:write"]

DEFAULT_POLICY_DOCUMENT: dict[str, Any] = {
    "version": 1,
    "roles": list(ALL_ROLES),
    "permissions": _TX_PERMISSIONS + _READ_PERMISSIONS + _WRITE_PERMISSIONS,
    "rolePermissions": {
        "admin": _TX_PERMISSIONS + _READ_PERMISSIONS + _WRITE_PERMISSIONS,
        "tenant_admin": _TX_PERMISSIONS + _READ_PERMISSIONS + _WRITE_PERMISSIONS,
        "finance": _TX_PERMISSIONS + _READ_PERMISSIONS + _WRITE_PERMISSIONS,
        "pm": ["transaction:submit"] + _READ_PERMISSIONS + _WRITE_PERMISSIONS,
        "viewer": _READ_PERMISSIONS,
        "auditor": _READ_PERMISSIONS,
        "support": _READ_PERMISSIONS,
        "security": _READ_PERMISSIONS,
    },
    "roleChangeRules": {
        "admin": list(ALL_ROLES),
        "tenant_admin": [r for r in ALL_ROLES if r != "admin"],
    },
}


def load_role_policy(path: Path | None = None) -> RolePolicy:
    """Load and validate a policy file; the built-in default when *path* is None."""
    if path is None:
        return RolePolicy.model_validate(DEFAULT_POLICY_DOCUMENT)
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        policy = RolePolicy.model_validate(raw or {})
    except (OSError, yaml.YAMLError, ValueError) as exc:
        raise PolicyError(f"Invalid role policy {path}: {exc}") from exc
    _log.info("role_policy_loaded", path=str(path), version=policy.version)
    return policy
