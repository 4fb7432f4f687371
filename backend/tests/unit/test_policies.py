"""Unit tests for the role policy and relation rules loaders."""
from pathlib import Path

import pytest

from ledgerline.db.models.projection import RelationRuleRecord
from ledgerline.services.policy.rbac import (
    ALL_ROLES,
    AUDIT_READ,
    MEMBER_WRITE,
    WRITE_CORE,
    PolicyError,
    load_role_policy,
)
from ledgerline.services.queue.relation_rules import (
    RelationRule,
    RelationRuleResolver,
    default_rules,
    load_rules_file,
    resolve_affected_views,
)

POLICY_DIR = Path(__file__).resolve().parents[2] / "policies"


# ─── Role policy ──────────────────────────────────────────────────────────────

def test_default_policy_permissions():
    policy = load_role_policy()
    assert policy.has_permission("finance", "transaction:approve")
    assert policy.has_permission("pm", "transaction:submit")
    assert not policy.has_permission("pm", "transaction:approve")
    assert policy.has_permission("viewer", "comment:read")
    assert not policy.has_permission("viewer", "comment:write")
    assert not policy.has_permission(None, "comment:read")


def test_default_role_change_rules():
    policy = load_role_policy()
    assert policy.can_assign_role("admin", "admin")
    assert policy.can_assign_role("tenant_admin", "finance")
    assert not policy.can_assign_role("tenant_admin", "admin")
    assert not policy.can_assign_role("finance", "viewer")
    assert not policy.can_assign_role("admin", "")


def test_role_gates():
    assert set(ALL_ROLES) >= WRITE_CORE | AUDIT_READ | MEMBER_WRITE
    assert "viewer" not in WRITE_CORE
    assert "auditor" in AUDIT_READ and "pm" not in AUDIT_READ
    assert MEMBER_WRITE == {"admin", "tenant_admin"}


def test_bundled_policy_file_matches_default():
    assert load_role_policy(POLICY_DIR / "rbac-policy.yaml") == load_role_policy()


def test_policy_file_normalizes_role_case(tmp_path):
    path = tmp_path / "policy.yaml"
    path.write_text(
        "roles: [Admin, Viewer]\n"
        "permissions: [comment:read]\n"
        "rolePermissions:\n  VIEWER: [comment:read]\n"
        "roleChangeRules:\n  admin: [viewer]\n"
    )
    policy = load_role_policy(path)
    assert policy.roles == {"admin", "viewer"}
    assert policy.has_permission("viewer", "comment:read")


@pytest.mark.parametrize(
    "content",
    [
        "roles: []\n",
        "roles: [admin]\npermissions: []\nrolePermissions:\n  ghost: []\n",
        "roles: [admin]\npermissions: [a]\nrolePermissions:\n  admin: [b]\n",
        "roles: [admin]\npermissions: []\nroleChangeRules:\n  admin: [root]\n",
        "roles: [admin\n",
    ],
)
def test_malformed_policy_fails(tmp_path, content):
    path = tmp_path / "policy.yaml"
    path.write_text(content)
    with pytest.raises(PolicyError):
        load_role_policy(path)


def test_missing_policy_file_fails(tmp_path):
    with pytest.raises(PolicyError):
        load_role_policy(tmp_path / "absent.yaml")


# ─── Relation rules ───────────────────────────────────────────────────────────

def test_default_rules_for_transaction():
    assert resolve_affected_views(default_rules(), "transaction", ["amount"]) == [
        "project_financials",
        "approval_inbox",
        "member_workload",
        "alerts",
    ]


def test_union_is_deduplicated_in_rule_order():
    rules = [
        RelationRule.model_validate({"id": "a", "when": {"entityType": "*"}, "affects": ["x", "y"]}),
        RelationRule.model_validate({"id": "b", "when": {"entityType": "project"}, "affects": ["y", "z"]}),
    ]
    assert resolve_affected_views(rules, "Project", ["name"]) == ["x", "y", "z"]


def test_changed_fields_condition():
    rule = RelationRule.model_validate(
        {"id": "r", "when": {"entityType": "project", "changedFields": ["budget.total"]}, "affects": ["v"]}
    )
    assert rule.matches("project", ["name", "budget.total"])
    assert not rule.matches("project", ["name"])
    assert not rule.matches("ledger", ["budget.total"])


def test_disabled_rule_never_matches():
    rule = RelationRule.model_validate({"id": "r", "enabled": False, "affects": ["v"]})
    assert not rule.matches("project", ["name"])


def test_unknown_entity_type_affects_nothing():
    assert resolve_affected_views(default_rules(), "comment", ["content"]) == []


def test_bundled_rules_file_matches_defaults():
    assert load_rules_file(POLICY_DIR / "relation-rules.yaml") == default_rules()


def test_malformed_rules_file_fails(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text("rules:\n  - id: r1\n    affects: []\n")
    with pytest.raises(PolicyError):
        load_rules_file(path)


async def test_tenant_rules_override_defaults(components):
    async def _fn(session):
        session.add(
            RelationRuleRecord(
                tenant_id="acme",
                id="only-alerts",
                entity_type="transaction",
                changed_fields=["state"],
                affects=["alerts"],
            )
        )

    await components.store.run_transaction(_fn)
    resolver = RelationRuleResolver(default_rules())
    async with components.store.session() as session:
        assert await resolver.affected_views(session, "acme", "transaction", ["state"]) == ["alerts"]
        assert await resolver.affected_views(session, "acme", "transaction", ["amount"]) == []
        assert await resolver.affected_views(session, "globex", "project", ["name"]) == [
            "project_financials",
            "alerts",
        ]
