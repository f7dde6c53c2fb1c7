"""Tests for policy YAML loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from tenant_rbac.engine.config import PolicyConfig, PolicyConfigError, load_policy_config

REPO_POLICY = Path(__file__).resolve().parents[2] / "config" / "policy.yaml"


def test_repository_policy_loads():
    policy = load_policy_config(REPO_POLICY)

    assert policy.roles.super_admin == "SuperAdmin"
    assert ("profile", "read") in policy.default_grant_set()
    assert policy.capabilities.manage_permissions.spec().resource_type == "roles"
    assert policy.rate_limits.auth_failures.lockout_seconds == 900


def test_missing_top_level_key(tmp_path):
    path = tmp_path / "policy.yaml"
    path.write_text("roles:\n  super_admin: Root\n", encoding="utf-8")

    with pytest.raises(ValueError, match="policy"):
        load_policy_config(path)


def test_invalid_values_are_rejected(tmp_path):
    path = tmp_path / "policy.yaml"
    path.write_text("policy:\n  cache:\n    ttl_seconds: -1\n", encoding="utf-8")

    with pytest.raises(PolicyConfigError):
        load_policy_config(path)


def test_empty_policy_section_uses_defaults(tmp_path):
    path = tmp_path / "policy.yaml"
    path.write_text("policy:\n", encoding="utf-8")

    assert load_policy_config(path) == PolicyConfig()


def test_destructive_actions_are_case_insensitive():
    policy = PolicyConfig()
    assert policy.is_destructive("DELETE")
    assert not policy.is_destructive("read")
