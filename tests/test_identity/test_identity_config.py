"""Tests for IdentityConfig from environment."""

import os

import pytest

from tenant_rbac.identity.config import IdentityConfig


def test_config_requires_secret_for_hmac():
    with pytest.raises(ValueError, match="RBAC_IDENTITY_SECRET"):
        with _env({}):
            IdentityConfig.from_environ()


def test_config_requires_public_key_for_rsa():
    with pytest.raises(ValueError, match="RBAC_IDENTITY_PUBLIC_KEY"):
        with _env({"RBAC_IDENTITY_ALGORITHM": "RS256", "RBAC_IDENTITY_SECRET": "ignored"}):
            IdentityConfig.from_environ()


def test_config_from_environ():
    env = {
        "RBAC_IDENTITY_SECRET": "s" * 32,
        "RBAC_IDENTITY_ISSUER": " https://id.example.com ",
        "RBAC_CLOCK_SKEW_SECONDS": "30",
    }
    with _env(env):
        cfg = IdentityConfig.from_environ()
    assert cfg.algorithm == "HS256"
    assert cfg.is_hmac is True
    assert cfg.verification_key == "s" * 32
    assert cfg.issuer == "https://id.example.com"
    assert cfg.audience is None
    assert cfg.clock_skew_seconds == 30


def test_config_bad_skew_falls_back_to_default():
    with _env({"RBAC_IDENTITY_SECRET": "s" * 32, "RBAC_CLOCK_SKEW_SECONDS": "soon"}):
        cfg = IdentityConfig.from_environ()
    assert cfg.clock_skew_seconds == 120


def _env(env: dict):
    class _Env:
        def __enter__(self):
            self._saved = os.environ.copy()
            os.environ.clear()
            os.environ.update(env)
            return self

        def __exit__(self, *args):
            os.environ.clear()
            os.environ.update(self._saved)
            return False

    return _Env()
