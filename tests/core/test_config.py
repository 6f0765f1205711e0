"""Tests for ssid_federation.core.config - FederationSettings and global config management.

Tests cover:
- Settings loading with defaults
- SSID_ environment variable overrides
- Range validation
- Singleton behavior (get_config / clear_config_cache)
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from ssid_federation.core.config import (
    FederationSettings,
    clear_config_cache,
    get_config,
)

# ============================================================================
# FederationSettings - Default Values
# ============================================================================


class TestFederationSettingsDefaults:
    """Test that FederationSettings loads with correct default values."""

    def test_node_defaults(self, clean_env):
        settings = FederationSettings()

        assert settings.node_id is None
        assert settings.node_private_key is None
        assert settings.federation_registry_path is None

    def test_negotiation_defaults(self, clean_env):
        settings = FederationSettings()

        assert settings.negotiation_deadline == 10
        assert settings.verify_workers == 4
        assert settings.max_subject_id_size == 256
        assert settings.max_holders == 64

    def test_audit_defaults(self, clean_env):
        settings = FederationSettings()

        assert settings.audit_log_path is None
        assert settings.audit_verify_interval == 0

    def test_logging_defaults(self, clean_env):
        """Test logging settings have correct defaults."""
        settings = FederationSettings()

        assert settings.log_level == "INFO"
        assert settings.log_format == ""
        assert settings.log_file is None


# ============================================================================
# FederationSettings - Environment Overrides
# ============================================================================


class TestFederationSettingsEnv:
    """Every field is read from its SSID_ variable."""

    def test_node_identity_from_env(self, clean_env, monkeypatch):
        monkeypatch.setenv("SSID_NODE_ID", "node-3")
        monkeypatch.setenv("SSID_NODE_PRIVATE_KEY", "ab" * 32)
        monkeypatch.setenv("SSID_FEDERATION_REGISTRY", "/etc/ssid/federation.json")

        settings = FederationSettings()
        assert settings.node_id == "node-3"
        assert settings.node_private_key == "ab" * 32
        assert settings.federation_registry_path == "/etc/ssid/federation.json"

    def test_integers_from_env(self, clean_env, monkeypatch):
        monkeypatch.setenv("SSID_NEGOTIATION_DEADLINE", "25")
        monkeypatch.setenv("SSID_VERIFY_WORKERS", "8")
        monkeypatch.setenv("SSID_AUDIT_VERIFY_INTERVAL", "100")

        settings = FederationSettings()
        assert settings.negotiation_deadline == 25
        assert settings.verify_workers == 8
        assert settings.audit_verify_interval == 100

    def test_logging_from_env(self, clean_env, monkeypatch):
        monkeypatch.setenv("SSID_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("SSID_LOG_FORMAT", "json")
        monkeypatch.setenv("SSID_LOG_FILE", "/var/log/ssid.log")

        settings = FederationSettings()
        assert settings.log_level == "DEBUG"
        assert settings.log_format == "json"
        assert settings.log_file == "/var/log/ssid.log"

    def test_field_names_accepted(self, clean_env):
        settings = FederationSettings(node_id="node-1", negotiation_deadline=3)
        assert settings.node_id == "node-1"
        assert settings.negotiation_deadline == 3


# ============================================================================
# FederationSettings - Validation
# ============================================================================


class TestFederationSettingsValidation:
    @pytest.mark.parametrize(
        "field",
        ["negotiation_deadline", "verify_workers", "max_subject_id_size", "max_holders"],
    )
    def test_must_be_positive(self, clean_env, field):
        with pytest.raises(ValidationError):
            FederationSettings(**{field: 0})

    def test_verify_interval_non_negative(self, clean_env):
        assert FederationSettings(audit_verify_interval=0).audit_verify_interval == 0
        with pytest.raises(ValidationError):
            FederationSettings(audit_verify_interval=-1)

    def test_invalid_env_value(self, clean_env, monkeypatch):
        monkeypatch.setenv("SSID_NEGOTIATION_DEADLINE", "soon")
        with pytest.raises(ValidationError):
            FederationSettings()


# ============================================================================
# Global Config
# ============================================================================


class TestGetConfig:
    """Test get_config singleton and clear_config_cache."""

    def test_returns_settings(self, clean_env):
        assert isinstance(get_config(), FederationSettings)

    def test_singleton(self, clean_env):
        assert get_config() is get_config()

    def test_clear_cache_reloads_env(self, clean_env, monkeypatch):
        first = get_config()
        monkeypatch.setenv("SSID_NODE_ID", "node-2")
        assert get_config().node_id is None

        clear_config_cache()
        second = get_config()
        assert second is not first
        assert second.node_id == "node-2"
