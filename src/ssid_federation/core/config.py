"""Core configuration - centralized config for the ssid_federation package.

All environment-based configuration flows through this module.

Usage:
    from ssid_federation.core.config import get_config
    config = get_config()

    deadline = config.negotiation_deadline
    log_level = config.log_level
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FederationSettings(BaseSettings):
    """Settings for a single federation node.

    Every setting can be overridden with an SSID_-prefixed environment
    variable or a .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ==========================================================================
    # NODE IDENTITY
    # ==========================================================================

    node_id: str | None = Field(
        default=None,
        description="Identifier of this node inside the federation",
        validation_alias="SSID_NODE_ID",
    )
    node_private_key: str | None = Field(
        default=None,
        description="Ed25519 private key hex for signing commitments",
        validation_alias="SSID_NODE_PRIVATE_KEY",
    )
    federation_registry_path: str | None = Field(
        default=None,
        description="Path to the JSON file listing federation nodes and their public keys",
        validation_alias="SSID_FEDERATION_REGISTRY",
    )

    # ==========================================================================
    # NEGOTIATION
    # ==========================================================================

    negotiation_deadline: int = Field(
        default=10,
        description="Consensus heights a negotiation round stays open",
        validation_alias="SSID_NEGOTIATION_DEADLINE",
    )
    verify_workers: int = Field(
        default=4,
        description="Worker threads for batch commitment verification",
        validation_alias="SSID_VERIFY_WORKERS",
    )
    max_subject_id_size: int = Field(
        default=256,
        description="Maximum length of a subject id",
        validation_alias="SSID_MAX_SUBJECT_ID_SIZE",
    )
    max_holders: int = Field(
        default=64,
        description="Maximum number of share holders per subject",
        validation_alias="SSID_MAX_HOLDERS",
    )

    # ==========================================================================
    # AUDIT
    # ==========================================================================

    audit_log_path: str | None = Field(
        default=None,
        description="JSON-lines file the audit chain is mirrored to (optional)",
        validation_alias="SSID_AUDIT_LOG_PATH",
    )
    audit_verify_interval: int = Field(
        default=0,
        description="Verify the audit chain every N applied transactions (0 disables)",
        validation_alias="SSID_AUDIT_VERIFY_INTERVAL",
    )

    # ==========================================================================
    # LOGGING SETTINGS
    # ==========================================================================

    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
        validation_alias="SSID_LOG_LEVEL",
    )
    log_format: str = Field(
        default="",
        description="Log format: 'json', 'text', or '' (auto-detect)",
        validation_alias="SSID_LOG_FORMAT",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (optional)",
        validation_alias="SSID_LOG_FILE",
    )

    @field_validator("negotiation_deadline", "verify_workers", "max_subject_id_size", "max_holders")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("audit_verify_interval")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value


# ==========================================================================
# GLOBAL CONFIG INSTANCE (lazy loaded)
# ==========================================================================

_config: FederationSettings | None = None


def get_config() -> FederationSettings:
    """Get the global configuration instance.

    Returns:
        The singleton FederationSettings instance.
    """
    global _config
    if _config is None:
        _config = FederationSettings()
    return _config


def clear_config_cache() -> None:
    """Clear the config cache. Useful for testing."""
    global _config
    _config = None
