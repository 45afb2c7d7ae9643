"""
Configuration module for the Box migration tool.

This module loads settings from a YAML file into typed dataclasses, overlays
secrets from the environment, validates that the credentials a run needs are
present, and writes a commented default configuration for new deployments.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from box_migrator.constants import (
    BOX_API_BASE_URL,
    BOX_TOKEN_URL,
    DEFAULT_NON_MOVABLE_SKIP_REASONS,
    SENDGRID_API_URL,
)
from box_migrator.exceptions import ConfigError
from box_migrator.utils.logging import log_with_context

# Environment variables that override values from the YAML file
ENV_OVERRIDES = {
    "BOX_CLIENT_ID": ("box", "client_id"),
    "BOX_CLIENT_SECRET": ("box", "client_secret"),
    "BOX_ENTERPRISE_ID": ("box", "enterprise_id"),
    "BOX_MANAGED_USER_ID": ("box", "managed_user_id"),
    "SENDGRID_API_KEY": ("notifications", "sendgrid_api_key"),
    "MIGRATION_NOTIFICATION_FROM_ADDRESS": ("notifications", "from_address"),
    "BOX_MIGRATOR_DB_PATH": ("job_store", "path"),
}


@dataclass
class BoxConfig:
    """Box application credentials and endpoints."""

    client_id: str = ""
    client_secret: str = ""
    enterprise_id: str = ""
    # Long-term managed account that receives migrated content
    managed_user_id: str = ""
    api_base_url: str = BOX_API_BASE_URL
    token_url: str = BOX_TOKEN_URL

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> BoxConfig:
        if not data:
            return cls()
        return cls(
            client_id=str(data.get("client_id", "")),
            client_secret=str(data.get("client_secret", "")),
            enterprise_id=str(data.get("enterprise_id", "")),
            managed_user_id=str(data.get("managed_user_id", "")),
            api_base_url=data.get("api_base_url", BOX_API_BASE_URL),
            token_url=data.get("token_url", BOX_TOKEN_URL),
        )


@dataclass
class RetryConfig:
    """Attempt ceilings per call site and the backoff settings."""

    bootstrap_max_attempts: int = 5
    item_max_attempts: int = 3
    activity_max_attempts: int = 3
    transient_backoff_seconds: float = 2.0
    rate_limit_base_seconds: float = 2.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RetryConfig:
        if not data:
            return cls()
        return cls(
            bootstrap_max_attempts=int(data.get("bootstrap_max_attempts", 5)),
            item_max_attempts=int(data.get("item_max_attempts", 3)),
            activity_max_attempts=int(data.get("activity_max_attempts", 3)),
            transient_backoff_seconds=float(data.get("transient_backoff_seconds", 2.0)),
            rate_limit_base_seconds=float(data.get("rate_limit_base_seconds", 2.0)),
        )


@dataclass
class TimeoutConfig:
    """Client-side timeouts, in seconds."""

    bulk_seconds: float = 300.0
    item_seconds: float = 60.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TimeoutConfig:
        if not data:
            return cls()
        return cls(
            bulk_seconds=float(data.get("bulk_seconds", 300.0)),
            item_seconds=float(data.get("item_seconds", 60.0)),
        )


@dataclass
class DeprovisionConfig:
    """Settings for converting an account to a personal account."""

    max_drain_rounds: int = 100
    # 10 GB, the standard personal account allowance
    personal_quota_bytes: int = 10 * 1024**3
    convert_to_personal: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DeprovisionConfig:
        if not data:
            return cls()
        return cls(
            max_drain_rounds=int(data.get("max_drain_rounds", 100)),
            personal_quota_bytes=int(
                data.get("personal_quota_bytes", 10 * 1024**3)
            ),
            convert_to_personal=bool(data.get("convert_to_personal", True)),
        )


@dataclass
class NotificationConfig:
    """Email delivery for account holders and operators."""

    sendgrid_api_key: str = ""
    sendgrid_url: str = SENDGRID_API_URL
    from_address: str = ""
    operator_addresses: list[str] = field(default_factory=list)
    notify_users: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> NotificationConfig:
        if not data:
            return cls()
        return cls(
            sendgrid_api_key=str(data.get("sendgrid_api_key", "")),
            sendgrid_url=data.get("sendgrid_url", SENDGRID_API_URL),
            from_address=str(data.get("from_address", "")),
            operator_addresses=list(data.get("operator_addresses") or []),
            notify_users=bool(data.get("notify_users", True)),
        )


@dataclass
class JobStoreConfig:
    """Where the SQLite job store lives and how long claims are held.

    A job that stops early is hidden from the queue for ``retry_delay_seconds``
    before it is picked up again.
    """

    path: str = "box_migrator.db"
    lease_seconds: int = 3600
    retry_delay_seconds: int = 900

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> JobStoreConfig:
        if not data:
            return cls()
        return cls(
            path=str(data.get("path", "box_migrator.db")),
            lease_seconds=int(data.get("lease_seconds", 3600)),
            retry_delay_seconds=int(data.get("retry_delay_seconds", 900)),
        )


@dataclass
class MigratorConfig:
    """Typed configuration for the migration tool.

    Passed explicitly into the run context, the Box clients and the workflows;
    nothing reads configuration from module-level state.
    """

    box: BoxConfig = field(default_factory=BoxConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    deprovision: DeprovisionConfig = field(default_factory=DeprovisionConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    job_store: JobStoreConfig = field(default_factory=JobStoreConfig)

    # Per-phase fan-out width
    max_workers: int = 8
    non_movable_skip_reasons: list[str] = field(
        default_factory=lambda: list(DEFAULT_NON_MOVABLE_SKIP_REASONS)
    )
    show_progress: bool = True
    log_dir: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigratorConfig:
        """Create a MigratorConfig from a raw config dictionary."""
        skip_reasons = data.get("non_movable_skip_reasons")
        return cls(
            box=BoxConfig.from_dict(data.get("box")),
            retry=RetryConfig.from_dict(data.get("retry")),
            timeouts=TimeoutConfig.from_dict(data.get("timeouts")),
            deprovision=DeprovisionConfig.from_dict(data.get("deprovision")),
            notifications=NotificationConfig.from_dict(data.get("notifications")),
            job_store=JobStoreConfig.from_dict(data.get("job_store")),
            max_workers=int(data.get("max_workers", 8)),
            non_movable_skip_reasons=(
                list(skip_reasons)
                if skip_reasons is not None
                else list(DEFAULT_NON_MOVABLE_SKIP_REASONS)
            ),
            show_progress=bool(data.get("show_progress", True)),
            log_dir=data.get("log_dir"),
        )


def apply_env_overrides(
    raw: dict[str, Any], environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Overlay secrets from the environment onto a raw config dictionary.

    Args:
        raw: Config dictionary as loaded from YAML
        environ: Environment mapping, defaults to ``os.environ``

    Returns:
        The same dictionary, updated in place
    """
    env = os.environ if environ is None else environ
    for var, (section, key) in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            section_data = raw.get(section)
            if not isinstance(section_data, dict):
                section_data = {}
                raw[section] = section_data
            section_data[key] = value
    return raw


def load_config(
    config_path: Path, environ: Mapping[str, str] | None = None
) -> MigratorConfig:
    """
    Load configuration from YAML file and apply default values.

    Loads the configuration from the specified YAML file, overlays any secrets
    found in the environment and applies defaults for every missing option.
    A missing or unreadable file is logged and the defaults are used.

    Args:
        config_path: Path to the config YAML file
        environ: Environment mapping used for overrides, defaults to ``os.environ``

    Returns:
        MigratorConfig with all necessary defaults applied
    """
    raw: dict[str, Any] = {}

    if config_path.exists():
        try:
            with open(config_path) as f:
                loaded_config = yaml.safe_load(f)
                if loaded_config is not None:
                    raw = loaded_config
            log_with_context(logging.INFO, f"Loaded configuration from {config_path}")
        except (yaml.YAMLError, OSError) as e:
            log_with_context(
                logging.WARNING, f"Failed to load config file {config_path}: {e}"
            )
    else:
        log_with_context(
            logging.WARNING,
            f"Config file {config_path} not found, using default settings",
        )

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    return MigratorConfig.from_dict(apply_env_overrides(raw, environ))


def validate_config(config: MigratorConfig, require_managed_user: bool = True) -> None:
    """
    Check that the settings a run depends on are present and sane.

    Args:
        config: The loaded configuration
        require_managed_user: Whether the managed account id must be set

    Raises:
        ConfigError: Describing every problem found
    """
    problems = []
    if not config.box.client_id:
        problems.append("box.client_id (or BOX_CLIENT_ID) is required")
    if not config.box.client_secret:
        problems.append("box.client_secret (or BOX_CLIENT_SECRET) is required")
    if not config.box.enterprise_id:
        problems.append("box.enterprise_id (or BOX_ENTERPRISE_ID) is required")
    if require_managed_user and not config.box.managed_user_id:
        problems.append("box.managed_user_id (or BOX_MANAGED_USER_ID) is required")
    if config.max_workers < 1:
        problems.append("max_workers must be at least 1")
    if config.deprovision.max_drain_rounds < 1:
        problems.append("deprovision.max_drain_rounds must be at least 1")
    for name in ("bootstrap_max_attempts", "item_max_attempts", "activity_max_attempts"):
        if getattr(config.retry, name) < 1:
            problems.append(f"retry.{name} must be at least 1")

    if problems:
        raise ConfigError("Invalid configuration: " + "; ".join(problems))


def create_default_config(output_path: Path) -> bool:
    """
    Create a default configuration file with recommended settings.

    Credentials are left blank; supply them in the file or through the
    ``BOX_CLIENT_ID``/``BOX_CLIENT_SECRET``/``BOX_ENTERPRISE_ID`` environment
    variables. An existing file is never overwritten.

    Args:
        output_path: Path where the default config should be saved

    Returns:
        True if the config file was created successfully, False otherwise
    """
    if output_path.exists():
        log_with_context(
            logging.WARNING,
            f"Config file {output_path} already exists, not overwriting",
        )
        return False

    default_config = {
        "box": {
            "client_id": "",
            "client_secret": "",
            "enterprise_id": "",
            "managed_user_id": "",
        },
        "retry": {
            "bootstrap_max_attempts": 5,
            "item_max_attempts": 3,
            "activity_max_attempts": 3,
            "transient_backoff_seconds": 2.0,
            "rate_limit_base_seconds": 2.0,
        },
        "timeouts": {"bulk_seconds": 300, "item_seconds": 60},
        "deprovision": {
            "max_drain_rounds": 100,
            "personal_quota_bytes": 10 * 1024**3,
            "convert_to_personal": True,
        },
        "notifications": {
            "from_address": "",
            "operator_addresses": [],
            "notify_users": True,
        },
        "job_store": {
            "path": "box_migrator.db",
            "lease_seconds": 3600,
            "retry_delay_seconds": 900,
        },
        "max_workers": 8,
        "non_movable_skip_reasons": list(DEFAULT_NON_MOVABLE_SKIP_REASONS),
        "show_progress": True,
    }

    try:
        with open(output_path, "w") as f:
            yaml.safe_dump(default_config, f, default_flow_style=False, sort_keys=False)
        log_with_context(logging.INFO, f"Created default config file at {output_path}")
        return True
    except OSError as e:
        log_with_context(logging.ERROR, f"Failed to create default config file: {e}")
        return False
