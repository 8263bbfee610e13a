# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
macbind Configuration System

Configuration is merged from:
- /usr/local/etc/macbind.yaml
- .macbind.yaml in the current directory
- an explicit config file (--config)
- MACBIND_* environment variables

and validated with Pydantic. Nothing here is cached globally: callers load a
MacbindConfig once and pass it down.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger("macbind.config")

DEFAULT_CONFIG_LOCATIONS = [
    Path("/usr/local/etc/macbind.yaml"),
    Path.cwd() / ".macbind.yaml",
]


# ============================================================================
# Configuration Models
# ============================================================================


class PathsConfig(BaseModel):
    """Filesystem locations shared with the portal hook"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    queue_file: Path = Field(
        default=Path("/var/db/macbind_queue.csv"),
        description="Append-only grant event queue",
    )
    store_file: Path = Field(
        default=Path("/var/db/macbind_active.json"),
        description="Active bindings database",
    )
    log_file: Path = Field(
        default=Path("/var/log/macbind_sync.log"),
        description="Operational log",
    )
    backup_dir: Path = Field(
        default=Path("/conf/macbind_backups"),
        description="Pass-through MAC snapshots",
    )
    lock_file: Path = Field(
        default=Path("/var/run/macbind_sync.lock"),
        description="Single-writer run lock",
    )
    disable_flag: Path = Field(
        default=Path("/var/db/macbind_disabled"),
        description="Emergency halt flag",
    )
    session_db_pattern: str = Field(
        default="/var/db/captiveportal_{zone}.db",
        description="Captive portal session database, {zone} is substituted",
    )

    @field_validator(
        "queue_file",
        "store_file",
        "log_file",
        "backup_dir",
        "lock_file",
        "disable_flag",
        mode="before",
    )
    @classmethod
    def ensure_path(cls, v):
        """Convert strings to Path objects"""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v


class SyncConfig(BaseModel):
    """Reconciliation behaviour"""

    batch_size: int = Field(
        default=2000, description="Max queue lines consumed per run", ge=1
    )
    tag_prefix: str = Field(
        default="AUTO_BIND:", description="Description prefix of managed entries"
    )
    companion_marker: str = Field(
        default="Auto-added for voucher",
        description="Description fragment of portal auto-added entries",
    )
    adopt_companion_entries: bool = Field(
        default=True, description="Track expiry of portal auto-added entries"
    )
    companion_default_duration_minutes: int = Field(
        default=43200, description="Lifetime given to adopted entries", ge=1
    )
    hook_default_duration_minutes: int = Field(
        default=1440, description="Fallback voucher duration for enqueue", ge=1
    )
    lock_stale_after_seconds: int = Field(
        default=3600, description="Age after which a held lock is force-cleared", ge=1
    )
    require_root: bool = Field(default=True, description="Refuse to run as non-root")

    @field_validator("tag_prefix", "companion_marker")
    @classmethod
    def validate_marker(cls, v):
        if not v.strip():
            raise ValueError("Provenance markers must not be empty")
        return v


class BackupConfig(BaseModel):
    """Snapshot configuration"""

    enabled: bool = Field(default=True, description="Snapshot before first change")
    retention: int = Field(default=30, description="Snapshots to keep", ge=1)


class ControlPlaneConfig(BaseModel):
    """Captive portal management endpoint"""

    base_url: str = Field(
        default="https://127.0.0.1/macbind/v1", description="REST endpoint base URL"
    )
    api_key: Optional[str] = Field(default=None, description="X-API-Key value")
    timeout_seconds: float = Field(
        default=10.0, description="HTTP request timeout (seconds)", gt=0
    )
    verify_tls: bool = Field(default=True, description="Verify TLS certificates")


class ObservabilityConfig(BaseModel):
    """Logging configuration"""

    log_level: str = Field(default="INFO", description="Logging level")
    log_max_bytes: int = Field(
        default=5 * 1024 * 1024, description="Rotate log after this size", ge=1024
    )
    log_backup_count: int = Field(default=5, description="Rotated logs kept", ge=0)
    console: bool = Field(default=False, description="Also log to stderr")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper


class MacbindConfig(BaseModel):
    """Complete macbind configuration"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    paths: PathsConfig = Field(default_factory=PathsConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    control_plane: ControlPlaneConfig = Field(default_factory=ControlPlaneConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


# ============================================================================
# Configuration Loader
# ============================================================================

# env var -> (section, key, converter)
_ENV_MAPPING = {
    "MACBIND_QUEUE_FILE": ("paths", "queue_file", str),
    "MACBIND_STORE_FILE": ("paths", "store_file", str),
    "MACBIND_LOG_FILE": ("paths", "log_file", str),
    "MACBIND_BACKUP_DIR": ("paths", "backup_dir", str),
    "MACBIND_LOCK_FILE": ("paths", "lock_file", str),
    "MACBIND_DISABLE_FLAG": ("paths", "disable_flag", str),
    "MACBIND_BATCH_SIZE": ("sync", "batch_size", int),
    "MACBIND_REQUIRE_ROOT": ("sync", "require_root", lambda v: v.lower() == "true"),
    "MACBIND_LOG_LEVEL": ("observability", "log_level", str),
    "MACBIND_API_URL": ("control_plane", "base_url", str),
    "MACBIND_API_KEY": ("control_plane", "api_key", str),
    "MACBIND_VERIFY_TLS": ("control_plane", "verify_tls", lambda v: v.lower() == "true"),
}


class ConfigLoader:
    """Load configuration from multiple sources"""

    @staticmethod
    def load_from_env(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Load configuration from environment variables"""
        environ = os.environ if environ is None else environ
        config: Dict[str, Any] = {}

        for name, (section, key, convert) in _ENV_MAPPING.items():
            value = environ.get(name)
            if not value:
                continue
            try:
                config.setdefault(section, {})[key] = convert(value)
            except ValueError:
                logger.error(f"Ignoring invalid value for {name}: {value!r}")

        return config

    @staticmethod
    def load_from_file(file_path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML file"""
        if not file_path.exists():
            return {}

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load config file {file_path}: {e}")
            return {}

        if not isinstance(data, dict):
            logger.error(f"Config file {file_path} is not a mapping, ignoring")
            return {}
        return data

    @staticmethod
    def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge multiple configuration dictionaries"""
        result: Dict[str, Any] = {}
        for config in configs:
            for key, value in config.items():
                if (
                    key in result
                    and isinstance(result[key], dict)
                    and isinstance(value, dict)
                ):
                    result[key] = ConfigLoader.merge_configs(result[key], value)
                else:
                    result[key] = value
        return result


def load_config(
    config_file: Optional[Path] = None,
    env_override: bool = True,
    search_default_locations: bool = True,
) -> MacbindConfig:
    """
    Load configuration from all sources

    Args:
        config_file: Optional specific config file to load
        env_override: Whether environment variables override file config
        search_default_locations: Whether to read the default config files

    Returns:
        MacbindConfig instance
    """
    configs = []

    if search_default_locations:
        for location in DEFAULT_CONFIG_LOCATIONS:
            if location.exists():
                file_config = ConfigLoader.load_from_file(location)
                if file_config:
                    configs.append(file_config)
                    logger.debug(f"Loaded config from {location}")

    if config_file:
        file_config = ConfigLoader.load_from_file(Path(config_file))
        if file_config:
            configs.append(file_config)
            logger.debug(f"Loaded config from {config_file}")

    if env_override:
        env_config = ConfigLoader.load_from_env()
        if env_config:
            configs.append(env_config)
            logger.debug("Loaded config from environment")

    merged = ConfigLoader.merge_configs(*configs) if configs else {}

    try:
        return MacbindConfig(**merged)
    except ValueError as e:
        logger.error(f"Config validation failed: {e}")
        logger.warning("Using default configuration")
        return MacbindConfig()
