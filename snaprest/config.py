"""
Configuration management for snaprest.

Loads config.yaml from the snaprest home directory, applies an optional
dotenv file, then environment variable overrides. CLI options are applied
last through SnaprestConfig.with_overrides().
"""

import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from snaprest.backup_type import designated_weekday
from snaprest.errors import ConfigurationError
from snaprest.schemas import BackupMode, RetentionPolicy, is_truthy

DEFAULT_HOME = "~/.config/snaprest"

# Environment variable -> config field
ENV_OVERRIDES = {
    "PRIMARY_IP": "primary_host",
    "STANDBY_IP": "source_host",
    "STANZA_NAME": "stanza",
    "PG_VERSION": "pg_version",
    "AWS_REGION": "region",
    "BACKUP_MODE": "backup_mode",
    "FORCE_FULL_BACKUP": "force_full",
    "SKIP_BACKUP": "skip_backup",
    "SKIP_SNAPSHOT": "skip_snapshot",
    "CLEANUP_OLD_SNAPSHOTS": "retention_enabled",
    "MANUAL_BACKUP_VOLUME_ID": "backup_volume_id",
    "INSTANCE_ID": "instance_id",
    "SNAPREST_STATE_FILE": "state_file",
}


def get_snaprest_home() -> Path:
    """Return the snaprest home directory ($SNAPREST_HOME or ~/.config/snaprest)."""
    return Path(os.environ.get("SNAPREST_HOME", DEFAULT_HOME)).expanduser()


@dataclass
class SnaprestConfig:
    """Complete orchestrator configuration."""

    primary_host: str = ""
    source_host: str = ""
    stanza: str = ""
    pg_version: str = "13"
    pg_data_dir: Optional[str] = None

    # Backup volume and repository layout
    backup_mount_point: str = "/backup/pgbackrest"
    repo_config_path: str = "/etc/pgbackrest/pgbackrest.conf"
    repo_config_user: Optional[str] = None
    repo_retention_full: int = 4
    repo_retention_diff: int = 3
    repo_retention_archive: int = 10
    primary_process_max: int = 12
    source_process_max: int = 8

    # Remote execution
    ssh_user: str = "postgres"
    ssh_identity_file: Optional[str] = None
    ssh_connect_timeout: int = 5
    ssh_options: list[str] = field(default_factory=list)
    local_hosts: list[str] = field(default_factory=lambda: ["localhost", "127.0.0.1"])
    # snaprest runs on the backup source; its commands are not sent over ssh
    source_is_local: bool = True
    db_user: str = "postgres"
    repmgr_config_path: str = "/var/lib/pgsql/repmgr.conf"

    # Cloud block storage
    region: Optional[str] = None
    instance_id: Optional[str] = None
    backup_volume_id: Optional[str] = None
    backup_devices: list[str] = field(default_factory=lambda: ["/dev/xvdb", "/dev/sdb", "/dev/nvme1n1"])
    snapshot_source_tag: str = "standby"
    snapshot_poll_seconds: float = 15.0

    # Backup control
    backup_mode: str = "auto"
    force_full: bool = False
    skip_backup: bool = False
    skip_snapshot: bool = False
    retention_enabled: bool = True
    daily_retention_days: int = 7
    weekly_full_keep_count: int = 4
    weekly_full_day: str = "sunday"

    # Files
    state_file: Optional[str] = None
    schedule_file: Optional[str] = None
    schedule_cron: str = "0 3 * * *"
    env_file: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None

    def __post_init__(self):
        if self.pg_data_dir is None:
            self.pg_data_dir = f"/var/lib/pgsql/{self.pg_version}/data"

    @property
    def mode(self) -> BackupMode:
        return BackupMode.from_string(self.backup_mode)

    @property
    def retention_policy(self) -> RetentionPolicy:
        return RetentionPolicy(
            daily_retention_days=self.daily_retention_days,
            weekly_full_keep_count=self.weekly_full_keep_count,
        )

    @property
    def log_path(self) -> str:
        return f"{self.backup_mount_point}/logs"

    @property
    def repmgr_binaries(self) -> list[str]:
        return ["/usr/local/pgsql/bin/repmgr", f"/usr/pgsql-{self.pg_version}/bin/repmgr"]

    @property
    def execution_local_hosts(self) -> list[str]:
        """Hosts whose commands run locally instead of over ssh."""
        hosts = list(self.local_hosts)
        if self.source_is_local and self.source_host and self.source_host not in hosts:
            hosts.append(self.source_host)
        return hosts

    def state_path(self) -> Path:
        if self.state_file:
            return Path(self.state_file).expanduser()
        return get_snaprest_home() / "state.env"

    def schedule_path(self) -> Path:
        if self.schedule_file:
            return Path(self.schedule_file).expanduser()
        return get_snaprest_home() / "crontab"

    def log_file_path(self) -> Optional[Path]:
        return Path(self.log_file).expanduser() if self.log_file else None

    def with_overrides(self, **overrides: Any) -> "SnaprestConfig":
        """Return a copy with every non-None override applied."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
        applied = {k: v for k, v in overrides.items() if v is not None}
        if "pg_version" in applied and "pg_data_dir" not in applied:
            applied["pg_data_dir"] = f"/var/lib/pgsql/{applied['pg_version']}/data"
        return replace(self, **applied)

    def validate(self) -> None:
        """
        Check required settings.

        Raises:
            ConfigurationError: On the first missing or invalid setting
        """
        for name in ("primary_host", "source_host", "stanza"):
            if not getattr(self, name):
                raise ConfigurationError(f"Missing required setting: {name}")
        if self.primary_host == self.source_host:
            raise ConfigurationError("primary_host and source_host must differ")
        try:
            self.mode
        except ValueError as e:
            raise ConfigurationError(str(e))
        try:
            self.retention_policy
        except ValueError as e:
            raise ConfigurationError(f"Invalid retention policy: {e}")
        try:
            designated_weekday(self.weekly_full_day)
        except ValueError as e:
            raise ConfigurationError(f"Invalid weekly_full_day: {e}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _coerce(name: str, raw: Any) -> Any:
    """Coerce a raw YAML/env value to the type of field `name`."""
    default = SnaprestConfig.__dataclass_fields__[name].default
    if isinstance(default, bool):
        return raw if isinstance(raw, bool) else is_truthy(str(raw))
    if isinstance(default, int) and not isinstance(default, bool):
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Setting {name} must be an integer, got {raw!r}")
    if isinstance(default, float):
        try:
            return float(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Setting {name} must be a number, got {raw!r}")
    if name in ("ssh_options", "local_hosts", "backup_devices") and isinstance(raw, str):
        return [part.strip() for part in raw.split(",") if part.strip()]
    return str(raw) if isinstance(raw, (int, float)) and not isinstance(raw, bool) else raw


def config_from_dict(data: dict[str, Any]) -> SnaprestConfig:
    """Build a SnaprestConfig from a mapping, rejecting unknown keys."""
    known = {f.name for f in fields(SnaprestConfig)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
    return SnaprestConfig(**{k: _coerce(k, v) for k, v in data.items() if v is not None})


def load_config(config_path: Optional[Path] = None) -> SnaprestConfig:
    """
    Load configuration from YAML, dotenv and the environment.

    Args:
        config_path: Path to config file. Defaults to <home>/config.yaml

    Returns:
        SnaprestConfig instance

    Raises:
        FileNotFoundError: If the config file is missing
        ConfigurationError: If the config is invalid
    """
    if config_path is None:
        config_path = get_snaprest_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(
            f"snaprest config.yaml not found at {config_path}. Run 'snaprest init' first."
        )

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping")

    env_file = data.get("env_file")
    if env_file:
        env_path = Path(env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path, override=False)

    for env_var, name in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            data[name] = value

    return config_from_dict(data)


def default_config_dict(home: Path) -> dict[str, Any]:
    """Settings written by `snaprest init`."""
    return {
        "primary_host": "10.40.0.24",
        "source_host": "10.40.0.17",
        "stanza": "main",
        "pg_version": "13",
        "region": "ap-northeast-1",
        "instance_id": None,
        "backup_volume_id": None,
        "backup_mode": "auto",
        "retention_enabled": True,
        "daily_retention_days": 7,
        "weekly_full_keep_count": 4,
        "weekly_full_day": "sunday",
        "state_file": str(home / "state.env"),
        "env_file": str(home / ".env"),
        "log_file": str(home / "logs" / "snaprest.log"),
    }
