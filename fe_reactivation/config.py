"""Configuration loading utilities for the reactivation toolkit."""
from __future__ import annotations

import json
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml

from .models import DEFAULT_PROFILE, EmployeeTypeProfile


DEFAULT_CONFIG_PATH = Path("config/settings.json")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.json")
ENV_CONFIG_PATH = "REACTIVATE_CONFIG"
ENV_PREFIX = "REACTIVATE_"
MIN_PASSWORD_LENGTH = 12


@dataclass
class M365Config:
    """Settings for the Microsoft Graph and Exchange Online integration."""

    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    certificate_path: Optional[Path] = None
    cert_thumbprint: Optional[str] = None
    exo_organization: Optional[str] = None
    default_usage_location: Optional[str] = None

    @property
    def has_certificate(self) -> bool:
        return bool(self.certificate_path and self.cert_thumbprint)

    @property
    def has_credentials(self) -> bool:
        return bool(
            self.tenant_id and self.client_id and (self.client_secret or self.has_certificate)
        )

    @property
    def has_exo_credentials(self) -> bool:
        return bool(self.has_credentials and self.exo_organization)


@dataclass
class ConnectionConfig:
    """Bounded retry settings used when connecting to the remote services."""

    max_attempts: int = 3
    retry_delay: float = 10.0


@dataclass
class ReactivationConfig:
    """Behaviour of the per-account reactivation steps."""

    temporary_password: Optional[str] = None
    force_change_password: bool = True
    password_length: int = 16
    restore_deleted: bool = True
    display_name_prefix: str = "FE_"
    remove_groups: tuple[str, ...] = ()
    revoke_sessions: bool = True


@dataclass
class MailboxConfig:
    """Which mailbox restrictions are cleared on reactivation."""

    convert_to_regular: bool = True
    unhide: bool = True
    clear_forwarding: bool = True
    disable_auto_reply: bool = True
    clear_delivery_restrictions: bool = True


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[Path] = field(default_factory=lambda: Path("logs/reactivation.log"))


@dataclass
class StorageConfig:
    """Filesystem locations used by the application."""

    report_dir: Path = Path("reports")


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    m365: M365Config
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    reactivation: ReactivationConfig = field(default_factory=ReactivationConfig)
    mailbox: MailboxConfig = field(default_factory=MailboxConfig)
    employee_types: Dict[str, EmployeeTypeProfile] = field(default_factory=dict)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    def profile_for(self, employee_type: Optional[str]) -> Optional[EmployeeTypeProfile]:
        """Return the profile matching ``employee_type`` (case-insensitive) or the default."""

        wanted = (employee_type or "").strip().lower()
        if wanted:
            for name, profile in self.employee_types.items():
                if name.lower() == wanted:
                    return profile
        return self.employee_types.get(DEFAULT_PROFILE)


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            f"Create it from '{DEFAULT_TEMPLATE_PATH}' or set {ENV_CONFIG_PATH}."
        )
    try:
        with path.open("r", encoding="utf-8-sig") as handle:
            if path.suffix.lower() in {".yaml", ".yml"}:
                payload = yaml.safe_load(handle)
            else:
                payload = json.load(handle)
    except (ValueError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Configuration file '{path}' is not valid: {exc}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain an object.")
    return payload


def _apply_environment_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Override configuration values with environment variables."""

    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == ENV_CONFIG_PATH:
            continue
        path = key[len(ENV_PREFIX) :].lower().split("__")
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)
    return config_dict


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            result[key] = _deep_merge(base[key], value)
        else:
            result[key] = value
    return result


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Ensure a configuration file exists, copying from the example if needed."""

    target_path = _resolve_config_path(path)
    if target_path.exists():
        return target_path

    template = Path(template_path) if template_path is not None else DEFAULT_TEMPLATE_PATH
    if not template.exists():
        raise ConfigurationError(
            "Default configuration template not found. "
            f"Ensure '{DEFAULT_TEMPLATE_PATH}' is present or pass --config."
        )

    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target_path)
    return target_path


def _load_config_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    resolved_path = _resolve_config_path(path)
    if resolved_path == DEFAULT_CONFIG_PATH:
        ensure_default_config(resolved_path)

    config_dict = _load_from_file(resolved_path)
    return _apply_environment_overrides(config_dict)


def _get_required(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    try:
        section = config_dict[key]
    except KeyError as exc:
        raise ConfigurationError(f"Missing required configuration section: '{key}'.") from exc
    if not isinstance(section, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be an object.")
    return section


def _section(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    section = config_dict.get(key) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be an object.")
    return section


def _normalize_sequence(value: Any) -> Iterable[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return value
    if isinstance(value, str):
        return [part for part in value.split(",")]
    return [value]


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


def _to_float(value: Any) -> float:
    if isinstance(value, str):
        return float(value.strip())
    return float(value)


def _optional_path(raw: Any) -> Optional[Path]:
    """Convert a raw config value to ``Path`` if set, otherwise ``None``."""

    if raw is None:
        return None
    if isinstance(raw, Path):
        return raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return None
        return Path(stripped)
    return Path(raw)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _parse_m365(section: Dict[str, Any]) -> M365Config:
    m365_config = M365Config(
        tenant_id=_optional_str(section.get("tenant_id")),
        client_id=_optional_str(section.get("client_id")),
        client_secret=_optional_str(section.get("client_secret")),
        certificate_path=_optional_path(section.get("certificate_path")),
        cert_thumbprint=_optional_str(section.get("cert_thumbprint")),
        exo_organization=_optional_str(section.get("exo_organization")),
        default_usage_location=_optional_str(section.get("default_usage_location")),
    )
    for key in ("tenant_id", "client_id"):
        if not getattr(m365_config, key):
            raise ConfigurationError(f"Missing m365 configuration key: '{key}'.")
    if not m365_config.has_credentials:
        raise ConfigurationError(
            "Missing m365 credentials: provide 'client_secret' or "
            "'certificate_path' together with 'cert_thumbprint'."
        )
    return m365_config


def _parse_employee_types(section: Dict[str, Any]) -> Dict[str, EmployeeTypeProfile]:
    profiles: Dict[str, EmployeeTypeProfile] = {}
    for name, entry in section.items():
        if entry is not None and not isinstance(entry, dict):
            raise ConfigurationError(f"Employee type '{name}' must be an object.")
        profiles[str(name)] = EmployeeTypeProfile.from_dict(str(name), entry)
    return profiles


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    config_dict = _load_config_dict(path)
    m365_config = _parse_m365(_get_required(config_dict, "m365"))

    connection_section = _section(config_dict, "connection")
    defaults = ConnectionConfig()
    try:
        connection_config = ConnectionConfig(
            max_attempts=max(1, _to_int(connection_section.get("max_attempts", defaults.max_attempts))),
            retry_delay=max(0.0, _to_float(connection_section.get("retry_delay", defaults.retry_delay))),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid connection configuration: {exc}.") from exc

    reactivation_section = _section(config_dict, "reactivation")
    reactivation_defaults = ReactivationConfig()
    try:
        password_length = _to_int(
            reactivation_section.get("password_length", reactivation_defaults.password_length)
        )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid password_length: {exc}.") from exc
    prefix = reactivation_section.get("display_name_prefix", reactivation_defaults.display_name_prefix)
    reactivation_config = ReactivationConfig(
        temporary_password=_optional_str(reactivation_section.get("temporary_password")),
        force_change_password=_to_bool(reactivation_section.get("force_change_password", True)),
        password_length=max(MIN_PASSWORD_LENGTH, password_length),
        restore_deleted=_to_bool(reactivation_section.get("restore_deleted", True)),
        display_name_prefix=str(prefix or ""),
        remove_groups=tuple(
            filter(
                None,
                [
                    str(entry).strip()
                    for entry in _normalize_sequence(reactivation_section.get("remove_groups"))
                ],
            )
        ),
        revoke_sessions=_to_bool(reactivation_section.get("revoke_sessions", True)),
    )

    mailbox_section = _section(config_dict, "mailbox")
    mailbox_config = MailboxConfig(
        convert_to_regular=_to_bool(mailbox_section.get("convert_to_regular", True)),
        unhide=_to_bool(mailbox_section.get("unhide", True)),
        clear_forwarding=_to_bool(mailbox_section.get("clear_forwarding", True)),
        disable_auto_reply=_to_bool(mailbox_section.get("disable_auto_reply", True)),
        clear_delivery_restrictions=_to_bool(
            mailbox_section.get("clear_delivery_restrictions", True)
        ),
    )

    employee_types = _parse_employee_types(_section(config_dict, "employee_types"))

    logging_section = _section(config_dict, "logging")
    default_logging = LoggingConfig()
    log_file = (
        _optional_path(logging_section.get("file"))
        if "file" in logging_section
        else default_logging.file
    )
    logging_config = LoggingConfig(
        level=str(logging_section.get("level") or default_logging.level).upper(),
        file=log_file,
    )

    storage_section = _section(config_dict, "storage")
    storage_config = StorageConfig(
        report_dir=_optional_path(storage_section.get("report_dir")) or StorageConfig().report_dir,
    )

    return AppConfig(
        m365=m365_config,
        connection=connection_config,
        reactivation=reactivation_config,
        mailbox=mailbox_config,
        employee_types=employee_types,
        logging=logging_config,
        storage=storage_config,
    )


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "ConnectionConfig",
    "LoggingConfig",
    "M365Config",
    "MailboxConfig",
    "ReactivationConfig",
    "StorageConfig",
    "ensure_default_config",
    "load_config",
]
