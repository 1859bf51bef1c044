"""Configuration loading utilities for the provisioning toolkit."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from .models import RequiredGrant


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "PROVISION_CONFIG"
ENV_PREFIX = "PROVISION_"

GRAPH_APP_ID = "00000003-0000-0000-c000-000000000000"
EXCHANGE_APP_ID = "00000002-0000-0ff1-ce00-000000000000"
# Microsoft Graph command line tools; a public client usable without registering one.
DEFAULT_PUBLIC_CLIENT_ID = "14d82eec-204b-4c2f-b7e8-296a70dab67c"

DEFAULT_REQUIRED_GRANTS: tuple[RequiredGrant, ...] = (
    RequiredGrant(GRAPH_APP_ID, "df021288-bdef-4463-88db-98f22de89214", "User.Read.All", "Microsoft Graph"),
    RequiredGrant(GRAPH_APP_ID, "5b567255-7703-4780-807c-7be8301ae99b", "Group.Read.All", "Microsoft Graph"),
    RequiredGrant(GRAPH_APP_ID, "98830695-27a2-44f7-8c18-0c3ebc9698f6", "GroupMember.Read.All", "Microsoft Graph"),
    RequiredGrant(GRAPH_APP_ID, "ef54d2bf-783f-4e0f-bca1-3210c0444d99", "Calendars.ReadWrite", "Microsoft Graph"),
    RequiredGrant(GRAPH_APP_ID, "75359482-378d-4052-8f01-80520e7db3cd", "Files.ReadWrite.All", "Microsoft Graph"),
    RequiredGrant(GRAPH_APP_ID, "883ea226-0bf2-4a8f-9f9d-92c9162a727d", "Sites.Selected", "Microsoft Graph"),
    RequiredGrant(
        EXCHANGE_APP_ID,
        "dc50a0fb-09a3-484d-be87-e023b12c6440",
        "Exchange.ManageAsApp",
        "Office 365 Exchange Online",
    ),
)


@dataclass
class DirectoryConfig:
    """Settings for authenticating against Microsoft Entra ID / Graph."""

    tenant_id: str = "organizations"
    client_id: str = DEFAULT_PUBLIC_CLIENT_ID
    client_secret: Optional[str] = None
    interactive: bool = False

    @property
    def uses_client_credentials(self) -> bool:
        return bool(self.client_secret)


@dataclass
class ResourceManagerConfig:
    """Settings for the Azure Resource Manager certificate import."""

    subscription_id: Optional[str] = None


@dataclass
class StorageConfig:
    """Filesystem locations used by the provisioning stages."""

    state_file: Path = Path("data/provisioning_state.json")
    certificate_dir: Path = Path("certs")


@dataclass
class VerificationConfig:
    """Re-query behaviour after grants; one attempt means no polling."""

    attempts: int = 1
    delay_seconds: int = 10


@dataclass
class ConsentConfig:
    """Parameters embedded in the admin consent URL."""

    scope: str = "https://graph.microsoft.com/.default"
    redirect_uri: str = "https://login.microsoftonline.com/common/oauth2/nativeclient"


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    directory: DirectoryConfig = field(default_factory=DirectoryConfig)
    resource_manager: ResourceManagerConfig = field(default_factory=ResourceManagerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    consent: ConsentConfig = field(default_factory=ConsentConfig)
    permissions: List[RequiredGrant] = field(default_factory=lambda: list(DEFAULT_REQUIRED_GRANTS))


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Configuration file '{path}' does not exist.")
    with path.open("r", encoding="utf-8") as file:
        try:
            payload = yaml.safe_load(file) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Configuration file '{path}' is not valid YAML: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping.")
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
) -> Optional[Path]:
    """Seed the configuration file from the example template if possible.

    Returns ``None`` when neither the file nor a template exists, in which case
    built-in defaults apply.
    """

    target_path = _resolve_config_path(path)
    if target_path.exists():
        return target_path

    template = Path(template_path) if template_path is not None else DEFAULT_TEMPLATE_PATH
    if not template.exists():
        return None

    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target_path)
    return target_path


def _load_config_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    resolved_path = _resolve_config_path(path)
    config_dict: Dict[str, Any] = {}
    if resolved_path == DEFAULT_CONFIG_PATH:
        if ensure_default_config(resolved_path) is not None:
            config_dict = _load_from_file(resolved_path)
    else:
        config_dict = _load_from_file(resolved_path)
    return _apply_environment_overrides(config_dict)


def _section(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = config_dict.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be a mapping.")
    return value


def _normalize_sequence(value: Any) -> Iterable[Any]:
    if isinstance(value, (list, tuple, set)):
        return value
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


def _load_permissions(raw: Any) -> List[RequiredGrant]:
    if raw is None:
        return list(DEFAULT_REQUIRED_GRANTS)
    grants: List[RequiredGrant] = []
    for index, entry in enumerate(_normalize_sequence(raw)):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Permission entry #{index + 1} must be a mapping.")
        try:
            grants.append(RequiredGrant.from_dict(entry))
        except KeyError as exc:
            raise ConfigurationError(f"Permission entry #{index + 1} is missing key: {exc}.") from exc
    if not grants:
        raise ConfigurationError("At least one permission must be configured.")
    return grants


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    config_dict = _load_config_dict(path)

    directory_section = _section(config_dict, "directory")
    defaults = DirectoryConfig()
    directory_config = DirectoryConfig(
        tenant_id=_optional_str(directory_section.get("tenant_id")) or defaults.tenant_id,
        client_id=_optional_str(directory_section.get("client_id")) or defaults.client_id,
        client_secret=_optional_str(directory_section.get("client_secret")),
        interactive=_to_bool(directory_section.get("interactive", False)),
    )

    arm_section = _section(config_dict, "resource_manager")
    arm_config = ResourceManagerConfig(
        subscription_id=_optional_str(arm_section.get("subscription_id")),
    )

    storage_section = _section(config_dict, "storage")
    storage_config = StorageConfig(
        state_file=_optional_path(storage_section.get("state_file")) or StorageConfig().state_file,
        certificate_dir=_optional_path(storage_section.get("certificate_dir"))
        or StorageConfig().certificate_dir,
    )

    verification_section = _section(config_dict, "verification")
    try:
        verification_config = VerificationConfig(
            attempts=max(1, _to_int(verification_section.get("attempts", 1))),
            delay_seconds=max(0, _to_int(verification_section.get("delay_seconds", 10))),
        )
    except ValueError as exc:
        raise ConfigurationError(f"Invalid verification setting: {exc}.") from exc

    consent_section = _section(config_dict, "consent")
    consent_defaults = ConsentConfig()
    consent_config = ConsentConfig(
        scope=_optional_str(consent_section.get("scope")) or consent_defaults.scope,
        redirect_uri=_optional_str(consent_section.get("redirect_uri")) or consent_defaults.redirect_uri,
    )

    return AppConfig(
        directory=directory_config,
        resource_manager=arm_config,
        storage=storage_config,
        verification=verification_config,
        consent=consent_config,
        permissions=_load_permissions(config_dict.get("permissions")),
    )


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "ConsentConfig",
    "DEFAULT_REQUIRED_GRANTS",
    "DirectoryConfig",
    "EXCHANGE_APP_ID",
    "GRAPH_APP_ID",
    "ResourceManagerConfig",
    "StorageConfig",
    "VerificationConfig",
    "ensure_default_config",
    "load_config",
]
