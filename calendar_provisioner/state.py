"""Persistence for the hand-off record written by identity provisioning."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Tuple

from .errors import StateError


SCHEMA_VERSION = 1
_GUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


def is_guid(value: Optional[str]) -> bool:
    return bool(value and _GUID_PATTERN.match(value))


@dataclass(frozen=True)
class ProvisioningState:
    """Identifiers and tenant context produced by identity provisioning."""

    application_id: str
    object_id: str
    tenant_id: str
    certificate_name: str
    execution_environment_name: str
    execution_environment_resource_group: str
    display_name: Optional[str] = None
    certificate_thumbprint: Optional[str] = None
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "SchemaVersion": SCHEMA_VERSION,
            "ApplicationId": self.application_id,
            "ObjectId": self.object_id,
            "TenantId": self.tenant_id,
            "CertificateName": self.certificate_name,
            "ExecutionEnvironmentName": self.execution_environment_name,
            "ExecutionEnvironmentResourceGroup": self.execution_environment_resource_group,
            "DisplayName": self.display_name,
            "CertificateThumbprint": self.certificate_thumbprint,
            "CreatedAt": self.created_at or datetime.now(timezone.utc).isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "ProvisioningState":
        version = data.get("SchemaVersion")
        if version != SCHEMA_VERSION:
            raise StateError(
                f"Unsupported provisioning state schema version {version!r} "
                f"(expected {SCHEMA_VERSION}). Re-run create-identity to regenerate it."
            )
        missing = [key for key in ("ApplicationId", "ObjectId", "TenantId") if not data.get(key)]
        if missing:
            raise StateError(f"Provisioning state is missing required fields: {', '.join(missing)}.")
        return cls(
            application_id=str(data["ApplicationId"]),
            object_id=str(data["ObjectId"]),
            tenant_id=str(data["TenantId"]),
            certificate_name=str(data.get("CertificateName") or ""),
            execution_environment_name=str(data.get("ExecutionEnvironmentName") or ""),
            execution_environment_resource_group=str(data.get("ExecutionEnvironmentResourceGroup") or ""),
            display_name=str(data["DisplayName"]) if data.get("DisplayName") else None,
            certificate_thumbprint=(
                str(data["CertificateThumbprint"]) if data.get("CertificateThumbprint") else None
            ),
            created_at=str(data["CreatedAt"]) if data.get("CreatedAt") else None,
        )


def save_state(path: Path, state: ProvisioningState) -> None:
    """Write the state file, replacing any previous record."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(state.to_dict(), handle, indent=2)


def load_state(path: Path) -> ProvisioningState:
    """Load the state file or raise :class:`StateError` with a clear explanation."""

    if not path.exists():
        raise StateError(
            f"Provisioning state file '{path}' not found. "
            "Run create-identity first or pass --app-id explicitly."
        )
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, ValueError) as exc:
        raise StateError(f"Provisioning state file '{path}' could not be read: {exc}") from exc
    if not isinstance(payload, dict):
        raise StateError(f"Provisioning state file '{path}' does not contain a JSON object.")
    return ProvisioningState.from_dict(payload)


def resolve_application(
    path: Path, app_id: Optional[str] = None, tenant_id: Optional[str] = None
) -> Tuple[str, Optional[str], Optional[ProvisioningState]]:
    """Return ``(app_id, tenant_id, state)``; explicit values always win over the state file.

    The state file is only required when no application id is passed. A state
    file recorded for a different application contributes neither its state nor
    its tenant.
    """

    state: Optional[ProvisioningState] = None
    if app_id:
        if path.exists():
            try:
                state = load_state(path)
            except StateError:
                state = None
    else:
        state = load_state(path)

    resolved_app = app_id or (state.application_id if state else None)
    if not resolved_app:
        raise StateError("No application id supplied and none found in the provisioning state.")
    if not is_guid(resolved_app):
        raise StateError(f"Application id '{resolved_app}' is not a valid GUID.")
    if state and state.application_id.lower() != resolved_app.lower():
        # Another application's record says nothing about this one's tenant.
        state = None
    resolved_tenant = tenant_id or (state.tenant_id if state else None)
    return resolved_app, resolved_tenant, state


__all__ = [
    "ProvisioningState",
    "SCHEMA_VERSION",
    "is_guid",
    "load_state",
    "resolve_application",
    "save_state",
]
