"""Data models for required grants, assignments and stage outcomes."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


def _unique_preserve(values: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    result: List[str] = []
    for value in values:
        cleaned = str(value or "").strip()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result


@dataclass(frozen=True)
class RequiredGrant:
    """An application permission the service principal must hold on a resource provider."""

    resource_app_id: str
    permission_id: str
    name: str
    resource_name: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RequiredGrant":
        return cls(
            resource_app_id=str(data["resource_app_id"]).strip(),
            permission_id=str(data["permission_id"]).strip(),
            name=str(data.get("name") or data["permission_id"]).strip(),
            resource_name=str(data.get("resource_name") or "").strip(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_app_id": self.resource_app_id,
            "resource_name": self.resource_name,
            "permission_id": self.permission_id,
            "name": self.name,
        }


def build_required_resource_access(grants: Iterable[RequiredGrant]) -> List[Dict[str, Any]]:
    """Group grants by resource into Graph ``requiredResourceAccess`` entries.

    Every entry is declared as an application permission (``Role``); declaring
    the permission does not grant it.
    """

    grouped: Dict[str, List[str]] = {}
    for grant in grants:
        grouped.setdefault(grant.resource_app_id, []).append(grant.permission_id)
    return [
        {
            "resourceAppId": resource_app_id,
            "resourceAccess": [
                {"id": permission_id, "type": "Role"}
                for permission_id in _unique_preserve(permission_ids)
            ],
        }
        for resource_app_id, permission_ids in grouped.items()
    ]


@dataclass(frozen=True)
class RoleAssignment:
    """A tenant-wide app role assignment held by a service principal."""

    id: str
    principal_id: str
    resource_id: str
    app_role_id: str
    resource_display_name: Optional[str] = None

    @classmethod
    def from_graph(cls, data: Dict[str, Any]) -> "RoleAssignment":
        return cls(
            id=str(data.get("id") or ""),
            principal_id=str(data.get("principalId") or ""),
            resource_id=str(data.get("resourceId") or ""),
            app_role_id=str(data.get("appRoleId") or ""),
            resource_display_name=data.get("resourceDisplayName"),
        )

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.principal_id, self.resource_id, self.app_role_id)


class PermissionLevel(str, Enum):
    """Access level for a site-scoped grant."""

    READ = "Read"
    WRITE = "Write"
    FULL_CONTROL = "FullControl"

    @classmethod
    def parse(cls, raw: str) -> "PermissionLevel":
        cleaned = (raw or "").strip().lower()
        for level in cls:
            if level.value.lower() == cleaned:
                return level
        choices = ", ".join(level.value for level in cls)
        raise ValueError(f"Unknown permission level '{raw}'. Choose one of: {choices}.")

    @property
    def graph_role(self) -> str:
        return self.value.lower()


@dataclass(frozen=True)
class SitePermissionGrant:
    """A permission scoped to a single site, separate from tenant-wide role assignments."""

    id: str
    app_id: str
    display_name: str
    site_url: str
    roles: tuple[str, ...] = ()

    @classmethod
    def from_graph(cls, data: Dict[str, Any], site_url: str) -> List["SitePermissionGrant"]:
        identities = data.get("grantedToIdentitiesV2") or data.get("grantedToIdentities") or []
        roles = tuple(str(role) for role in data.get("roles") or [])
        grants: List[SitePermissionGrant] = []
        for identity in identities:
            application = (identity or {}).get("application") or {}
            if not application.get("id"):
                continue
            grants.append(
                cls(
                    id=str(data.get("id") or ""),
                    app_id=str(application["id"]),
                    display_name=str(application.get("displayName") or ""),
                    site_url=site_url,
                    roles=roles,
                )
            )
        return grants


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    ALREADY_PRESENT = "already_present"
    WARNING = "warning"
    FAILED = "failed"


@dataclass
class StepResult:
    """Outcome of one step within a stage run."""

    name: str
    status: StepStatus
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (StepStatus.SUCCEEDED, StepStatus.ALREADY_PRESENT)


@dataclass
class StageReport:
    """Itemised summary of a stage run."""

    stage: str
    steps: List[StepResult] = field(default_factory=list)
    next_steps: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)
    aborted: Optional[str] = None

    def add(self, name: str, status: StepStatus, detail: str = "") -> StepResult:
        result = StepResult(name=name, status=status, detail=detail)
        self.steps.append(result)
        return result

    def abort(self, name: str, error: object) -> None:
        """Record a fatal failure; steps completed before it stay in place."""

        self.add(name, StepStatus.FAILED, str(error))
        self.aborted = str(error)

    def count(self, status: StepStatus) -> int:
        return sum(1 for step in self.steps if step.status is status)

    @property
    def failures(self) -> List[StepResult]:
        return [step for step in self.steps if step.status is StepStatus.FAILED]

    @property
    def warnings(self) -> List[StepResult]:
        return [step for step in self.steps if step.status is StepStatus.WARNING]

    @property
    def succeeded(self) -> bool:
        return self.aborted is None and not self.failures

    @property
    def exit_code(self) -> int:
        # Degraded runs still exit 0; only an aborted stage is a process failure.
        return 1 if self.aborted else 0


__all__ = [
    "PermissionLevel",
    "RequiredGrant",
    "RoleAssignment",
    "SitePermissionGrant",
    "StageReport",
    "StepResult",
    "StepStatus",
    "build_required_resource_access",
]
