"""Grant the automation access to exactly one SharePoint site."""
from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from .config import VerificationConfig
from .errors import ProvisioningError, is_already_exists_error
from .models import PermissionLevel, SitePermissionGrant, StageReport, StepStatus
from .site_client import SiteAdminClient, admin_url_for, validate_site_url


logger = logging.getLogger(__name__)

_ROLE_RANK = {"read": 1, "write": 2, "owner": 3, "fullcontrol": 3}


def _covers(grant: SitePermissionGrant, level: PermissionLevel) -> bool:
    # Unknown roles never count as coverage.
    held = max((_ROLE_RANK.get(role.lower(), 0) for role in grant.roles), default=0)
    return held >= _ROLE_RANK[level.graph_role]


def _describe_roles(grants: List[SitePermissionGrant]) -> str:
    roles = sorted({role.lower() for grant in grants for role in grant.roles})
    return ", ".join(roles) if roles else "unknown roles"


def grant_site_access(
    open_session: Callable[[str], SiteAdminClient],
    *,
    app_id: str,
    display_name: str,
    site_url: str,
    level: PermissionLevel,
    verification: Optional[VerificationConfig] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> StageReport:
    """Grant ``level`` on ``site_url`` to the application, then confirm the grant is visible.

    ``open_session`` receives the derived admin URL and returns an unconnected
    client; the session is closed when the stage ends. An existing grant below
    ``level`` is raised in place rather than duplicated.
    """

    verification = verification or VerificationConfig()
    report = StageReport(stage="grant-site")

    try:
        site_url = validate_site_url(site_url)
    except ValueError as exc:
        report.abort("Validate site URL", exc)
        return report
    admin_url = admin_url_for(site_url)
    report.details.update(
        {"application_id": app_id, "site_url": site_url, "admin_url": admin_url, "level": level.value}
    )

    with open_session(admin_url) as client:
        try:
            client.connect()
        except ProvisioningError as exc:
            report.abort(f"Connect to {admin_url}", exc)
            return report
        report.add(f"Connect to {admin_url}", StepStatus.SUCCEEDED)

        label = f"Grant {level.value} on {site_url}"
        existing: List[SitePermissionGrant] = []
        try:
            existing = client.list_site_permissions(site_url, app_id)
        except ProvisioningError as exc:
            logger.info("Could not list existing site permissions, granting directly: %s", exc)

        upgradable = [grant for grant in existing if grant.id]
        try:
            if any(_covers(grant, level) for grant in existing):
                report.add(label, StepStatus.ALREADY_PRESENT, "already granted")
            elif upgradable:
                client.update_site_permission(site_url, upgradable[0].id, level)
                report.add(label, StepStatus.SUCCEEDED, f"raised from {_describe_roles(upgradable[:1])}")
            else:
                client.grant_site_permission(app_id, display_name, site_url, level)
                report.add(label, StepStatus.SUCCEEDED, "granted")
        except ProvisioningError as exc:
            if is_already_exists_error(exc):
                report.add(label, StepStatus.ALREADY_PRESENT, "already granted")
            else:
                logger.warning("Site grant failed: %s", exc)
                report.add(label, StepStatus.FAILED, str(exc))

        _verify_site_grant(client, app_id, site_url, level, report, verification, sleep)

    if report.failures:
        report.next_steps.append(
            f"Grant the permission manually with an account that is a SharePoint administrator "
            f"of {admin_url}, then re-run `grant-site`."
        )
    report.next_steps.append(
        "Configure the automation runbook with the application id, tenant id and certificate name."
    )
    return report


def _verify_site_grant(
    client: SiteAdminClient,
    app_id: str,
    site_url: str,
    level: PermissionLevel,
    report: StageReport,
    verification: VerificationConfig,
    sleep: Callable[[float], None],
) -> None:
    found: List[SitePermissionGrant] = []
    for attempt in range(1, verification.attempts + 1):
        try:
            found = client.list_site_permissions(site_url, app_id)
        except ProvisioningError as exc:
            report.add("Verify site permission", StepStatus.WARNING, f"could not list permissions: {exc}")
            report.next_steps.append(f"Check the site permissions for {app_id} on {site_url} manually.")
            return
        if any(_covers(grant, level) for grant in found) or attempt == verification.attempts:
            break
        sleep(verification.delay_seconds)

    report.details["site_grants"] = [
        {"app_id": grant.app_id, "display_name": grant.display_name, "roles": list(grant.roles)}
        for grant in found
    ]
    covering = [grant for grant in found if _covers(grant, level)]
    if covering:
        report.add("Verify site permission", StepStatus.SUCCEEDED, f"{len(covering)} grant(s) visible")
        return
    if found:
        report.add(
            "Verify site permission",
            StepStatus.WARNING,
            f"grant visible with {_describe_roles(found)}, below the requested {level.value}",
        )
    else:
        report.add("Verify site permission", StepStatus.WARNING, "grant not visible on the site")
    report.next_steps.append(
        f"Check that {app_id} holds {level.value} on {site_url} and adjust it manually if needed."
    )


__all__ = ["grant_site_access"]
