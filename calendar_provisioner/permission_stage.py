"""Grant tenant-wide application permissions to the automation's service principal."""
from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional, Sequence
from urllib.parse import urlencode

from .config import ConsentConfig, VerificationConfig
from .errors import ProvisioningError, is_already_exists_error
from .graph_client import DirectoryClient
from .models import RequiredGrant, RoleAssignment, StageReport, StepResult, StepStatus


logger = logging.getLogger(__name__)

CONSENT_AUTHORITY = "https://login.microsoftonline.com"


def build_admin_consent_url(tenant_id: str, app_id: str, consent: ConsentConfig) -> str:
    """URL a tenant administrator opens to consent to the application's permissions."""

    query = urlencode(
        {"client_id": app_id, "scope": consent.scope, "redirect_uri": consent.redirect_uri}
    )
    return f"{CONSENT_AUTHORITY}/{tenant_id}/v2.0/adminconsent?{query}"


def _grant_label(grant: RequiredGrant) -> str:
    return f"{grant.resource_name or grant.resource_app_id}: {grant.name}"


def grant_permissions(
    directory: DirectoryClient,
    *,
    app_id: str,
    tenant_id: Optional[str],
    grants: Sequence[RequiredGrant],
    consent: Optional[ConsentConfig] = None,
    verification: Optional[VerificationConfig] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> StageReport:
    """Ensure every grant exists as an app role assignment on the application's service principal.

    Each grant is checked before it is created, so re-running only fills in
    what is missing. A failed grant is recorded and the loop moves on.
    """

    consent = consent or ConsentConfig()
    verification = verification or VerificationConfig()
    report = StageReport(stage="grant-permissions")
    grant_results: List[StepResult] = []
    report.details["grant_results"] = grant_results

    try:
        directory.authenticate()
        if not tenant_id:
            tenant_id = directory.get_tenant_id()
        principal = directory.find_service_principal(app_id)
        if principal is None:
            principal = directory.create_service_principal(app_id)
            report.add("Service principal", StepStatus.SUCCEEDED, f"created {principal['id']}")
        else:
            report.add("Service principal", StepStatus.ALREADY_PRESENT, str(principal["id"]))
        principal_id = str(principal["id"])

        resources: Dict[str, Optional[str]] = {}
        for resource_app_id in dict.fromkeys(grant.resource_app_id for grant in grants):
            resource = directory.find_service_principal(resource_app_id)
            resources[resource_app_id] = str(resource["id"]) if resource else None
    except ProvisioningError as exc:
        report.abort("Resolve service principals", exc)
        return report

    for grant in grants:
        label = _grant_label(grant)
        resource_id = resources.get(grant.resource_app_id)
        if resource_id is None:
            result = report.add(
                label, StepStatus.FAILED, f"resource {grant.resource_app_id} has no service principal in this tenant"
            )
        else:
            result = _ensure_assignment(directory, principal_id, resource_id, grant, report, label)
        grant_results.append(result)

    _verify_assignments(directory, principal_id, grants, resources, report, verification, sleep)

    consent_url = build_admin_consent_url(tenant_id, app_id, consent)
    report.details.update(
        {
            "application_id": app_id,
            "tenant_id": tenant_id,
            "service_principal_id": principal_id,
            "consent_url": consent_url,
        }
    )
    if report.failures:
        report.next_steps.append(
            "Re-run `grant-permissions` or grant the failed permissions in the Entra admin center "
            "(App registrations > API permissions)."
        )
    report.next_steps.append(f"Have a tenant administrator open the consent URL: {consent_url}")
    report.next_steps.append("Run `grant-site --site-url <url>` to grant access to the event site.")
    return report


def _ensure_assignment(
    directory: DirectoryClient,
    principal_id: str,
    resource_id: str,
    grant: RequiredGrant,
    report: StageReport,
    label: str,
) -> StepResult:
    try:
        existing = directory.find_app_role_assignments(principal_id, resource_id, grant.permission_id)
        if existing:
            return report.add(label, StepStatus.ALREADY_PRESENT, "already granted")
        directory.create_app_role_assignment(principal_id, resource_id, grant.permission_id)
    except ProvisioningError as exc:
        if is_already_exists_error(exc):
            return report.add(label, StepStatus.ALREADY_PRESENT, "already granted")
        logger.warning("Granting %s failed: %s", label, exc)
        return report.add(label, StepStatus.FAILED, str(exc))
    logger.info("Granted %s", label)
    return report.add(label, StepStatus.SUCCEEDED, "granted")


def _verify_assignments(
    directory: DirectoryClient,
    principal_id: str,
    grants: Sequence[RequiredGrant],
    resources: Dict[str, Optional[str]],
    report: StageReport,
    verification: VerificationConfig,
    sleep: Callable[[float], None],
) -> None:
    expected = {
        (resources[grant.resource_app_id], grant.permission_id): grant
        for grant in grants
        if resources.get(grant.resource_app_id)
    }
    assignments: List[RoleAssignment] = []
    missing: List[RequiredGrant] = []
    for attempt in range(1, verification.attempts + 1):
        try:
            assignments = directory.list_app_role_assignments(principal_id)
        except ProvisioningError as exc:
            report.add("Verify assignments", StepStatus.WARNING, f"could not list assignments: {exc}")
            return
        present = {(assignment.resource_id, assignment.app_role_id) for assignment in assignments}
        missing = [grant for key, grant in expected.items() if key not in present]
        if not missing or attempt == verification.attempts:
            break
        logger.info("%s assignments not visible yet; retrying in %ss", len(missing), verification.delay_seconds)
        sleep(verification.delay_seconds)

    role_names = _role_names(directory, {assignment.resource_id for assignment in assignments})
    report.details["assignments"] = [
        {
            "resource": assignment.resource_display_name or assignment.resource_id,
            "permission": role_names.get(assignment.resource_id, {}).get(
                assignment.app_role_id, assignment.app_role_id
            ),
        }
        for assignment in assignments
    ]
    if not assignments:
        report.add("Verify assignments", StepStatus.WARNING, "no assignments visible yet")
    elif missing:
        names = ", ".join(grant.name for grant in missing)
        report.add(
            "Verify assignments",
            StepStatus.WARNING,
            f"{len(assignments)} visible, not yet visible: {names} (propagation can take a few minutes)",
        )
    else:
        report.add("Verify assignments", StepStatus.SUCCEEDED, f"{len(assignments)} assignments visible")


def _role_names(directory: DirectoryClient, resource_ids: set[str]) -> Dict[str, Dict[str, str]]:
    names: Dict[str, Dict[str, str]] = {}
    for resource_id in resource_ids:
        try:
            names[resource_id] = directory.get_app_roles(resource_id)
        except ProvisioningError as exc:
            logger.debug("Unable to resolve app roles for %s: %s", resource_id, exc)
            names[resource_id] = {}
    return names


__all__ = ["build_admin_consent_url", "grant_permissions"]
