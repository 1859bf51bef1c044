"""Create the automation's application identity and certificate credential."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence

from .arm_client import ResourceManagerClient
from .certificates import (
    certificate_name_for,
    export_identity_material,
    generate_identity_material,
    validate_passphrase,
)
from .errors import ProvisioningError
from .graph_client import DirectoryClient
from .models import RequiredGrant, StageReport, StepStatus, build_required_resource_access
from .state import ProvisioningState, save_state


logger = logging.getLogger(__name__)

DEFAULT_DISPLAY_NAME = "Calendar Event Automation"


def provision_identity(
    directory: DirectoryClient,
    resource_manager: Optional[ResourceManagerClient],
    *,
    display_name: str,
    passphrase: Optional[str],
    grants: Sequence[RequiredGrant],
    certificate_dir: Path,
    state_path: Path,
    environment_name: str,
    resource_group: str,
) -> StageReport:
    """Run identity provisioning and return its itemised report.

    Passphrase, sign-in, certificate and application failures abort the stage.
    A failed certificate import only produces a warning; the state file is
    written either way.
    """

    report = StageReport(stage="create-identity")
    certificate_name = certificate_name_for(display_name)

    try:
        validate_passphrase(passphrase)
    except ProvisioningError as exc:
        report.abort("Validate certificate password", exc)
        return report
    assert passphrase is not None

    try:
        directory.authenticate()
        tenant_id = directory.get_tenant_id()
    except ProvisioningError as exc:
        report.abort("Sign in to Microsoft Graph", exc)
        return report
    report.add("Sign in to Microsoft Graph", StepStatus.SUCCEEDED, f"tenant {tenant_id}")

    try:
        material = generate_identity_material(display_name)
        exported = export_identity_material(material, certificate_dir, certificate_name, passphrase)
    except ProvisioningError as exc:
        report.abort("Generate certificate", exc)
        return report
    report.add(
        "Generate certificate",
        StepStatus.SUCCEEDED,
        f"{exported.public_path}, {exported.pfx_path} (thumbprint {exported.thumbprint}, "
        f"expires {material.not_after:%Y-%m-%d})",
    )

    try:
        application = directory.create_application(
            display_name,
            material.key_credential(),
            build_required_resource_access(grants),
        )
    except ProvisioningError as exc:
        report.abort("Create application registration", exc)
        return report
    app_id = str(application["appId"])
    object_id = str(application["id"])
    report.add(
        "Create application registration",
        StepStatus.SUCCEEDED,
        f"appId {app_id}, objectId {object_id}, {len(grants)} permissions requested",
    )

    if resource_manager is None:
        report.add(
            "Import certificate into Automation account",
            StepStatus.WARNING,
            "No subscription configured; import the certificate manually.",
        )
        _add_manual_import_steps(report, exported.pfx_path, certificate_name, environment_name, resource_group)
    else:
        try:
            resource_manager.import_certificate(
                environment_name,
                resource_group,
                certificate_name,
                exported.pfx_path,
                passphrase,
                exportable=False,
                thumbprint=exported.thumbprint,
            )
            report.add(
                "Import certificate into Automation account",
                StepStatus.SUCCEEDED,
                f"{certificate_name} -> {resource_group}/{environment_name}",
            )
        except ProvisioningError as exc:
            logger.warning("Certificate import failed: %s", exc)
            report.add("Import certificate into Automation account", StepStatus.WARNING, str(exc))
            _add_manual_import_steps(
                report, exported.pfx_path, certificate_name, environment_name, resource_group
            )

    state = ProvisioningState(
        application_id=app_id,
        object_id=object_id,
        tenant_id=tenant_id,
        certificate_name=certificate_name,
        execution_environment_name=environment_name,
        execution_environment_resource_group=resource_group,
        display_name=display_name,
        certificate_thumbprint=exported.thumbprint,
    )
    try:
        save_state(state_path, state)
    except OSError as exc:
        report.abort("Save provisioning state", f"Unable to write '{state_path}': {exc}")
        return report
    report.add("Save provisioning state", StepStatus.SUCCEEDED, str(state_path))

    report.details.update(
        {
            "application_id": app_id,
            "object_id": object_id,
            "tenant_id": tenant_id,
            "certificate_thumbprint": exported.thumbprint,
            "state_file": str(state_path),
        }
    )
    report.next_steps.append("Run `grant-permissions` to grant the requested application permissions.")
    report.next_steps.append("Run `grant-site --site-url <url>` to grant access to the event site.")
    return report


def _add_manual_import_steps(
    report: StageReport,
    pfx_path: Path,
    certificate_name: str,
    environment_name: str,
    resource_group: str,
) -> None:
    report.next_steps.append(
        f"Import '{pfx_path}' manually: Azure portal > Automation Accounts > {environment_name} "
        f"(resource group {resource_group}) > Certificates > Add a certificate, "
        f"name '{certificate_name}', exportable: No."
    )


__all__ = ["DEFAULT_DISPLAY_NAME", "provision_identity"]
