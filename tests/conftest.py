"""
Pytest fixtures and in-memory fakes for the provisioning tests.

The fakes mirror the public surface of DirectoryClient, ResourceManagerClient
and SiteAdminClient so orchestrators can be exercised without network access.
"""
import itertools
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest

from calendar_provisioner.config import DEFAULT_REQUIRED_GRANTS, GRAPH_APP_ID, EXCHANGE_APP_ID
from calendar_provisioner.errors import AuthenticationError, DirectoryError, ResourceManagerError, SiteAdminError
from calendar_provisioner.models import PermissionLevel, RoleAssignment, SitePermissionGrant


TENANT_ID = "11111111-2222-3333-4444-555555555555"
APP_ID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"
OBJECT_ID = "99999999-8888-7777-6666-555555555555"


class FakeDirectory:
    """In-memory stand-in for DirectoryClient."""

    def __init__(self, resources: Optional[Dict[str, str]] = None):
        self.tenant_id = TENANT_ID
        self.auth_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.lookup_error: Optional[Exception] = None
        self.failing_roles: Set[str] = set()
        self.hidden_roles: Set[str] = set()
        self.applications: List[dict] = []
        self.service_principals: Dict[str, dict] = {}
        self.assignments: List[RoleAssignment] = []
        self.authenticated = False
        self.closed = False
        self.create_assignment_calls = 0
        self.list_calls = 0
        self._ids = itertools.count(1)
        resources = resources if resources is not None else {
            GRAPH_APP_ID: "graph-sp",
            EXCHANGE_APP_ID: "exchange-sp",
        }
        for app_id, sp_id in resources.items():
            self.service_principals[app_id] = {"id": sp_id, "appId": app_id}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        self.closed = True

    def authenticate(self):
        if self.auth_error:
            raise self.auth_error
        self.authenticated = True

    def get_tenant_id(self):
        return self.tenant_id

    def create_application(self, display_name, key_credential, required_resource_access):
        if self.create_error:
            raise self.create_error
        application = {
            "appId": APP_ID,
            "id": OBJECT_ID,
            "displayName": display_name,
            "keyCredentials": [key_credential],
            "requiredResourceAccess": required_resource_access,
        }
        self.applications.append(application)
        return application

    def find_service_principal(self, app_id):
        if self.lookup_error:
            raise self.lookup_error
        return self.service_principals.get(app_id)

    def create_service_principal(self, app_id):
        principal = {"id": f"sp-{next(self._ids)}", "appId": app_id}
        self.service_principals[app_id] = principal
        return principal

    def get_app_roles(self, service_principal_id):
        return {grant.permission_id: grant.name for grant in DEFAULT_REQUIRED_GRANTS}

    def list_app_role_assignments(self, service_principal_id):
        self.list_calls += 1
        return [
            assignment
            for assignment in self.assignments
            if assignment.principal_id == service_principal_id
            and assignment.app_role_id not in self.hidden_roles
        ]

    def find_app_role_assignments(self, service_principal_id, resource_id, app_role_id):
        return [
            assignment
            for assignment in self.assignments
            if assignment.key == (service_principal_id, resource_id, app_role_id)
        ]

    def create_app_role_assignment(self, service_principal_id, resource_id, app_role_id):
        self.create_assignment_calls += 1
        if app_role_id in self.failing_roles:
            raise DirectoryError(403, "Authorization_RequestDenied", "Insufficient privileges.")
        key = (service_principal_id, resource_id, app_role_id)
        if any(assignment.key == key for assignment in self.assignments):
            raise DirectoryError(
                400, "Request_BadRequest", "Permission being assigned already exists on the object"
            )
        assignment = RoleAssignment(
            id=str(uuid.uuid4()),
            principal_id=service_principal_id,
            resource_id=resource_id,
            app_role_id=app_role_id,
        )
        self.assignments.append(assignment)
        return assignment


class FakeResourceManager:
    def __init__(self):
        self.imports: List[dict] = []
        self.error: Optional[Exception] = None
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        self.closed = True

    def import_certificate(self, account_name, resource_group, certificate_name, pfx_path, password,
                           exportable=False, thumbprint=None):
        if self.error:
            raise self.error
        self.imports.append(
            {
                "account_name": account_name,
                "resource_group": resource_group,
                "certificate_name": certificate_name,
                "pfx_path": Path(pfx_path),
                "password": password,
                "exportable": exportable,
                "thumbprint": thumbprint,
            }
        )
        return {"name": certificate_name}


class FakeSiteAdmin:
    def __init__(self, admin_url: str = ""):
        self.admin_url = admin_url
        self.connect_error: Optional[Exception] = None
        self.grant_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self.record_grants = True
        self.grants: List[SitePermissionGrant] = []
        self.grant_calls: List[tuple] = []
        self.update_calls: List[tuple] = []
        self.connected = False
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        self.closed = True

    def connect(self):
        if self.connect_error:
            raise self.connect_error
        self.connected = True

    def grant_site_permission(self, app_id, display_name, site_url, level: PermissionLevel):
        self.grant_calls.append((app_id, display_name, site_url, level))
        if self.grant_error:
            raise self.grant_error
        if self.record_grants:
            self.grants.append(
                SitePermissionGrant(
                    id=f"perm-{len(self.grants) + 1}",
                    app_id=app_id,
                    display_name=display_name,
                    site_url=site_url,
                    roles=(level.graph_role,),
                )
            )
        return {"id": "perm"}

    def update_site_permission(self, site_url, permission_id, level: PermissionLevel):
        self.update_calls.append((site_url, permission_id, level))
        if self.grant_error:
            raise self.grant_error
        self.grants = [
            replace(grant, roles=(level.graph_role,)) if grant.id == permission_id else grant
            for grant in self.grants
        ]
        return {"id": permission_id, "roles": [level.graph_role]}

    def list_site_permissions(self, site_url, app_id=None):
        if self.list_error:
            raise self.list_error
        return [
            grant
            for grant in self.grants
            if grant.site_url == site_url and (app_id is None or grant.app_id == app_id)
        ]


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def resource_manager():
    return FakeResourceManager()


@pytest.fixture
def site_admin():
    return FakeSiteAdmin()


@pytest.fixture
def grants():
    return list(DEFAULT_REQUIRED_GRANTS)


@pytest.fixture
def errors():
    """Error factories used across test modules."""
    return {
        "auth": AuthenticationError("invalid_grant: sign-in cancelled"),
        "directory": DirectoryError(500, "ServiceUnavailable", "Try again later."),
        "arm": ResourceManagerError(404, "ResourceNotFound", "Automation account 'aa1' not found."),
        "site": SiteAdminError(403, "accessDenied", "Access denied."),
    }
