"""Microsoft Graph directory helper for applications and service principals."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Optional

import requests

from .auth import GRAPH_ADMIN_SCOPES, GRAPH_DEFAULT_SCOPE, TokenProvider
from .errors import DirectoryError
from .models import RoleAssignment


logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
REQUEST_TIMEOUT = 30


def _escape(value: str) -> str:
    return value.replace("'", "''")


class DirectoryClient:
    """Authenticated Graph session exposing application and service principal primitives."""

    def __init__(self, tokens: TokenProvider) -> None:
        self._tokens = tokens
        self._session = requests.Session()
        self._token: Optional[str] = None

    def close(self) -> None:
        self._session.close()
        self._token = None

    def __enter__(self) -> "DirectoryClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    # ------------------------------------------------------------------ #
    # Token handling / HTTP helpers                                      #
    # ------------------------------------------------------------------ #
    def authenticate(self) -> None:
        """Acquire the Graph token up front so sign-in failures surface before any mutation."""

        self._token = self._tokens.acquire(GRAPH_ADMIN_SCOPES, GRAPH_DEFAULT_SCOPE)

    def _acquire_token(self) -> str:
        if self._token is None:
            self.authenticate()
        assert self._token is not None
        return self._token

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = path if path.startswith("https://") else GRAPH_BASE_URL + path
        headers = kwargs.pop("headers", {}) or {}
        headers.setdefault("Authorization", f"Bearer {self._acquire_token()}")
        headers.setdefault("Accept", "application/json")
        if "json" in kwargs:
            headers.setdefault("Content-Type", "application/json")

        logger.debug("Graph %s %s", method, url)
        try:
            response = self._session.request(
                method,
                url,
                timeout=REQUEST_TIMEOUT,
                headers=headers,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise DirectoryError(0, type(exc).__name__, str(exc)) from exc
        if response.status_code == 204:
            return {}

        if response.status_code >= 400:
            try:
                payload = response.json()
                error = payload.get("error", {})
                code = error.get("code", "GraphError")
                message = error.get("message", response.text)
            except ValueError:
                code = "GraphError"
                message = response.text or "Unknown Graph error."
            raise DirectoryError(response.status_code, code, message)

        return response.json()

    def _paged(self, path: str, params: Optional[Dict[str, str]] = None) -> Iterator[Dict[str, Any]]:
        result = self._request("GET", path, params=params)
        while True:
            yield from result.get("value", [])
            next_link = result.get("@odata.nextLink")
            if not next_link:
                break
            result = self._request("GET", next_link)

    # ------------------------------------------------------------------ #
    # Tenant / application helpers                                       #
    # ------------------------------------------------------------------ #
    def get_tenant_id(self) -> str:
        tenant = self._tokens.tenant_id
        if tenant:
            return tenant
        result = self._request("GET", "/organization", params={"$select": "id"})
        values = result.get("value") or []
        if not values:
            raise DirectoryError(404, "OrganizationNotFound", "Unable to resolve the tenant id.")
        return str(values[0]["id"])

    def create_application(
        self,
        display_name: str,
        key_credential: Dict[str, Any],
        required_resource_access: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        payload = {
            "displayName": display_name,
            "signInAudience": "AzureADMyOrg",
            "keyCredentials": [key_credential],
            "requiredResourceAccess": required_resource_access,
        }
        application = self._request("POST", "/applications", json=payload)
        logger.info("Created application %s (appId %s)", display_name, application.get("appId"))
        return application

    def find_application(self, app_id: str) -> Optional[Dict[str, Any]]:
        params = {
            "$filter": f"appId eq '{_escape(app_id)}'",
            "$select": "id,appId,displayName",
        }
        values = self._request("GET", "/applications", params=params).get("value") or []
        return values[0] if values else None

    # ------------------------------------------------------------------ #
    # Service principal helpers                                          #
    # ------------------------------------------------------------------ #
    def find_service_principal(self, app_id: str) -> Optional[Dict[str, Any]]:
        params = {
            "$filter": f"appId eq '{_escape(app_id)}'",
            "$select": "id,appId,displayName,appRoles",
        }
        values = self._request("GET", "/servicePrincipals", params=params).get("value") or []
        return values[0] if values else None

    def create_service_principal(self, app_id: str) -> Dict[str, Any]:
        principal = self._request("POST", "/servicePrincipals", json={"appId": app_id})
        logger.info("Created service principal %s for appId %s", principal.get("id"), app_id)
        return principal

    def get_app_roles(self, service_principal_id: str) -> Dict[str, str]:
        """Map app role ids to their values for a resource service principal."""

        result = self._request(
            "GET", f"/servicePrincipals/{service_principal_id}", params={"$select": "id,appRoles"}
        )
        return {
            str(role["id"]): str(role.get("value") or role.get("displayName") or role["id"])
            for role in result.get("appRoles") or []
            if role.get("id")
        }

    # ------------------------------------------------------------------ #
    # App role assignment helpers                                        #
    # ------------------------------------------------------------------ #
    def list_app_role_assignments(self, service_principal_id: str) -> List[RoleAssignment]:
        return [
            RoleAssignment.from_graph(entry)
            for entry in self._paged(f"/servicePrincipals/{service_principal_id}/appRoleAssignments")
        ]

    def find_app_role_assignments(
        self, service_principal_id: str, resource_id: str, app_role_id: str
    ) -> List[RoleAssignment]:
        return [
            assignment
            for assignment in self.list_app_role_assignments(service_principal_id)
            if assignment.resource_id == resource_id and assignment.app_role_id == app_role_id
        ]

    def create_app_role_assignment(
        self, service_principal_id: str, resource_id: str, app_role_id: str
    ) -> RoleAssignment:
        payload = {
            "principalId": service_principal_id,
            "resourceId": resource_id,
            "appRoleId": app_role_id,
        }
        result = self._request(
            "POST", f"/servicePrincipals/{service_principal_id}/appRoleAssignments", json=payload
        )
        return RoleAssignment.from_graph(result)


__all__ = ["DirectoryClient", "GRAPH_BASE_URL"]
