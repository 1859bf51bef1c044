"""Site-scoped permission helper for SharePoint Online sites."""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from .auth import GRAPH_DEFAULT_SCOPE, SITE_ADMIN_SCOPES, TokenProvider
from .errors import SiteAdminError
from .models import PermissionLevel, SitePermissionGrant


logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
SITE_DOMAIN_SUFFIX = ".sharepoint.com"
REQUEST_TIMEOUT = 30


def validate_site_url(site_url: str) -> str:
    """Return the site URL without a trailing slash, or raise ``ValueError`` if it is not a SharePoint site."""

    cleaned = (site_url or "").strip()
    parsed = urlparse(cleaned)
    host = (parsed.hostname or "").lower()
    if parsed.scheme != "https" or not host.endswith(SITE_DOMAIN_SUFFIX) or host == SITE_DOMAIN_SUFFIX[1:]:
        raise ValueError(
            f"'{site_url}' is not a SharePoint Online site URL "
            f"(expected https://<tenant>{SITE_DOMAIN_SUFFIX}/sites/<name>)."
        )
    return cleaned.rstrip("/")


def admin_url_for(site_url: str) -> str:
    """``https://contoso.sharepoint.com/sites/x`` -> ``https://contoso-admin.sharepoint.com``."""

    host = (urlparse(site_url).hostname or "").lower()
    tenant = host[: -len(SITE_DOMAIN_SUFFIX)].split(".")[0]
    if tenant.endswith("-admin"):
        tenant = tenant[: -len("-admin")]
    return f"https://{tenant}-admin{SITE_DOMAIN_SUFFIX}"


class SiteAdminClient:
    """Interactive session against a tenant's site administration surface."""

    def __init__(self, tokens: TokenProvider, admin_url: str) -> None:
        self._tokens = tokens
        self.admin_url = admin_url.rstrip("/")
        self._session = requests.Session()
        self._token: Optional[str] = None
        self._site_ids: Dict[str, str] = {}

    def close(self) -> None:
        self._session.close()
        self._token = None

    def __enter__(self) -> "SiteAdminClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    @property
    def tenant_host(self) -> str:
        host = urlparse(self.admin_url).hostname or ""
        return host.replace("-admin" + SITE_DOMAIN_SUFFIX, SITE_DOMAIN_SUFFIX)

    def connect(self) -> None:
        """Sign in and confirm the signed-in tenant owns the admin endpoint."""

        self._token = self._tokens.acquire(SITE_ADMIN_SCOPES, GRAPH_DEFAULT_SCOPE)
        root = self._request("GET", "/sites/root", params={"$select": "id,siteCollection,webUrl"})
        hostname = str((root.get("siteCollection") or {}).get("hostname") or "").lower()
        if hostname and hostname != self.tenant_host:
            raise SiteAdminError(
                403,
                "TenantMismatch",
                f"Signed-in tenant serves '{hostname}', not '{self.tenant_host}' ({self.admin_url}).",
            )
        logger.info("Connected to %s", self.admin_url)

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        if self._token is None:
            raise SiteAdminError(0, "NotConnected", f"No session established with {self.admin_url}.")
        url = path if path.startswith("https://") else GRAPH_BASE_URL + path
        headers = kwargs.pop("headers", {}) or {}
        headers.setdefault("Authorization", f"Bearer {self._token}")
        headers.setdefault("Accept", "application/json")
        if "json" in kwargs:
            headers.setdefault("Content-Type", "application/json")

        logger.debug("Site admin %s %s", method, url)
        try:
            response = self._session.request(method, url, timeout=REQUEST_TIMEOUT, headers=headers, **kwargs)
        except requests.RequestException as exc:
            raise SiteAdminError(0, type(exc).__name__, str(exc)) from exc
        if response.status_code == 204:
            return {}
        if response.status_code >= 400:
            try:
                error = response.json().get("error", {})
                code = error.get("code", "SiteAdminError")
                message = error.get("message", response.text)
            except ValueError:
                code = "SiteAdminError"
                message = response.text or "Unknown site administration error."
            raise SiteAdminError(response.status_code, code, message)
        return response.json()

    def _site_id(self, site_url: str) -> str:
        if site_url not in self._site_ids:
            parsed = urlparse(site_url)
            path = parsed.path.rstrip("/")
            target = f"/sites/{parsed.hostname}:{path}" if path else f"/sites/{parsed.hostname}"
            site = self._request("GET", target, params={"$select": "id,webUrl"})
            self._site_ids[site_url] = str(site["id"])
        return self._site_ids[site_url]

    def _paged(self, path: str) -> Iterator[Dict[str, Any]]:
        result = self._request("GET", path)
        while True:
            yield from result.get("value") or []
            next_link = result.get("@odata.nextLink")
            if not next_link:
                break
            result = self._request("GET", next_link)

    def grant_site_permission(
        self, app_id: str, display_name: str, site_url: str, level: PermissionLevel
    ) -> Dict[str, Any]:
        payload = {
            "roles": [level.graph_role],
            "grantedToIdentities": [{"application": {"id": app_id, "displayName": display_name}}],
        }
        result = self._request("POST", f"/sites/{self._site_id(site_url)}/permissions", json=payload)
        logger.info("Granted %s on %s to %s", level.value, site_url, app_id)
        return result

    def update_site_permission(self, site_url: str, permission_id: str, level: PermissionLevel) -> Dict[str, Any]:
        """Replace the roles of an existing site permission with ``level``."""

        result = self._request(
            "PATCH",
            f"/sites/{self._site_id(site_url)}/permissions/{permission_id}",
            json={"roles": [level.graph_role]},
        )
        logger.info("Set %s on %s for permission %s", level.value, site_url, permission_id)
        return result

    def get_site_permission(self, site_url: str, permission_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/sites/{self._site_id(site_url)}/permissions/{permission_id}")

    def list_site_permissions(self, site_url: str, app_id: Optional[str] = None) -> List[SitePermissionGrant]:
        """Site permissions, optionally for one application, with their roles filled in.

        The list endpoint often omits ``roles``; those entries are fetched individually.
        """

        grants: List[SitePermissionGrant] = []
        for entry in self._paged(f"/sites/{self._site_id(site_url)}/permissions"):
            grants.extend(SitePermissionGrant.from_graph(entry, site_url))
        if app_id:
            lowered = app_id.lower()
            grants = [grant for grant in grants if grant.app_id.lower() == lowered]

        roles_by_id: Dict[str, Tuple[str, ...]] = {}
        hydrated: List[SitePermissionGrant] = []
        for grant in grants:
            if not grant.roles and grant.id:
                if grant.id not in roles_by_id:
                    detail = self.get_site_permission(site_url, grant.id)
                    roles_by_id[grant.id] = tuple(str(role) for role in detail.get("roles") or [])
                grant = replace(grant, roles=roles_by_id[grant.id])
            hydrated.append(grant)
        return hydrated


__all__ = ["SiteAdminClient", "admin_url_for", "validate_site_url"]
